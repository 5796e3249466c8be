"""
Salla Token Manager
Binds a user to a live access token, refreshing it when it runs out
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.models import OAuthToken, User
from app.services.refresh_lock import RefreshLock, RefreshLockTimeout
from app.services.salla_client import (
    SallaClient,
    SallaIdentityError,
    SallaTransportError,
    TokenResponse,
)
from app.services.token_store import TokenStore, as_utc, has_expired
from app.utils.encryption import decrypt_token, mask_token

logger = logging.getLogger(__name__)


class ReauthorizationRequired(Exception):
    """The refresh token was rejected; the merchant has to authorize again."""


class ProviderTransportError(Exception):
    """Salla could not be reached; the caller may retry the whole operation."""


@dataclass
class LiveToken:
    """Decrypted credentials held for the duration of a request."""

    access_token: str
    refresh_token: Optional[str]
    expires_at: datetime
    record_access_token: Optional[str] = None  # stored ciphertext the token was loaded from

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or datetime.now(timezone.utc))

    @classmethod
    def from_record(cls, record: OAuthToken) -> "LiveToken":
        expires_at = as_utc(record.expires_at)
        if expires_at is None:
            created_at = as_utc(record.created_at)
            if record.expires_in and created_at is not None and not has_expired(record):
                expires_at = created_at + timedelta(seconds=int(record.expires_in))
            else:
                # Nothing trustworthy to go on, force a refresh
                expires_at = datetime.now(timezone.utc)
        return cls(
            access_token=decrypt_token(record.access_token),
            refresh_token=decrypt_token(record.refresh_token) or None,
            expires_at=expires_at,
            record_access_token=record.access_token,
        )


class SallaTokenManager:
    """
    Token lifecycle for one user.

    Usage:
        manager = await SallaTokenManager(db).for_user(user)
        store = await manager.request("GET", "store/info")
    """

    def __init__(
        self,
        db: AsyncSession,
        client: Optional[SallaClient] = None,
        lock: Optional[RefreshLock] = None,
    ):
        self.db = db
        self.store = TokenStore(db)
        self.client = client or SallaClient()
        self.lock = lock or RefreshLock()
        self.user: Optional[User] = None
        self.token: Optional[LiveToken] = None

    async def for_user(self, user: User) -> "SallaTokenManager":
        """Bind the manager to a user and load their decrypted token."""
        self.user = user
        record = await self.store.find(user.id)
        self.token = LiveToken.from_record(record) if record else None
        return self

    def _require_token(self) -> LiveToken:
        if self.user is None:
            raise RuntimeError("Manager not bound. Call for_user() first.")
        if self.token is None:
            raise ReauthorizationRequired(f"No Salla token stored for user {self.user.id}")
        return self.token

    def is_expiring(self) -> bool:
        """Check whether the live token is at or past expiry."""
        return self._require_token().is_expired()

    async def refresh(self) -> TokenResponse:
        """
        Exchange the refresh token for a new pair and persist it.

        Runs under the per-user refresh lock. If another request already
        rotated the stored token while we waited, that token is adopted and
        the provider is not called again.

        Returns:
            TokenResponse: The tokens now in use (plaintext)

        Raises:
            ReauthorizationRequired: Salla rejected the refresh token
            ProviderTransportError: Salla was unreachable or the lock timed out
        """
        token = self._require_token()
        user_id = self.user.id

        try:
            async with self.lock.hold(user_id):
                record = await self.store.find(user_id)
                if record is None:
                    raise ReauthorizationRequired(f"Token record for user {user_id} was removed")

                # Expire cached attributes so a row rotated by another worker is seen
                await self.db.refresh(record)
                if record.access_token != token.record_access_token and not has_expired(record):
                    logger.info(f"Adopting token already refreshed for user {user_id}")
                    self.token = LiveToken.from_record(record)
                    return TokenResponse(
                        access_token=self.token.access_token,
                        refresh_token=self.token.refresh_token,
                        expires_in=record.expires_in,
                    )

                refresh_token = decrypt_token(record.refresh_token) or token.refresh_token
                try:
                    issued = await self.client.refresh(refresh_token)
                except SallaIdentityError as e:
                    logger.error(f"Token refresh rejected for user {user_id}: {e}")
                    raise ReauthorizationRequired(
                        f"Refresh token is invalid or expired. Please login again: {e}"
                    ) from e
                except SallaTransportError as e:
                    logger.error(f"Token refresh failed for user {user_id}: {e}")
                    raise ProviderTransportError(str(e)) from e

                stored = await self.store.upsert(
                    user_id=user_id,
                    access_token=issued.access_token,
                    # Salla may not rotate the refresh token; keep the old one then
                    refresh_token=issued.refresh_token or refresh_token,
                    expires_in=issued.expires_in,
                    merchant=record.merchant,
                )
                self.token = LiveToken.from_record(stored)
                logger.info(
                    f"Token refreshed for user {user_id}: {mask_token(stored.access_token)}"
                )
                return issued
        except RefreshLockTimeout as e:
            raise ProviderTransportError(str(e)) from e

    async def ensure_fresh(self) -> LiveToken:
        """Refresh first if the live token has run out."""
        if self.is_expiring():
            await self.refresh()
        return self.token

    async def request(self, method: str, url: str, **options) -> Dict[str, Any]:
        """
        Call the Salla Admin API as the bound user.

        Raises:
            ReauthorizationRequired: Refresh or the access token was rejected
            ProviderTransportError: Salla was unreachable
            SallaAPIError: Salla returned any other error for the resource call
        """
        token = await self.ensure_fresh()
        try:
            return await self.client.fetch_resource(method, url, token.access_token, **options)
        except SallaIdentityError as e:
            raise ReauthorizationRequired(str(e)) from e
        except SallaTransportError as e:
            raise ProviderTransportError(str(e)) from e

    async def get_resource_owner(self) -> Dict[str, Any]:
        """Get the Salla merchant user behind the bound token."""
        token = await self.ensure_fresh()
        try:
            return await self.client.get_resource_owner(token.access_token)
        except SallaIdentityError as e:
            raise ReauthorizationRequired(str(e)) from e
        except SallaTransportError as e:
            raise ProviderTransportError(str(e)) from e
