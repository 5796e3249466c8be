"""
Token Store
Persists encrypted Salla OAuth tokens, one record per user
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import OAuthToken
from app.utils.encryption import encrypt_token

logger = logging.getLogger(__name__)

MAX_EXPIRES_IN = 31_536_000  # one year in seconds
TIMESTAMP_FALLBACK = timedelta(days=1)
INVALID_FALLBACK = timedelta(hours=1)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def calculate_expires_at(expires_in, now: Optional[datetime] = None) -> datetime:
    """
    Convert a provider TTL into an absolute expiry.

    Salla has been seen returning an absolute timestamp where a duration is
    expected, so anything beyond a year is distrusted and cut to a day.
    Non-positive or unreadable values get a short one hour lifetime.

    Args:
        expires_in: Seconds until expiry as reported by the provider
        now: Reference time (defaults to current UTC time)

    Returns:
        datetime: Timezone-aware expiry within [now, now + 1 year]
    """
    now = now or _utcnow()

    try:
        seconds = int(expires_in)
    except (TypeError, ValueError, OverflowError):
        logger.warning(f"Unreadable expires_in value: {expires_in!r}, defaulting to 1 hour")
        return now + INVALID_FALLBACK

    if seconds > MAX_EXPIRES_IN:
        logger.warning(f"Token expiration too large: {seconds}, using 1 day default")
        return now + TIMESTAMP_FALLBACK

    if seconds <= 0:
        logger.warning(f"Invalid expires_in value: {seconds}, defaulting to 1 hour")
        return now + INVALID_FALLBACK

    expires_at = now + timedelta(seconds=min(seconds, MAX_EXPIRES_IN))
    logger.debug(f"Calculated expires_at: {expires_at.isoformat()}")
    return expires_at


def has_expired(record: OAuthToken, now: Optional[datetime] = None) -> bool:
    """
    Check whether a token record is past its expiry.

    Uses expires_at when present, otherwise created_at + expires_in for
    legacy rows. A record with neither is treated as expired.
    """
    now = now or _utcnow()

    expires_at = as_utc(record.expires_at)
    if expires_at is not None:
        return now > expires_at

    created_at = as_utc(record.created_at)
    if record.expires_in and created_at is not None:
        return now > created_at + timedelta(seconds=int(record.expires_in))

    return True


class TokenStore:
    """Service for reading and writing token records."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def find(self, user_id: UUID) -> Optional[OAuthToken]:
        """Get the token record for a user."""
        result = await self.db.execute(
            select(OAuthToken).where(OAuthToken.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def find_by_access_token(self, access_token: str) -> Optional[OAuthToken]:
        """Get the token record whose stored access token matches exactly."""
        if not access_token:
            return None
        result = await self.db.execute(
            select(OAuthToken).where(OAuthToken.access_token == access_token)
        )
        return result.scalars().first()

    async def upsert(
        self,
        user_id: UUID,
        access_token: str,
        refresh_token: Optional[str],
        expires_in,
        merchant: Optional[int] = None,
    ) -> OAuthToken:
        """
        Create or replace the token record for a user.

        Both tokens are encrypted before they reach the session. Every token
        field is overwritten, nothing from the previous record is merged in.

        Args:
            user_id: Owning user ID
            access_token: Plain text access token
            refresh_token: Plain text refresh token
            expires_in: Provider-reported TTL in seconds
            merchant: Salla merchant ID

        Returns:
            OAuthToken: The stored record
        """
        now = _utcnow()
        try:
            ttl = int(expires_in)
        except (TypeError, ValueError, OverflowError):
            ttl = 0

        values = {
            "access_token": encrypt_token(access_token),
            "refresh_token": encrypt_token(refresh_token) or "",
            "expires_in": ttl,
            "expires_at": calculate_expires_at(expires_in, now=now),
            "merchant": merchant,
            "created_at": now,
            "updated_at": now,
        }

        record = await self.find(user_id)
        if record:
            for field, value in values.items():
                setattr(record, field, value)
            logger.info(f"Token record replaced for user {user_id}")
        else:
            record = OAuthToken(user_id=user_id, **values)
            self.db.add(record)
            logger.info(f"Token record created for user {user_id}")

        await self.db.commit()
        await self.db.refresh(record)
        return record

    async def delete_for_user(self, user_id: UUID) -> bool:
        """
        Remove a user's token record.

        Returns:
            bool: True if a record was deleted
        """
        result = await self.db.execute(
            delete(OAuthToken).where(OAuthToken.user_id == user_id)
        )
        await self.db.commit()
        return result.rowcount > 0

    def has_expired(self, record: OAuthToken) -> bool:
        """Check whether a record is past its expiry."""
        return has_expired(record)
