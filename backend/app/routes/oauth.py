"""
OAuth Routes for the Salla merchant app
Handles authorization, token refresh and owner lookup
"""

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database import get_db
from app.middleware.auth import AuthContext, require_salla_token
from app.services.salla_client import SallaClient, SallaIdentityError, SallaTransportError
from app.services.refresh_lock import get_redis
from app.services.token_manager import (
    ProviderTransportError,
    ReauthorizationRequired,
    SallaTokenManager,
)
from app.services.token_store import TokenStore
from app.services.user_service import UserService

logger = logging.getLogger(__name__)

router = APIRouter()

# Redis-backed CSRF state storage with in-memory fallback
_fallback_states: dict[str, dict] = {}


def get_salla_client() -> SallaClient:
    """Provider client dependency."""
    return SallaClient()


async def _store_state(state: str) -> None:
    """Store OAuth state in Redis (or fallback to memory)."""
    redis = await get_redis()
    if redis:
        try:
            await redis.setex(f"oauth_state:salla:{state}", 600, "1")
            return
        except Exception as e:
            logger.warning(f"Redis error storing OAuth state: {e}")
    logger.warning(
        "OAuth state stored in-memory; not safe for multi-worker deployments. "
        "Configure REDIS_URL to enable distributed OAuth state."
    )
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=10)
    expired = [k for k, v in _fallback_states.items() if v["created_at"] < cutoff]
    for k in expired:
        del _fallback_states[k]
    _fallback_states[state] = {"created_at": datetime.now(timezone.utc)}


async def _validate_state(state: str) -> bool:
    """Validate and consume OAuth state. Returns True if valid."""
    redis = await get_redis()
    if redis:
        try:
            key = f"oauth_state:salla:{state}"
            result = await redis.get(key)
            if result:
                await redis.delete(key)
                return True
        except Exception as e:
            logger.warning(f"Redis error validating OAuth state: {e}")
    if state in _fallback_states:
        _fallback_states.pop(state)
        return True
    return False


def _error(status_code: int, error: str, redirect: Optional[str] = None) -> HTTPException:
    detail = {"error": error}
    if redirect:
        detail["redirect"] = redirect
    return HTTPException(
        status_code=status_code,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"} if status_code == 401 else None,
    )


def _token_payload(record, expires_in) -> dict:
    """Tokens handed back to the client, in their stored (encrypted) form."""
    return {
        "access_token": record.access_token,
        "expires_in": expires_in,
        "refresh_token": record.refresh_token,
    }


@router.get("/redirect", name="oauth.redirect")
async def oauth_redirect(client: SallaClient = Depends(get_salla_client)):
    """
    Start the OAuth flow.

    Returns the Salla authorization URL for the frontend to navigate to.
    """
    state = secrets.token_urlsafe(32)
    await _store_state(state)
    return {"url": client.get_authorization_url(state)}


@router.get("/callback", name="oauth.callback")
async def oauth_callback(
    code: str = Query("", description="Authorization code"),
    state: Optional[str] = Query(None, description="CSRF state"),
    db: AsyncSession = Depends(get_db),
    client: SallaClient = Depends(get_salla_client),
):
    """
    OAuth callback handler.

    Salla redirects here after the merchant authorizes the app. The code is
    exchanged for tokens, the merchant user is created or updated and the
    encrypted tokens are returned for the client to present as bearer.
    """
    if settings.salla_authorization_mode == "custom":
        raise _error(status.HTTP_401_UNAUTHORIZED, "The Authorization mode is not supported")

    if not state or not await _validate_state(state):
        raise _error(status.HTTP_400_BAD_REQUEST, "Invalid OAuth state parameter")

    if not code:
        raise _error(status.HTTP_400_BAD_REQUEST, "Missing authorization code")

    try:
        issued = await client.exchange_code(code)
        owner = await client.get_resource_owner(issued.access_token)
    except SallaIdentityError as e:
        logger.error(f"OAuth callback rejected by Salla: {e}")
        raise _error(status.HTTP_401_UNAUTHORIZED, str(e))
    except SallaTransportError as e:
        logger.error(f"OAuth callback could not reach Salla: {e}")
        raise _error(status.HTTP_502_BAD_GATEWAY, str(e))

    try:
        user = await UserService(db).upsert_from_owner(owner)
    except ValueError as e:
        raise _error(status.HTTP_400_BAD_REQUEST, str(e))

    merchant = (owner.get("merchant") or {}).get("id")
    record = await TokenStore(db).upsert(
        user_id=user.id,
        access_token=issued.access_token,
        refresh_token=issued.refresh_token,
        expires_in=issued.expires_in,
        merchant=merchant,
    )

    logger.info(f"OAuth callback completed for {user.email}")
    return {
        "message": "success",
        "data": {
            "user": {**user.to_dict(), "token": record.to_dict()},
            "tokens": _token_payload(record, issued.expires_in),
        },
    }


@router.get("/refresh-token", name="oauth.refresh-token")
async def refresh_token(
    auth: AuthContext = Depends(require_salla_token),
    db: AsyncSession = Depends(get_db),
    client: SallaClient = Depends(get_salla_client),
):
    """
    Refresh the Salla access token.

    Reachable with an expired token; returns the new encrypted pair.
    """
    manager = await SallaTokenManager(db, client=client).for_user(auth.user)

    try:
        issued = await manager.refresh()
    except ReauthorizationRequired as e:
        logger.error(f"Token refresh failed: {e}")
        raise _error(
            status.HTTP_401_UNAUTHORIZED,
            f"Refresh token is invalid or expired: {e}",
            redirect=settings.reauthorize_url,
        )
    except ProviderTransportError as e:
        logger.error(f"Token refresh could not reach Salla: {e}")
        raise _error(status.HTTP_502_BAD_GATEWAY, str(e))

    record = await TokenStore(db).find(auth.user.id)
    return {
        "message": "success",
        "data": _token_payload(record, issued.expires_in),
    }


@router.get("/owner", name="oauth.owner")
async def owner_details(
    auth: AuthContext = Depends(require_salla_token),
    db: AsyncSession = Depends(get_db),
    client: SallaClient = Depends(get_salla_client),
):
    """Get the merchant's details from Salla."""
    manager = await SallaTokenManager(db, client=client).for_user(auth.user)

    try:
        owner = await manager.get_resource_owner()
    except ReauthorizationRequired as e:
        raise _error(status.HTTP_401_UNAUTHORIZED, str(e), redirect=settings.reauthorize_url)
    except ProviderTransportError as e:
        raise _error(status.HTTP_502_BAD_GATEWAY, str(e))

    return {
        "message": "success",
        "data": {
            "owner": owner,
            "user": auth.user.to_dict(),
        },
    }
