"""
Authentication for the Salla merchant app.

Requests carry the Salla access token as a bearer credential. Clients have
been shipped that send the encrypted token handed out by the callback, the
raw token, and in a few cases a doubly encrypted one, so the lookup tries
the credential as given, then encrypted, then decrypted.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database import get_db
from app.models import OAuthToken, User
from app.services.token_store import TokenStore, has_expired
from app.utils.encryption import decrypt_token, encrypt_token, mask_token

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


class Unauthenticated(HTTPException):
    """No token record matches the presented credential."""

    def __init__(self, detail: str = "Unauthorized - Invalid token"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"},
        )


class TokenExpired(HTTPException):
    """The credential resolved but its token has expired."""

    def __init__(self, redirect: str):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "Token has expired", "redirect": redirect},
            headers={"WWW-Authenticate": 'Bearer error="invalid_token"'},
        )


@dataclass
class AuthContext:
    """Identity resolved for the current request."""

    user: User
    token: OAuthToken
    expired: bool = False


async def resolve_token_record(store: TokenStore, credential: str) -> Optional[OAuthToken]:
    """
    Find the token record for a bearer credential.

    Tries the credential verbatim, then its encrypted form (client sent
    plaintext), then its decrypted form (client sent ciphertext of something
    stored differently). Each distinct candidate is looked up once.
    """
    tried = set()
    for strategy, candidate in (
        ("verbatim", credential),
        ("encrypted", encrypt_token(credential)),
        ("decrypted", decrypt_token(credential)),
    ):
        if not candidate or candidate in tried:
            continue
        tried.add(candidate)
        record = await store.find_by_access_token(candidate)
        if record:
            logger.debug(f"Token resolved via {strategy} lookup")
            return record
    return None


def is_refresh_request(request: Request) -> bool:
    """Check whether the request targets the refresh endpoint."""
    return request.url.path.rstrip("/") == settings.refresh_token_path.rstrip("/")


async def require_salla_token(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> AuthContext:
    """
    Require a bearer token that maps to a stored Salla token.

    Expired tokens are rejected everywhere except the refresh endpoint, so
    a session can still be renewed once it has run out.

    Returns:
        AuthContext: The resolved user and token record
    """
    if not credentials or not credentials.credentials:
        raise Unauthenticated("Unauthorized - No token provided")

    bearer = credentials.credentials
    logger.debug(f"Token lookup: {mask_token(bearer, visible=20)}")

    record = await resolve_token_record(TokenStore(db), bearer)
    if not record:
        logger.error(f"Token not found by any method: {mask_token(bearer, visible=20)}")
        raise Unauthenticated()

    user = await db.get(User, record.user_id)
    if not user:
        raise Unauthenticated("Unauthorized - User not found")

    expired = has_expired(record)
    if expired and not is_refresh_request(request):
        raise TokenExpired(redirect=settings.reauthorize_url)

    context = AuthContext(user=user, token=record, expired=expired)
    request.state.auth = context
    return context
