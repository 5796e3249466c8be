"""
Encryption utilities for Salla OAuth tokens.

Tokens are sealed with AES-SIV, a deterministic authenticated cipher, so the
same plaintext always produces the same ciphertext. Inbound bearer lookups
rely on that: a client presenting the plaintext token can be matched against
the encrypted column by encrypting it first.

Ciphertext layout: ``siv1.`` + urlsafe base64 (no padding) of tag || body.
Values without the marker are treated as plaintext written before encryption
was introduced, and pass through untouched.
"""

import base64
import binascii
import logging
from typing import Iterable, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESSIV
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from app.config import settings

logger = logging.getLogger(__name__)

CIPHERTEXT_PREFIX = "siv1."
# base64 of the 16-byte SIV tag alone; every real ciphertext is longer
MIN_CIPHERTEXT_LENGTH = len(CIPHERTEXT_PREFIX) + 22

_KDF_ITERATIONS = 100_000


class CipherFailure(Exception):
    """Encryption or decryption could not be completed."""


def _derive_key(secret: str, salt_suffix: str) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=64,
        salt=f"salla-token-encryption:{salt_suffix}".encode(),
        iterations=_KDF_ITERATIONS,
    )
    return kdf.derive(secret.encode())


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def _b64decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + padding)


def is_encrypted(value) -> bool:
    """
    Check whether a value looks like a token produced by encrypt().

    Structural test only: a string longer than the shortest possible
    ciphertext that carries the marker prefix.
    """
    return (
        isinstance(value, str)
        and len(value) > MIN_CIPHERTEXT_LENGTH
        and value.startswith(CIPHERTEXT_PREFIX)
    )


class TokenEncryption:
    """
    Idempotent token encryption with key rotation.

    The primary key encrypts; retired keys are only tried on decrypt.
    """

    def __init__(
        self,
        secret: str,
        salt_suffix: str = "salla",
        previous_secrets: Optional[Iterable[str]] = None,
    ):
        if not secret:
            raise ValueError("Encryption key must not be empty")
        self._primary = AESSIV(_derive_key(secret, salt_suffix))
        self._ciphers = [self._primary] + [
            AESSIV(_derive_key(s, salt_suffix)) for s in (previous_secrets or [])
        ]

    def _seal(self, plaintext: str) -> str:
        try:
            sealed = self._primary.encrypt(plaintext.encode("utf-8"), None)
        except (AttributeError, ValueError, TypeError, OverflowError) as e:
            raise CipherFailure(str(e)) from e
        return CIPHERTEXT_PREFIX + _b64encode(sealed)

    def _open(self, value: str) -> str:
        try:
            sealed = _b64decode(value[len(CIPHERTEXT_PREFIX):])
        except (binascii.Error, ValueError) as e:
            raise CipherFailure(f"Malformed ciphertext: {e}") from e

        for cipher in self._ciphers:
            try:
                raw = cipher.decrypt(sealed, None)
            except (InvalidTag, ValueError):
                continue
            try:
                return raw.decode("utf-8")
            except UnicodeDecodeError as e:
                raise CipherFailure(f"Decrypted token is not UTF-8: {e}") from e
        raise CipherFailure("No configured key could authenticate the token")

    def encrypt(self, token: Optional[str]) -> Optional[str]:
        """Encrypt a token; empty and already-encrypted values pass through."""
        if not token or is_encrypted(token):
            return token
        try:
            return self._seal(token)
        except CipherFailure as e:
            logger.error(f"Token encryption error: {e}")
            return token

    def decrypt(self, token: Optional[str]) -> Optional[str]:
        """Decrypt a token; plaintext and undecryptable values pass through."""
        if not token or not is_encrypted(token):
            return token
        try:
            return self._open(token)
        except CipherFailure as e:
            logger.error(f"Token decryption error for {mask_token(token)}: {e}")
            return token


def mask_token(token: Optional[str], visible: int = 8) -> str:
    """Shorten a token for log output."""
    if not token:
        return "<empty>"
    if len(token) <= visible:
        return "*" * len(token)
    return f"{token[:visible]}..."


_encryption = TokenEncryption(
    settings.encryption_key,
    salt_suffix="salla",
    previous_secrets=settings.previous_encryption_keys,
)


def encrypt_token(token: Optional[str]) -> Optional[str]:
    """
    Encrypt an OAuth token for storage.

    Args:
        token: Plain text token (already-encrypted values are returned as is)

    Returns:
        Encrypted token string, or the input if it could not be encrypted
    """
    return _encryption.encrypt(token)


def decrypt_token(encrypted_token: Optional[str]) -> Optional[str]:
    """
    Decrypt an OAuth token from storage.

    Args:
        encrypted_token: Encrypted token string (plaintext is returned as is)

    Returns:
        Plain text token, best effort
    """
    return _encryption.decrypt(encrypted_token)


__all__ = [
    "CIPHERTEXT_PREFIX",
    "CipherFailure",
    "TokenEncryption",
    "encrypt_token",
    "decrypt_token",
    "is_encrypted",
    "mask_token",
]
