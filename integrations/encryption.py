"""
Token encryption — encrypt / decrypt integration tokens at rest.

Uses AES-256-GCM from the ``cryptography`` library.  The key is loaded from
``config.integration_encryption_key`` (env var: ``INTEGRATION_ENCRYPTION_KEY``)
and must be 64 hex characters.  There is no plaintext mode: a missing key
raises.  Generate a key with::

    python -c "from integrations.encryption import generate_encryption_key; print(generate_encryption_key())"

Stored format: ``hex(iv || ciphertext || tag)`` with a 16-byte random IV.
"""

from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from typing import Optional

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from config.settings import config
from integrations.types import EncryptionError, TokenValidation

logger = logging.getLogger(__name__)

_IV_LENGTH = 16
_TAG_LENGTH = 16
_KEY_LENGTH = 32
_REFRESH_WINDOW_SECONDS = 300


def _get_cipher(key_hex: Optional[str] = None) -> AESGCM:
    key_hex = key_hex if key_hex is not None else config.integration_encryption_key
    if not key_hex:
        raise EncryptionError("INTEGRATION_ENCRYPTION_KEY environment variable is required")
    try:
        key = bytes.fromhex(key_hex)
    except ValueError:
        raise EncryptionError("INTEGRATION_ENCRYPTION_KEY must be a hex string")
    if len(key) != _KEY_LENGTH:
        raise EncryptionError("INTEGRATION_ENCRYPTION_KEY must be 64 hex characters (32 bytes)")
    return AESGCM(key)


def encrypt_token(token: str, *, key_hex: Optional[str] = None) -> str:
    """Encrypt a token string for database storage."""
    if not token:
        raise EncryptionError("Access token is required for encryption")
    cipher = _get_cipher(key_hex)
    iv = os.urandom(_IV_LENGTH)
    # cryptography appends the 16-byte tag to the ciphertext
    sealed = cipher.encrypt(iv, token.encode("utf-8"), None)
    return (iv + sealed).hex()


def decrypt_token(encrypted: str, *, key_hex: Optional[str] = None) -> str:
    """Decrypt a token string read from the database."""
    if not encrypted:
        raise EncryptionError("Encrypted token is required for decryption")
    cipher = _get_cipher(key_hex)
    try:
        raw = bytes.fromhex(encrypted)
        if len(raw) <= _IV_LENGTH + _TAG_LENGTH:
            raise ValueError("ciphertext too short")
        plaintext = cipher.decrypt(raw[:_IV_LENGTH], raw[_IV_LENGTH:], None)
        return plaintext.decode("utf-8")
    except Exception as exc:
        logger.warning("Token decryption failed: %s", type(exc).__name__)
        raise EncryptionError("Failed to decrypt token - invalid key or corrupted data") from exc


def generate_encryption_key() -> str:
    """Return a fresh 256-bit key as 64 hex characters."""
    return os.urandom(_KEY_LENGTH).hex()


def validate_token(expires_at: Optional[datetime], *, now: Optional[datetime] = None) -> TokenValidation:
    """
    Check an access token's expiry.

    A token without an expiry is treated as valid and never needing refresh.
    """
    if expires_at is None:
        return TokenValidation(is_valid=True, is_expired=False, expires_in=None, needs_refresh=False)

    now = now or datetime.now(timezone.utc)
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    expires_in = int((expires_at - now).total_seconds())
    is_expired = expires_in <= 0
    return TokenValidation(
        is_valid=not is_expired,
        is_expired=is_expired,
        expires_in=expires_in,
        needs_refresh=0 < expires_in <= _REFRESH_WINDOW_SECONDS,
    )
