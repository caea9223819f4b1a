"""
Session token creation and verification.

Tokens look like ``urlsafe_b64(json_payload).hmac_sha256_hex`` and carry the
user id plus an ``exp`` claim.  The signing secret is ``config.jwt_secret``
(env var: ``JWT_SECRET``).
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from base64 import urlsafe_b64decode, urlsafe_b64encode
from typing import Any, Dict, Optional

from fastapi import HTTPException, status

from config.settings import config


def _sign(raw: bytes) -> str:
    return hmac.new(config.jwt_secret.encode(), raw, hashlib.sha256).hexdigest()


def create_token(user_id: str, *, ttl_seconds: Optional[int] = None, **claims: Any) -> str:
    """Create a signed token for ``user_id`` with optional extra claims."""
    payload: Dict[str, Any] = {
        "user_id": user_id,
        "exp": int(time.time()) + (ttl_seconds or config.jwt_expiry_seconds),
        **claims,
    }
    raw = json.dumps(payload, separators=(",", ":")).encode()
    return urlsafe_b64encode(raw).decode() + "." + _sign(raw)


def decode_token(token: str) -> Dict[str, Any]:
    """
    Verify signature and expiry, returning the payload.

    Raises ``ValueError`` describing the failure.
    """
    parts = token.split(".", 1)
    if len(parts) != 2:
        raise ValueError("bad format")
    try:
        raw = urlsafe_b64decode(parts[0].encode())
    except (ValueError, TypeError) as exc:
        raise ValueError("bad encoding") from exc
    if not hmac.compare_digest(parts[1], _sign(raw)):
        raise ValueError("bad signature")
    payload = json.loads(raw)
    if payload.get("exp", 0) < time.time():
        raise ValueError("token expired")
    return payload


def verify_token(token: str) -> str:
    """
    Verify token and return ``user_id``.

    Raises ``HTTPException(401)`` on invalid or expired tokens.
    """
    try:
        return decode_token(token)["user_id"]
    except (ValueError, KeyError) as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid or expired token: {exc}",
        )
