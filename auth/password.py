"""
Password hashing, verification and policy checks (bcrypt).
"""

from __future__ import annotations

import bcrypt

MIN_PASSWORD_LENGTH = 6
MAX_PASSWORD_LENGTH = 72   # bcrypt only looks at the first 72 bytes


def check_password_policy(password: str) -> None:
    """Raise ``ValueError`` if the password cannot be accepted."""
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    if len(password.encode()) > MAX_PASSWORD_LENGTH:
        raise ValueError(f"Password must be at most {MAX_PASSWORD_LENGTH} bytes")


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt(rounds=12)).decode()


def verify_password(password: str, password_hash: str) -> bool:
    """Constant-time comparison against a bcrypt hash."""
    if not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode(), password_hash.encode())
    except (ValueError, TypeError):
        return False
