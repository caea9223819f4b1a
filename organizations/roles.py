"""
Organization role hierarchy.
"""

from __future__ import annotations

from typing import Dict, List

ROLE_LEVELS: Dict[str, int] = {
    "admin": 4,
    "member": 3,
    "viewer": 2,
    "guest": 1,
}

ROLES: List[str] = list(ROLE_LEVELS)


def is_valid_role(role: str) -> bool:
    return role in ROLE_LEVELS


def has_role(user_role: str, required_role: str) -> bool:
    """True if ``user_role`` is at least as privileged as ``required_role``."""
    if required_role not in ROLE_LEVELS:
        raise ValueError(f"Unknown role '{required_role}'")
    return ROLE_LEVELS.get(user_role, 0) >= ROLE_LEVELS.get(required_role, 0)
