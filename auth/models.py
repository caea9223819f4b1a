"""This module re-exports the account models from the database package for use in authentication-related code.
"""

from database.models import User, UtmSource  # noqa: F401

__all__ = ["User", "UtmSource"]
