"""
FastAPI dependencies for authentication and organization scoping.
"""

from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from auth.jwt import verify_token
from database.models import User
from database.helpers import get_user
from database.session import get_db_session

_bearer_scheme = HTTPBearer()


async def db_session(
    session: AsyncSession = Depends(get_db_session),
) -> AsyncGenerator[AsyncSession, None]:
    """Yield a DB session for route handlers."""
    yield session


async def get_current_user_id(
    credentials: HTTPAuthorizationCredentials = Depends(_bearer_scheme),
) -> str:
    """Return the authenticated ``user_id`` from the Bearer token."""
    return verify_token(credentials.credentials)


async def get_current_user(
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
) -> User:
    """Load the authenticated user; 401 if the account no longer exists."""
    user = await get_user(session, user_id)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User no longer exists",
        )
    return user
