"""
Auth API routes — register, login, current user and account settings.

Route prefix: /api/v1/auth
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from auth.dependencies import db_session, get_current_user
from auth.jwt import create_token
from auth.models import User
from auth.password import check_password_policy, hash_password, verify_password
from billing.service import schedule_seat_sync
from organizations.invitations import accept_invitations_by_email
from storage import get_storage
from utils.utm import extract_utm_params, store_utm_source

logger = logging.getLogger(__name__)

router = APIRouter(tags=["auth"])


# ── Request / response schemas ─────────────────────────────────────────


class RegisterRequest(BaseModel):
    username: str = Field(..., min_length=3, max_length=20, pattern=r"^[a-zA-Z0-9_]+$")
    email: str = Field(..., min_length=5, max_length=255)
    password: str = Field(..., min_length=6, max_length=72)
    name: Optional[str] = Field(None, max_length=40)
    utm: Dict[str, str] = Field(default_factory=dict)


class LoginRequest(BaseModel):
    email: str
    password: str


class AuthResponse(BaseModel):
    user_id: str
    username: str
    display_name: str
    email: str
    token: str
    joined_organizations: List[Dict[str, Any]] = Field(default_factory=list)


def _auth_payload(user: User, joined: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
    return {
        "user_id": str(user.id),
        "username": user.username,
        "display_name": user.display_name,
        "email": user.email,
        "token": create_token(str(user.id)),
        "joined_organizations": joined or [],
    }


# ── Endpoints ──────────────────────────────────────────────────────────


@router.post("/register", response_model=AuthResponse)
async def register(
    req: RegisterRequest,
    request: Request,
    session: AsyncSession = Depends(db_session),
) -> Dict[str, Any]:
    """Register a new user and accept any invitations waiting for the email."""
    email = req.email.strip().lower()
    username = req.username.lower()
    result = await session.execute(
        select(User).where(or_(func.lower(User.email) == email, User.username == username))
    )
    if result.first() is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Email or username already registered",
        )
    try:
        check_password_policy(req.password)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))

    user = User(
        id=uuid.uuid4(),
        email=email,
        username=username,
        name=req.name,
        password_hash=hash_password(req.password),
    )
    session.add(user)
    await session.flush()

    utm = extract_utm_params({**dict(request.query_params), **req.utm})
    if utm:
        await store_utm_source(session, user.id, utm)

    accepted = await accept_invitations_by_email(session, email, user.id)
    joined = [
        {
            "organization_id": str(item["organization"].id),
            "slug": item["organization"].slug,
            "already_member": item["already_member"],
        }
        for item in accepted
    ]
    newly_joined = [item["organization"] for item in accepted if not item["already_member"]]
    if newly_joined:
        await session.commit()
        for organization in newly_joined:
            schedule_seat_sync(organization)

    logger.info("Registered user %s (%s), joined %d orgs", username, user.id, len(joined))
    return _auth_payload(user, joined)


@router.post("/login", response_model=AuthResponse)
async def login(
    req: LoginRequest,
    session: AsyncSession = Depends(db_session),
) -> Dict[str, Any]:
    """Login with email + password."""
    result = await session.execute(
        select(User).where(func.lower(User.email) == req.email.strip().lower())
    )
    user = result.scalar_one_or_none()

    if user is None or not verify_password(req.password, user.password_hash):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
        )

    logger.info("Login: %s (%s)", user.username, user.id)
    return _auth_payload(user)


def _me_payload(user: User) -> Dict[str, Any]:
    return {
        "user_id": str(user.id),
        "username": user.username,
        "name": user.name,
        "email": user.email,
        "image": get_storage().url(user.image_key) if user.image_key else None,
        "has_password": bool(user.password_hash),
        "created_at": user.created_at.isoformat() if user.created_at else None,
    }


@router.get("/me")
async def me(user: User = Depends(get_current_user)) -> Dict[str, Any]:
    return _me_payload(user)


# ── Account settings ───────────────────────────────────────────────────


class ProfileUpdateRequest(BaseModel):
    username: Optional[str] = Field(None, min_length=3, max_length=20, pattern=r"^[a-zA-Z0-9_]+$")
    name: Optional[str] = Field(None, max_length=40)


class PasswordChangeRequest(BaseModel):
    current_password: Optional[str] = None
    new_password: str = Field(..., max_length=72)
    confirm_new_password: str


@router.patch("/me")
async def update_profile(
    req: ProfileUpdateRequest,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(db_session),
) -> Dict[str, Any]:
    """Edit the profile card: username and display name. ``name: null`` clears the name."""
    if req.username is not None:
        username = req.username.lower()
        if username != user.username:
            taken = await session.execute(select(User.id).where(User.username == username, User.id != user.id))
            if taken.first() is not None:
                raise HTTPException(
                    status_code=status.HTTP_409_CONFLICT,
                    detail="Username already taken",
                )
            user.username = username
    if "name" in req.model_fields_set:
        user.name = (req.name or "").strip() or None

    await session.flush()
    logger.info("Profile updated for %s", user.id)
    return _me_payload(user)


@router.post("/password")
async def change_password(
    req: PasswordChangeRequest,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(db_session),
) -> Dict[str, str]:
    """
    Change the password, or create one for an account that has none.

    An existing password must be confirmed with ``current_password``.
    """
    has_password = bool(user.password_hash)
    if has_password and not verify_password(req.current_password or "", user.password_hash):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Incorrect password",
        )
    if req.new_password != req.confirm_new_password:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="The passwords must match")
    try:
        check_password_policy(req.new_password)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))

    user.password_hash = hash_password(req.new_password)
    await session.flush()
    logger.info("Password %s for %s", "changed" if has_password else "created", user.id)
    return {"status": "changed" if has_password else "created"}
