"""
Organization queries and mutations: memberships, default organization,
creation, slug lookup, access checks and member management.
"""

from __future__ import annotations

import logging
import re
import uuid
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from database.helpers import get_membership, to_uuid
from database.models import Organization, OrganizationImage, User, UserOrganization
from organizations.roles import has_role, is_valid_role
from utils.errors import ConflictError, ForbiddenError, NotFoundError, ServiceError

logger = logging.getLogger(__name__)

_SLUG_RE = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,62}[a-z0-9])?$")


def serialize_organization(org: Organization, *, user_count: Optional[int] = None) -> Dict[str, Any]:
    image = org.image
    data: Dict[str, Any] = {
        "id": str(org.id),
        "name": org.name,
        "slug": org.slug,
        "description": org.description,
        "image": (
            {"id": str(image.id), "alt_text": image.alt_text, "object_key": image.object_key}
            if image is not None
            else None
        ),
    }
    if user_count is not None:
        data["user_count"] = user_count
    return data


async def count_active_members(session: AsyncSession, organization_id: str | uuid.UUID) -> int:
    result = await session.execute(
        select(func.count())
        .select_from(UserOrganization)
        .where(
            UserOrganization.organization_id == to_uuid(organization_id),
            UserOrganization.active.is_(True),
        )
    )
    return int(result.scalar_one())


def _membership_query(user_id: uuid.UUID):
    return (
        select(UserOrganization)
        .options(selectinload(UserOrganization.organization).selectinload(Organization.image))
        .where(UserOrganization.user_id == user_id, UserOrganization.active.is_(True))
    )


async def get_user_organizations(session: AsyncSession, user_id: str | uuid.UUID) -> List[Dict[str, Any]]:
    """All active memberships of a user, with role and default flag."""
    result = await session.execute(
        _membership_query(to_uuid(user_id)).order_by(UserOrganization.created_at.asc())
    )
    return [
        {
            "organization": serialize_organization(m.organization),
            "role": m.role,
            "is_default": m.is_default,
        }
        for m in result.scalars().all()
    ]


async def get_user_default_organization(
    session: AsyncSession,
    user_id: str | uuid.UUID,
) -> Optional[Dict[str, Any]]:
    """
    The user's default organization, falling back to the earliest active
    membership when none is flagged.  Includes the active member count.
    """
    uid = to_uuid(user_id)
    result = await session.execute(
        _membership_query(uid).where(UserOrganization.is_default.is_(True)).limit(1)
    )
    membership = result.scalar_one_or_none()
    if membership is None:
        result = await session.execute(
            _membership_query(uid).order_by(UserOrganization.created_at.asc()).limit(1)
        )
        membership = result.scalar_one_or_none()
    if membership is None:
        return None

    count = await count_active_members(session, membership.organization_id)
    return {
        "organization": serialize_organization(membership.organization, user_count=count),
        "role": membership.role,
        "is_default": membership.is_default,
    }


async def set_user_default_organization(
    session: AsyncSession,
    user_id: str | uuid.UUID,
    organization_id: str | uuid.UUID,
) -> Optional[Dict[str, Any]]:
    uid = to_uuid(user_id)
    try:
        oid = to_uuid(organization_id)
    except ValueError:
        raise NotFoundError("Organization membership not found")
    membership = await get_membership(session, uid, oid)
    if membership is None:
        raise NotFoundError("Organization membership not found")

    await session.execute(
        update(UserOrganization)
        .where(UserOrganization.user_id == uid, UserOrganization.is_default.is_(True))
        .values(is_default=False)
    )
    membership.is_default = True
    await session.flush()
    return await get_user_default_organization(session, uid)


async def create_organization(
    session: AsyncSession,
    *,
    name: str,
    slug: str,
    user_id: str | uuid.UUID,
    description: Optional[str] = None,
    size: Optional[str] = None,
    image_object_key: Optional[str] = None,
) -> Organization:
    """
    Create an organization; the creator becomes its admin and it becomes
    their default organization.
    """
    name = name.strip()
    slug = slug.strip().lower()
    if not name:
        raise ServiceError("Organization name is required")
    if not _SLUG_RE.match(slug):
        raise ServiceError("Slug may only contain lowercase letters, numbers and dashes")

    existing = await session.execute(select(Organization.id).where(Organization.slug == slug))
    if existing.first() is not None:
        raise ConflictError(f"Organization slug '{slug}' is already taken")

    uid = to_uuid(user_id)
    org = Organization(id=uuid.uuid4(), name=name, slug=slug, description=description, size=size)
    session.add(org)
    org.image = (
        OrganizationImage(alt_text=f"{name} logo", object_key=image_object_key)
        if image_object_key
        else None
    )

    await session.execute(
        update(UserOrganization)
        .where(UserOrganization.user_id == uid, UserOrganization.is_default.is_(True))
        .values(is_default=False)
    )
    session.add(UserOrganization(user_id=uid, organization_id=org.id, role="admin", is_default=True))
    await session.flush()

    logger.info("Created organization %s (%s) for user %s", slug, org.id, uid)
    return org


async def get_organization_by_slug(session: AsyncSession, slug: str) -> Optional[Organization]:
    result = await session.execute(
        select(Organization)
        .options(selectinload(Organization.image))
        .where(Organization.slug == slug, Organization.active.is_(True))
    )
    return result.scalar_one_or_none()


async def check_user_organization_access(
    session: AsyncSession,
    user_id: str | uuid.UUID,
    organization_id: str | uuid.UUID,
) -> bool:
    return await get_membership(session, user_id, organization_id) is not None


async def require_org_member(
    session: AsyncSession,
    slug: str,
    user_id: str | uuid.UUID,
    *,
    min_role: Optional[str] = None,
) -> Tuple[Organization, UserOrganization]:
    """Resolve an organization by slug and assert the user may act in it."""
    org = await get_organization_by_slug(session, slug)
    if org is None:
        raise NotFoundError("Organization not found")
    membership = await get_membership(session, user_id, org.id)
    if membership is None:
        raise ForbiddenError("You do not have access to this organization")
    if min_role and not has_role(membership.role, min_role):
        raise ForbiddenError(f"This action requires the '{min_role}' role")
    return org, membership


async def update_organization(
    session: AsyncSession,
    org: Organization,
    *,
    name: Optional[str] = None,
    description: Optional[str] = None,
    size: Optional[str] = None,
) -> Organization:
    if name is not None:
        if not name.strip():
            raise ServiceError("Organization name is required")
        org.name = name.strip()
    if description is not None:
        org.description = description
    if size is not None:
        org.size = size
    await session.flush()
    return org


async def set_organization_image(session: AsyncSession, org: Organization, object_key: str) -> Optional[str]:
    """Attach a logo; returns the previous object key so the caller can delete it."""
    previous = org.image.object_key if org.image is not None else None
    if org.image is None:
        org.image = OrganizationImage(alt_text=f"{org.name} logo", object_key=object_key)
    else:
        org.image.object_key = object_key
    await session.flush()
    return previous


# ── Members ─────────────────────────────────────────────────────────────


async def list_members(session: AsyncSession, organization_id: str | uuid.UUID) -> List[Dict[str, Any]]:
    result = await session.execute(
        select(UserOrganization, User)
        .join(User, User.id == UserOrganization.user_id)
        .where(
            UserOrganization.organization_id == to_uuid(organization_id),
            UserOrganization.active.is_(True),
        )
        .order_by(UserOrganization.created_at.asc())
    )
    return [
        {
            "user_id": str(user.id),
            "username": user.username,
            "name": user.name,
            "email": user.email,
            "role": membership.role,
            "department": membership.department,
            "joined_at": membership.created_at.isoformat() if membership.created_at else None,
        }
        for membership, user in result.all()
    ]


async def _count_admins(session: AsyncSession, organization_id: uuid.UUID) -> int:
    result = await session.execute(
        select(func.count())
        .select_from(UserOrganization)
        .where(
            UserOrganization.organization_id == organization_id,
            UserOrganization.role == "admin",
            UserOrganization.active.is_(True),
        )
    )
    return int(result.scalar_one())


async def _find_member(session: AsyncSession, oid: uuid.UUID, member_user_id: str | uuid.UUID) -> UserOrganization:
    try:
        membership = await get_membership(session, member_user_id, oid)
    except ValueError:
        membership = None
    if membership is None:
        raise NotFoundError("Member not found")
    return membership


async def update_member_role(
    session: AsyncSession,
    organization_id: str | uuid.UUID,
    member_user_id: str | uuid.UUID,
    role: str,
) -> UserOrganization:
    if not is_valid_role(role):
        raise ServiceError(f"Invalid role '{role}'")
    oid = to_uuid(organization_id)
    membership = await _find_member(session, oid, member_user_id)
    if membership.role == "admin" and role != "admin" and await _count_admins(session, oid) <= 1:
        raise ConflictError("Organization must keep at least one admin")
    membership.role = role
    await session.flush()
    return membership


async def remove_member(
    session: AsyncSession,
    organization_id: str | uuid.UUID,
    member_user_id: str | uuid.UUID,
) -> None:
    """Deactivate a membership (the row is kept for history)."""
    oid = to_uuid(organization_id)
    membership = await _find_member(session, oid, member_user_id)
    if membership.role == "admin" and await _count_admins(session, oid) <= 1:
        raise ConflictError("Organization must keep at least one admin")
    membership.active = False
    membership.is_default = False
    await session.flush()
    logger.info("Removed member %s from organization %s", member_user_id, oid)
