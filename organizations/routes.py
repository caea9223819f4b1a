"""
Organization API routes — memberships, members, roles and invitations.

Route prefix: /api/v1/organizations
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from auth.dependencies import db_session, get_current_user, get_current_user_id
from auth.models import User
from billing.service import schedule_seat_sync
from organizations import invitations as invitation_service
from organizations import service as org_service
from utils.errors import ForbiddenError

logger = logging.getLogger(__name__)

router = APIRouter(tags=["organizations"])


class OrganizationCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=128)
    slug: str = Field(..., min_length=1, max_length=64)
    description: Optional[str] = None
    size: Optional[str] = None


class OrganizationUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, max_length=128)
    description: Optional[str] = None
    size: Optional[str] = None


class DefaultOrganizationRequest(BaseModel):
    organization_id: str


class RoleRequest(BaseModel):
    role: str


class InvitationRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    role: str = "member"


def _serialize_invitation(invitation) -> Dict[str, Any]:
    return {
        "id": str(invitation.id),
        "email": invitation.email,
        "role": invitation.role,
        "expires_at": invitation.expires_at.isoformat() if invitation.expires_at else None,
        "created_at": invitation.created_at.isoformat() if invitation.created_at else None,
    }


# ── Current user's organizations ───────────────────────────────────────


@router.get("")
async def list_organizations(
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
) -> List[Dict[str, Any]]:
    return await org_service.get_user_organizations(session, user_id)


@router.post("", status_code=201)
async def create_organization(
    body: OrganizationCreateRequest,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
) -> Dict[str, Any]:
    org = await org_service.create_organization(
        session,
        name=body.name,
        slug=body.slug,
        user_id=user_id,
        description=body.description,
        size=body.size,
    )
    return org_service.serialize_organization(org, user_count=1)


@router.get("/default")
async def get_default_organization(
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
) -> Optional[Dict[str, Any]]:
    return await org_service.get_user_default_organization(session, user_id)


@router.put("/default")
async def set_default_organization(
    body: DefaultOrganizationRequest,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
) -> Optional[Dict[str, Any]]:
    return await org_service.set_user_default_organization(session, user_id, body.organization_id)


# ── Invitations addressed to the current user ──────────────────────────


@router.get("/invitations/pending")
async def pending_invitations(
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(db_session),
) -> List[Dict[str, Any]]:
    invitations = await invitation_service.get_pending_invitations_by_email(session, user.email)
    return [
        {
            **_serialize_invitation(inv),
            "organization": {"id": str(inv.organization.id), "name": inv.organization.name, "slug": inv.organization.slug},
        }
        for inv in invitations
    ]


@router.post("/invitations/{token}/accept")
async def accept_invitation(
    token: str,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
) -> Dict[str, Any]:
    result = await invitation_service.validate_and_accept_invitation(session, token, user_id)
    organization = result["organization"]
    if not result["already_member"]:
        await session.commit()
        schedule_seat_sync(organization)
    return {
        "status": "already_member" if result["already_member"] else "joined",
        "organization": {"id": str(organization.id), "name": organization.name, "slug": organization.slug},
    }


# ── Single organization ────────────────────────────────────────────────


@router.get("/{slug}")
async def get_organization(
    slug: str,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
) -> Dict[str, Any]:
    org, membership = await org_service.require_org_member(session, slug, user_id)
    count = await org_service.count_active_members(session, org.id)
    return {
        **org_service.serialize_organization(org, user_count=count),
        "role": membership.role,
        "is_default": membership.is_default,
    }


@router.patch("/{slug}")
async def update_organization(
    slug: str,
    body: OrganizationUpdateRequest,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
) -> Dict[str, Any]:
    org, _ = await org_service.require_org_member(session, slug, user_id, min_role="admin")
    await org_service.update_organization(
        session, org, name=body.name, description=body.description, size=body.size
    )
    return org_service.serialize_organization(org)


@router.get("/{slug}/members")
async def list_members(
    slug: str,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
) -> List[Dict[str, Any]]:
    org, _ = await org_service.require_org_member(session, slug, user_id)
    return await org_service.list_members(session, org.id)


@router.patch("/{slug}/members/{member_id}")
async def change_member_role(
    slug: str,
    member_id: str,
    body: RoleRequest,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
) -> Dict[str, Any]:
    org, _ = await org_service.require_org_member(session, slug, user_id, min_role="admin")
    membership = await org_service.update_member_role(session, org.id, member_id, body.role)
    return {"user_id": member_id, "role": membership.role}


@router.delete("/{slug}/members/{member_id}")
async def remove_member(
    slug: str,
    member_id: str,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
) -> Dict[str, Any]:
    """Admins remove anyone; any member may remove themselves."""
    org, membership = await org_service.require_org_member(session, slug, user_id)
    if member_id != str(user_id) and membership.role != "admin":
        raise ForbiddenError("This action requires the 'admin' role")
    await org_service.remove_member(session, org.id, member_id)
    await session.commit()
    schedule_seat_sync(org)
    return {"status": "removed", "user_id": member_id}


# ── Invitations ────────────────────────────────────────────────────────


@router.get("/{slug}/invitations")
async def list_invitations(
    slug: str,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
) -> List[Dict[str, Any]]:
    org, _ = await org_service.require_org_member(session, slug, user_id, min_role="admin")
    invitations = await invitation_service.get_organization_invitations(session, org.id)
    return [_serialize_invitation(inv) for inv in invitations]


@router.post("/{slug}/invitations", status_code=201)
async def invite_member(
    slug: str,
    body: InvitationRequest,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(db_session),
) -> Dict[str, Any]:
    org, _ = await org_service.require_org_member(session, slug, user.id, min_role="admin")
    invitation, is_new = await invitation_service.create_organization_invitation(
        session,
        organization_id=org.id,
        email=body.email,
        inviter_id=user.id,
        role=body.role,
    )
    email_result = await invitation_service.send_organization_invitation_email(
        invitation, organization_name=org.name, inviter_name=user.display_name
    )
    if email_result.get("status") != "success":
        logger.warning("Invitation email to %s was not delivered", invitation.email)
    return {
        **_serialize_invitation(invitation),
        "is_new": is_new,
        "email_sent": email_result.get("status") == "success",
    }


@router.delete("/{slug}/invitations/{invitation_id}")
async def delete_invitation(
    slug: str,
    invitation_id: str,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
) -> Dict[str, Any]:
    org, _ = await org_service.require_org_member(session, slug, user_id, min_role="admin")
    await invitation_service.delete_organization_invitation(session, invitation_id, organization_id=org.id)
    return {"status": "deleted", "invitation_id": invitation_id}
