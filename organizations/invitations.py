"""
Organization invitations — create (upsert per email + organization), email,
list, revoke and accept.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from config.settings import config
from database.helpers import get_membership, to_uuid
from database.models import OrganizationInvitation, UserOrganization
from organizations.roles import is_valid_role
from onboarding.service import mark_step_completed
from utils.email import send_email
from utils.errors import NotFoundError, ServiceError

logger = logging.getLogger(__name__)

INVITATION_TTL = timedelta(days=7)


async def create_organization_invitation(
    session: AsyncSession,
    *,
    organization_id: str | uuid.UUID,
    email: str,
    inviter_id: str | uuid.UUID,
    role: str = "member",
) -> Tuple[OrganizationInvitation, bool]:
    """
    Create or refresh the invitation for ``email``.

    Returns ``(invitation, is_new)``.  A fresh token and expiry are issued
    on every call.
    """
    if not is_valid_role(role):
        raise ServiceError(f"Invalid role '{role}'")
    oid, inviter = to_uuid(organization_id), to_uuid(inviter_id)
    email = email.strip().lower()
    token = str(uuid.uuid4())
    expires_at = datetime.now(timezone.utc) + INVITATION_TTL

    result = await session.execute(
        select(OrganizationInvitation).where(
            OrganizationInvitation.email == email,
            OrganizationInvitation.organization_id == oid,
        )
    )
    invitation = result.scalar_one_or_none()
    is_new = invitation is None

    if is_new:
        invitation = OrganizationInvitation(
            email=email,
            organization_id=oid,
            token=token,
            role=role,
            expires_at=expires_at,
            inviter_id=inviter,
        )
        session.add(invitation)
    else:
        invitation.token = token
        invitation.role = role
        invitation.expires_at = expires_at
        invitation.inviter_id = inviter
    await session.flush()

    if is_new:
        try:
            # savepoint: a failed write here must not poison the invitation's transaction
            async with session.begin_nested():
                await mark_step_completed(
                    session,
                    inviter,
                    oid,
                    "invite_members",
                    {"completedVia": "member_invitation", "invitedEmail": email, "role": role},
                )
        except Exception:
            logger.exception("Failed to track invite_members onboarding step")

    return invitation, is_new


async def send_organization_invitation_email(
    invitation: OrganizationInvitation,
    *,
    organization_name: str,
    inviter_name: str,
) -> Dict[str, Any]:
    invite_url = f"{config.app_base_url.rstrip('/')}/join/{invitation.token}"
    html = (
        f"<p>{inviter_name} has invited you to join <strong>{organization_name}</strong>.</p>"
        f'<p><a href="{invite_url}">Accept invitation</a></p>'
        "<p>This invitation expires in 7 days.</p>"
    )
    text = f"{inviter_name} has invited you to join {organization_name}: {invite_url}"
    return await send_email(
        to=invitation.email,
        subject=f"You're invited to join {organization_name}",
        html=html,
        text=text,
    )


async def get_organization_invitations(
    session: AsyncSession,
    organization_id: str | uuid.UUID,
) -> List[OrganizationInvitation]:
    """Unexpired invitations, newest first."""
    result = await session.execute(
        select(OrganizationInvitation)
        .options(selectinload(OrganizationInvitation.inviter))
        .where(
            OrganizationInvitation.organization_id == to_uuid(organization_id),
            OrganizationInvitation.expires_at >= datetime.now(timezone.utc),
        )
        .order_by(OrganizationInvitation.created_at.desc())
    )
    return list(result.scalars().all())


async def delete_organization_invitation(
    session: AsyncSession,
    invitation_id: str | uuid.UUID,
    *,
    organization_id: Optional[str | uuid.UUID] = None,
) -> None:
    try:
        invitation = await session.get(OrganizationInvitation, to_uuid(invitation_id))
    except ValueError:
        invitation = None
    if invitation is None or (
        organization_id is not None and invitation.organization_id != to_uuid(organization_id)
    ):
        raise NotFoundError("Invitation not found")
    await session.delete(invitation)
    await session.flush()


async def get_pending_invitations_by_email(
    session: AsyncSession,
    email: str,
) -> List[OrganizationInvitation]:
    result = await session.execute(
        select(OrganizationInvitation)
        .options(selectinload(OrganizationInvitation.organization))
        .where(
            OrganizationInvitation.email == email.lower(),
            OrganizationInvitation.expires_at >= datetime.now(timezone.utc),
        )
        .order_by(OrganizationInvitation.created_at.desc())
    )
    return list(result.scalars().all())


async def get_invitation_by_token(session: AsyncSession, token: str) -> Optional[OrganizationInvitation]:
    result = await session.execute(
        select(OrganizationInvitation)
        .options(selectinload(OrganizationInvitation.organization))
        .where(OrganizationInvitation.token == token)
    )
    return result.scalar_one_or_none()


async def _consume_invitation(
    session: AsyncSession,
    invitation: OrganizationInvitation,
    user_id: uuid.UUID,
) -> Dict[str, Any]:
    """Join the user to the invitation's organization and delete the invite."""
    organization = invitation.organization
    existing = await get_membership(session, user_id, invitation.organization_id, active_only=False)
    already_member = existing is not None and existing.active
    if existing is not None and not existing.active:
        existing.active = True
        existing.role = invitation.role
    elif existing is None:
        session.add(
            UserOrganization(
                user_id=user_id,
                organization_id=invitation.organization_id,
                role=invitation.role,
                active=True,
            )
        )
    await session.delete(invitation)
    await session.flush()
    return {"organization": organization, "already_member": already_member}


async def accept_invitations_by_email(
    session: AsyncSession,
    email: str,
    user_id: str | uuid.UUID,
) -> List[Dict[str, Any]]:
    """Accept every pending invitation addressed to ``email``."""
    uid = to_uuid(user_id)
    results = []
    for invitation in await get_pending_invitations_by_email(session, email):
        results.append(await _consume_invitation(session, invitation, uid))
    if results:
        logger.info("User %s accepted %d pending invitation(s)", uid, len(results))
    return results


async def validate_and_accept_invitation(
    session: AsyncSession,
    token: str,
    user_id: str | uuid.UUID,
) -> Dict[str, Any]:
    invitation = await get_invitation_by_token(session, token)
    if invitation is None:
        raise NotFoundError("Invitation not found")
    if invitation.expires_at and invitation.expires_at < datetime.now(timezone.utc):
        raise ServiceError("Invitation has expired")
    return await _consume_invitation(session, invitation, to_uuid(user_id))
