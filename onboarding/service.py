"""
Onboarding checklist — default steps, per-user progress, completion
tracking and auto-detection from organization data.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from database.helpers import to_uuid
from database.models import (
    Integration,
    OnboardingProgress,
    OnboardingStep,
    OnboardingStepProgress,
    Organization,
    OrganizationInvitation,
    OrganizationNote,
    UserOrganization,
)
from utils.errors import NotFoundError

logger = logging.getLogger(__name__)

DEFAULT_ONBOARDING_STEPS: List[Dict[str, Any]] = [
    {
        "key": "complete_profile",
        "title": "Set up your organization profile",
        "description": "Update your organization name and settings",
        "action_config": {"type": "navigate", "target": "/settings", "label": "Complete Profile"},
        "auto_detect": True,
        "detect_config": {"condition": "hasCompletedProfile"},
        "sort_order": 1,
    },
    {
        "key": "create_first_note",
        "title": "Create your first note",
        "description": "Start documenting your ideas and thoughts",
        "action_config": {"type": "navigate", "target": "/notes/new", "label": "Create Note"},
        "auto_detect": True,
        "detect_config": {"condition": "hasNotes"},
        "sort_order": 2,
    },
    {
        "key": "invite_members",
        "title": "Invite team members",
        "description": "Collaborate with your team by inviting members",
        "action_config": {"type": "navigate", "target": "/settings/members", "label": "Invite Members"},
        "auto_detect": True,
        "detect_config": {"condition": "hasMembersInvited"},
        "sort_order": 3,
    },
    {
        "key": "try_ai_chat",
        "title": "Try the AI chat feature",
        "description": "Experience AI-powered assistance for your notes (auto-completes when you use AI)",
        "action_config": {"type": "navigate", "target": "/notes", "label": "Go to Notes"},
        "auto_detect": True,
        "detect_config": {"condition": "hasUsedAiChat"},
        "sort_order": 4,
    },
    {
        "key": "explore_command_menu",
        "title": "Explore the command menu",
        "description": "Use Cmd/Ctrl + K to quickly navigate and perform actions",
        "action_config": {"type": "modal", "target": "command-menu", "label": "Open Command Menu"},
        # tracked manually when the command menu opens
        "auto_detect": False,
        "detect_config": {"condition": "hasUsedCommandMenu"},
        "sort_order": 5,
    },
    {
        "key": "connect_integration",
        "title": "Connect integrations",
        "description": "Enhance your workflow with third-party integrations",
        "action_config": {"type": "navigate", "target": "/settings/integrations", "label": "View Integrations"},
        "auto_detect": True,
        "detect_config": {"condition": "hasIntegrations"},
        "sort_order": 6,
    },
]


async def initialize_onboarding_steps(session: AsyncSession) -> None:
    """Upsert the default steps by key."""
    result = await session.execute(select(OnboardingStep))
    existing = {step.key: step for step in result.scalars().all()}
    for spec in DEFAULT_ONBOARDING_STEPS:
        step = existing.get(spec["key"])
        if step is None:
            session.add(OnboardingStep(**spec))
        else:
            for field, value in spec.items():
                setattr(step, field, value)
    await session.flush()


async def _active_steps(session: AsyncSession) -> List[OnboardingStep]:
    result = await session.execute(
        select(OnboardingStep)
        .where(OnboardingStep.is_active.is_(True))
        .order_by(OnboardingStep.sort_order.asc())
    )
    return list(result.scalars().all())


async def _get_progress(session: AsyncSession, uid: uuid.UUID, oid: uuid.UUID) -> Optional[OnboardingProgress]:
    result = await session.execute(
        select(OnboardingProgress).where(
            OnboardingProgress.user_id == uid,
            OnboardingProgress.organization_id == oid,
        )
    )
    return result.scalar_one_or_none()


async def _get_step_progress(
    session: AsyncSession, uid: uuid.UUID, oid: uuid.UUID, step_id: uuid.UUID
) -> Optional[OnboardingStepProgress]:
    result = await session.execute(
        select(OnboardingStepProgress).where(
            OnboardingStepProgress.user_id == uid,
            OnboardingStepProgress.organization_id == oid,
            OnboardingStepProgress.step_id == step_id,
        )
    )
    return result.scalar_one_or_none()


async def get_onboarding_progress(
    session: AsyncSession,
    user_id: str | uuid.UUID,
    organization_id: str | uuid.UUID,
) -> Dict[str, Any]:
    """
    Checklist state for a user in an organization.

    Creates the overall progress record on first access.
    """
    uid, oid = to_uuid(user_id), to_uuid(organization_id)
    steps = await _active_steps(session)

    progress = await _get_progress(session, uid, oid)
    if progress is None:
        progress = OnboardingProgress(
            user_id=uid,
            organization_id=oid,
            total_steps=len(steps),
            completed_count=0,
            is_completed=False,
            is_visible=True,
        )
        session.add(progress)
        await session.flush()

    result = await session.execute(
        select(OnboardingStepProgress).where(
            OnboardingStepProgress.user_id == uid,
            OnboardingStepProgress.organization_id == oid,
        )
    )
    by_step = {p.step_id: p for p in result.scalars().all()}

    items = []
    for step in steps:
        done = by_step.get(step.id)
        items.append(
            {
                "id": str(step.id),
                "key": step.key,
                "title": step.title,
                "description": step.description,
                "icon": step.icon,
                "action_config": step.action_config,
                "detect_config": step.detect_config,
                "sort_order": step.sort_order,
                "is_completed": bool(done and done.is_completed),
                "completed_at": done.completed_at.isoformat() if done and done.completed_at else None,
            }
        )

    completed_count = sum(1 for item in items if item["is_completed"])
    return {
        "total_steps": len(steps),
        "completed_count": completed_count,
        "is_completed": completed_count == len(steps),
        "is_visible": progress.is_visible,
        "steps": items,
    }


async def mark_step_completed(
    session: AsyncSession,
    user_id: str | uuid.UUID,
    organization_id: str | uuid.UUID,
    step_key: str,
    metadata: Optional[Dict[str, Any]] = None,
) -> None:
    uid, oid = to_uuid(user_id), to_uuid(organization_id)
    result = await session.execute(select(OnboardingStep).where(OnboardingStep.key == step_key))
    step = result.scalar_one_or_none()
    if step is None:
        raise NotFoundError(f"Onboarding step '{step_key}' not found")

    now = datetime.now(timezone.utc)
    step_progress = await _get_step_progress(session, uid, oid, step.id)
    if step_progress is None:
        step_progress = OnboardingStepProgress(user_id=uid, organization_id=oid, step_id=step.id)
        session.add(step_progress)
    step_progress.is_completed = True
    step_progress.completed_at = now
    step_progress.metadata_ = metadata
    await session.flush()

    completed_count = (
        await session.execute(
            select(func.count())
            .select_from(OnboardingStepProgress)
            .where(
                OnboardingStepProgress.user_id == uid,
                OnboardingStepProgress.organization_id == oid,
                OnboardingStepProgress.is_completed.is_(True),
            )
        )
    ).scalar_one()
    total_steps = (
        await session.execute(
            select(func.count()).select_from(OnboardingStep).where(OnboardingStep.is_active.is_(True))
        )
    ).scalar_one()
    is_completed = completed_count == total_steps

    progress = await _get_progress(session, uid, oid)
    if progress is None:
        progress = OnboardingProgress(user_id=uid, organization_id=oid)
        session.add(progress)
    progress.completed_count = completed_count
    progress.total_steps = total_steps
    progress.is_completed = is_completed
    progress.completed_at = now if is_completed else None
    await session.flush()
    logger.debug("Onboarding step %s completed for %s in %s", step_key, uid, oid)


async def hide_onboarding(
    session: AsyncSession,
    user_id: str | uuid.UUID,
    organization_id: str | uuid.UUID,
) -> None:
    uid, oid = to_uuid(user_id), to_uuid(organization_id)
    progress = await _get_progress(session, uid, oid)
    if progress is None:
        progress = OnboardingProgress(
            user_id=uid, organization_id=oid, total_steps=0, completed_count=0, is_completed=False
        )
        session.add(progress)
    progress.is_visible = False
    await session.flush()


async def _count(session: AsyncSession, stmt) -> int:
    return int((await session.execute(stmt)).scalar_one())


async def get_detection_data(session: AsyncSession, uid: uuid.UUID, oid: uuid.UUID) -> Dict[str, bool]:
    notes_count = await _count(
        session,
        select(func.count()).select_from(OrganizationNote).where(
            OrganizationNote.organization_id == oid, OrganizationNote.created_by_id == uid
        ),
    )
    members_count = await _count(
        session,
        select(func.count()).select_from(UserOrganization).where(
            UserOrganization.organization_id == oid, UserOrganization.active.is_(True)
        ),
    )
    integrations_count = await _count(
        session,
        select(func.count()).select_from(Integration).where(
            Integration.organization_id == oid, Integration.is_active.is_(True)
        ),
    )
    invitations_count = await _count(
        session,
        select(func.count()).select_from(OrganizationInvitation).where(
            OrganizationInvitation.organization_id == oid, OrganizationInvitation.inviter_id == uid
        ),
    )
    organization = await session.get(Organization, oid)

    async def _step_done(key: str) -> bool:
        return (
            await _count(
                session,
                select(func.count())
                .select_from(OnboardingStepProgress)
                .join(OnboardingStep, OnboardingStep.id == OnboardingStepProgress.step_id)
                .where(
                    OnboardingStepProgress.user_id == uid,
                    OnboardingStepProgress.organization_id == oid,
                    OnboardingStepProgress.is_completed.is_(True),
                    OnboardingStep.key == key,
                ),
            )
            > 0
        )

    return {
        "hasNotes": notes_count > 0,
        "hasMembersInvited": members_count > 1 or invitations_count > 0,
        "hasCompletedProfile": bool(
            organization is not None
            and (organization.name or "").strip()
            and (organization.slug or "").strip()
        ),
        "hasUsedAiChat": await _step_done("try_ai_chat"),
        "hasUsedCommandMenu": await _step_done("explore_command_menu"),
        "hasIntegrations": integrations_count > 0,
    }


async def auto_detect_completed_steps(
    session: AsyncSession,
    user_id: str | uuid.UUID,
    organization_id: str | uuid.UUID,
) -> List[str]:
    """Mark every auto-detectable step whose condition now holds; returns the new keys."""
    uid, oid = to_uuid(user_id), to_uuid(organization_id)
    data = await get_detection_data(session, uid, oid)

    result = await session.execute(
        select(OnboardingStep).where(
            OnboardingStep.is_active.is_(True),
            OnboardingStep.auto_detect.is_(True),
        )
    )
    newly_completed = []
    for step in result.scalars().all():
        condition = (step.detect_config or {}).get("condition")
        if not condition or not data.get(condition, False):
            continue
        existing = await _get_step_progress(session, uid, oid, step.id)
        if existing is not None and existing.is_completed:
            continue
        await mark_step_completed(session, uid, oid, step.key, {"autoDetected": True})
        newly_completed.append(step.key)
    return newly_completed
