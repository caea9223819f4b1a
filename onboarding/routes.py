"""
Onboarding checklist routes.

Route prefix: /api/v1/onboarding
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from auth.dependencies import db_session, get_current_user_id
from onboarding import service as onboarding_service
from organizations.service import require_org_member

logger = logging.getLogger(__name__)

router = APIRouter(tags=["onboarding"])


class CompleteStepRequest(BaseModel):
    step_key: str
    metadata: Optional[Dict[str, Any]] = None


@router.get("/{slug}")
async def get_progress(
    slug: str,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
) -> Dict[str, Any]:
    """Progress after picking up anything the user has already done."""
    org, _ = await require_org_member(session, slug, user_id)
    detected = await onboarding_service.auto_detect_completed_steps(session, user_id, org.id)
    if detected:
        logger.debug("Auto-detected onboarding steps %s for %s", detected, user_id)
    progress = await onboarding_service.get_onboarding_progress(session, user_id, org.id)
    return {**progress, "newly_completed": detected}


@router.post("/{slug}/complete")
async def complete_step(
    slug: str,
    body: CompleteStepRequest,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
) -> Dict[str, Any]:
    org, _ = await require_org_member(session, slug, user_id)
    await onboarding_service.mark_step_completed(session, user_id, org.id, body.step_key, body.metadata)
    return await onboarding_service.get_onboarding_progress(session, user_id, org.id)


@router.post("/{slug}/hide")
async def hide(
    slug: str,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
) -> Dict[str, Any]:
    org, _ = await require_org_member(session, slug, user_id)
    await onboarding_service.hide_onboarding(session, user_id, org.id)
    return {"status": "hidden"}
