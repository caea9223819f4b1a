"""
Note activity log — record who did what to a note and render it as text.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Literal, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from database.helpers import to_uuid
from database.models import NoteActivityLog

logger = logging.getLogger(__name__)

ActivityAction = Literal[
    "viewed",
    "created",
    "updated",
    "deleted",
    "sharing_changed",
    "access_granted",
    "access_revoked",
    "integration_connected",
    "integration_disconnected",
    "comment_added",
    "comment_deleted",
]


async def log_note_activity(
    session: AsyncSession,
    *,
    note_id: str | uuid.UUID,
    user_id: str | uuid.UUID,
    action: ActivityAction,
    metadata: Optional[Dict[str, Any]] = None,
    target_user_id: Optional[str | uuid.UUID] = None,
    integration_id: Optional[str | uuid.UUID] = None,
    comment_id: Optional[str | uuid.UUID] = None,
) -> None:
    """Write an activity entry. Failures are logged, never raised."""
    try:
        session.add(
            NoteActivityLog(
                note_id=to_uuid(note_id),
                user_id=to_uuid(user_id),
                action=action,
                metadata_=metadata,
                target_user_id=to_uuid(target_user_id) if target_user_id else None,
                integration_id=to_uuid(integration_id) if integration_id else None,
                comment_id=to_uuid(comment_id) if comment_id else None,
            )
        )
        await session.flush()
    except Exception:
        logger.exception("Failed to log note activity %s for note %s", action, note_id)


async def get_note_activity_logs(
    session: AsyncSession,
    note_id: str | uuid.UUID,
    limit: int = 50,
) -> List[NoteActivityLog]:
    result = await session.execute(
        select(NoteActivityLog)
        .where(NoteActivityLog.note_id == to_uuid(note_id))
        .options(
            selectinload(NoteActivityLog.user),
            selectinload(NoteActivityLog.target_user),
            selectinload(NoteActivityLog.integration),
        )
        .order_by(NoteActivityLog.created_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


def display_name(user: Any) -> Optional[str]:
    if user is None:
        return None
    return user.name or user.username


def format_activity_message(log: NoteActivityLog) -> str:
    user_name = display_name(log.user)
    target_name = display_name(log.target_user)
    provider = log.integration.provider_name if log.integration is not None else None
    metadata = log.metadata_ or {}
    action = log.action

    if action == "viewed":
        return f"{user_name} viewed the note"
    if action == "created":
        return f"{user_name} created the note"
    if action == "updated":
        title_changed = metadata.get("titleChanged")
        content_changed = metadata.get("contentChanged")
        if title_changed and content_changed:
            return f"{user_name} updated the title and content"
        if title_changed:
            return f"{user_name} updated the title"
        if content_changed:
            return f"{user_name} updated the content"
        return f"{user_name} updated the note"
    if action == "deleted":
        return f"{user_name} deleted the note"
    if action == "sharing_changed":
        return f"{user_name} made the note {'public' if metadata.get('isPublic') else 'private'}"
    if action == "access_granted":
        return f"{user_name} granted access to {target_name}"
    if action == "access_revoked":
        return f"{user_name} revoked access from {target_name}"
    if action == "integration_connected":
        channel = metadata.get("channelName") or metadata.get("externalId")
        return f"{user_name} connected note to {provider} channel: {channel}"
    if action == "integration_disconnected":
        channel = metadata.get("channelName") or metadata.get("externalId")
        return f"{user_name} disconnected note from {provider} channel: {channel}"
    if action == "comment_added":
        return f"{user_name} {'replied to a comment' if metadata.get('parentId') else 'added a comment'}"
    if action == "comment_deleted":
        return f"{user_name} deleted a comment"
    return f"{user_name} performed an action"


def serialize_activity(log: NoteActivityLog) -> Dict[str, Any]:
    return {
        "id": str(log.id),
        "action": log.action,
        "message": format_activity_message(log),
        "metadata": log.metadata_ or {},
        "user": {"id": str(log.user.id), "name": log.user.name, "username": log.user.username} if log.user else None,
        "targetUserId": str(log.target_user_id) if log.target_user_id else None,
        "integrationId": str(log.integration_id) if log.integration_id else None,
        "commentId": str(log.comment_id) if log.comment_id else None,
        "createdAt": log.created_at.isoformat() if log.created_at else None,
    }
