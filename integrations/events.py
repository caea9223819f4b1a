"""
Note change events — turn note create/update/delete into channel posts.

``NoteEventHandler`` does the work inside a session it is handed;
``NoteHooks`` is what the notes service calls, and schedules that work in
the background so a slow provider never holds up a note request.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.helpers import run_after_commit, run_in_new_session, spawn_background, to_uuid
from database.models import IntegrationLog, OrganizationNote
from integrations.manager import IntegrationManager, integration_manager
from integrations.types import ChangeType

logger = logging.getLogger(__name__)


class NoteChangeEvent(BaseModel):
    note_id: str
    change_type: ChangeType
    user_id: str
    organization_id: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: Dict[str, Any] = Field(default_factory=dict)


class NoteEventResult(BaseModel):
    success: bool
    connections_notified: int = 0
    errors: List[str] = Field(default_factory=list)


def _failure(message: str) -> NoteEventResult:
    return NoteEventResult(success=False, errors=[message])


class NoteEventHandler:
    def __init__(self, manager: Optional[IntegrationManager] = None):
        self.manager = manager or integration_manager

    async def handle_note_created(self, session: AsyncSession, note_id: str, user_id: str) -> NoteEventResult:
        note = await session.get(OrganizationNote, to_uuid(note_id))
        if note is None:
            return _failure("Note not found")
        return await self.process_note_event(
            session,
            NoteChangeEvent(
                note_id=str(note.id),
                change_type="created",
                user_id=str(user_id),
                organization_id=str(note.organization_id),
            ),
        )

    async def handle_note_updated(
        self,
        session: AsyncSession,
        note_id: str,
        user_id: str,
        previous: Optional[Dict[str, str]] = None,
        current: Optional[Dict[str, str]] = None,
    ) -> NoteEventResult:
        """
        Only a title or content change is worth a notification.

        ``current`` is the title and content the writer saved; the stored
        note is used when it is not given.
        """
        note = await session.get(OrganizationNote, to_uuid(note_id))
        if note is None:
            return _failure("Note not found")

        current = current or {"title": note.title, "content": note.content}
        changes: List[str] = []
        if previous is not None:
            if previous.get("title") != current.get("title"):
                changes.append("title")
            if previous.get("content") != current.get("content"):
                changes.append("content")
            if not changes:
                return NoteEventResult(success=True)

        return await self.process_note_event(
            session,
            NoteChangeEvent(
                note_id=str(note.id),
                change_type="updated",
                user_id=str(user_id),
                organization_id=str(note.organization_id),
                metadata={
                    "previousTitle": (previous or {}).get("title"),
                    "changes": changes,
                },
            ),
        )

    async def handle_note_deleted(
        self,
        session: AsyncSession,
        note_id: str,
        user_id: str,
        note_data: Dict[str, str],
    ) -> NoteEventResult:
        """Must run while the note and its connections still exist."""
        return await self.process_note_event(
            session,
            NoteChangeEvent(
                note_id=str(note_id),
                change_type="deleted",
                user_id=str(user_id),
                organization_id=str(note_data["organization_id"]),
                metadata={"previousTitle": note_data.get("title")},
            ),
        )

    async def process_note_event(self, session: AsyncSession, event: NoteChangeEvent) -> NoteEventResult:
        try:
            integrations = await self.manager.get_organization_integrations(session, event.organization_id)
            if not integrations:
                return NoteEventResult(success=True)
            outcome = await self.manager.handle_note_update(
                session, event.note_id, event.change_type, event.user_id
            )
        except Exception as exc:
            logger.exception("Error processing note %s event for %s", event.change_type, event.note_id)
            return _failure(str(exc))
        return NoteEventResult(
            success=True,
            connections_notified=outcome["notified"],
            errors=outcome["errors"],
        )

    async def process_batch_events(
        self,
        session: AsyncSession,
        events: List[NoteChangeEvent],
    ) -> List[NoteEventResult]:
        return [await self.process_note_event(session, event) for event in events]

    async def get_event_stats(
        self,
        session: AsyncSession,
        organization_id: str | uuid.UUID,
        since_hours: int = 24,
    ) -> Dict[str, int]:
        empty = {"totalEvents": 0, "successfulEvents": 0, "failedEvents": 0, "connectionsNotified": 0}
        integrations = await self.manager.get_organization_integrations(session, organization_id)
        if not integrations:
            return empty

        since = datetime.now(timezone.utc) - timedelta(hours=since_hours)
        result = await session.execute(
            select(IntegrationLog.status, IntegrationLog.request_data).where(
                IntegrationLog.integration_id.in_([i.id for i in integrations]),
                IntegrationLog.action == "post_message",
                IntegrationLog.created_at >= since,
            )
        )
        rows = result.all()
        pairs = {
            (data["noteId"], data["channelId"])
            for _, data in rows
            if isinstance(data, dict) and data.get("noteId") and data.get("channelId")
        }
        return {
            "totalEvents": len(rows),
            "successfulEvents": sum(1 for status, _ in rows if status == "success"),
            "failedEvents": sum(1 for status, _ in rows if status == "error"),
            "connectionsNotified": len(pairs),
        }


class NoteHooks:
    """
    Entry points the notes service calls around a write.

    Every hook returns immediately and never raises. Posting is queued until
    the caller's transaction commits, then runs in a background task with
    its own session, so it always sees the committed note.
    """

    def __init__(
        self,
        handler: Optional[NoteEventHandler] = None,
        session_factory: Optional[async_sessionmaker] = None,
    ):
        self.handler = handler or NoteEventHandler()
        self._session_factory = session_factory

    @property
    def session_factory(self) -> async_sessionmaker:
        if self._session_factory is None:
            from database.session import async_session_factory

            self._session_factory = async_session_factory
        return self._session_factory

    def after_note_created(
        self,
        session: AsyncSession,
        note_id: str | uuid.UUID,
        user_id: str | uuid.UUID,
    ) -> None:
        nid, uid = str(note_id), str(user_id)
        run_after_commit(
            session,
            lambda: spawn_background(
                run_in_new_session(self.session_factory, lambda s: self.handler.handle_note_created(s, nid, uid)),
                label=f"note-created:{nid}",
            ),
        )

    def after_note_updated(
        self,
        session: AsyncSession,
        note_id: str | uuid.UUID,
        user_id: str | uuid.UUID,
        previous: Optional[Dict[str, str]] = None,
        current: Optional[Dict[str, str]] = None,
    ) -> None:
        nid, uid = str(note_id), str(user_id)
        run_after_commit(
            session,
            lambda: spawn_background(
                run_in_new_session(
                    self.session_factory,
                    lambda s: self.handler.handle_note_updated(s, nid, uid, previous, current),
                ),
                label=f"note-updated:{nid}",
            ),
        )

    async def before_note_deleted(
        self,
        session: AsyncSession,
        note_id: str | uuid.UUID,
        user_id: str | uuid.UUID,
    ) -> None:
        """
        Capture the outgoing message while the note still exists, then post
        it in the background once the delete has committed.
        """
        manager = self.handler.manager
        try:
            connections, message = await manager.prepare_note_message(session, note_id, "deleted", user_id)
        except Exception:
            logger.exception("Failed to prepare delete notification for note %s", note_id)
            return
        if not connections or message is None:
            return

        for connection in connections:
            session.expunge(connection)
        run_after_commit(
            session,
            lambda: spawn_background(
                run_in_new_session(
                    self.session_factory, lambda s: manager.dispatch_note_message(s, connections, message)
                ),
                label=f"note-deleted:{note_id}",
            ),
        )


note_hooks = NoteHooks()
