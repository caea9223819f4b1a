"""
Database helper functions shared by the service modules.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Awaitable, Callable, Optional, Set

from sqlalchemy import event, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.models import Organization, User, UserOrganization

logger = logging.getLogger(__name__)

# Strong references so fire-and-forget tasks are not garbage-collected mid-flight
_background_tasks: Set[asyncio.Task] = set()


def to_uuid(value: str | uuid.UUID) -> uuid.UUID:
    return uuid.UUID(value) if isinstance(value, str) else value


async def get_user(session: AsyncSession, user_id: str | uuid.UUID) -> Optional[User]:
    return await session.get(User, to_uuid(user_id))


async def get_organization(session: AsyncSession, organization_id: str | uuid.UUID) -> Optional[Organization]:
    return await session.get(Organization, to_uuid(organization_id))


async def get_membership(
    session: AsyncSession,
    user_id: str | uuid.UUID,
    organization_id: str | uuid.UUID,
    *,
    active_only: bool = True,
) -> Optional[UserOrganization]:
    """Return the ``UserOrganization`` row linking a user to an organization."""
    stmt = select(UserOrganization).where(
        UserOrganization.user_id == to_uuid(user_id),
        UserOrganization.organization_id == to_uuid(organization_id),
    )
    if active_only:
        stmt = stmt.where(UserOrganization.active.is_(True))
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def run_in_new_session(
    session_factory: async_sessionmaker,
    fn: Callable[[AsyncSession], Awaitable[Any]],
) -> Any:
    """Run ``fn`` inside an independent session and commit on success."""
    async with session_factory() as session:
        try:
            result = await fn(session)
            await session.commit()
            return result
        except Exception:
            await session.rollback()
            raise


def spawn_background(coro: Awaitable[Any], *, label: str) -> asyncio.Task:
    """
    Schedule a coroutine without awaiting it.

    Failures are logged and never propagate to the caller.
    """

    async def _runner() -> None:
        try:
            await coro
        except Exception:
            logger.exception("Background task '%s' failed", label)

    task = asyncio.create_task(_runner())
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


_AFTER_COMMIT_KEY = "after_commit_callbacks"


def run_after_commit(session: AsyncSession, callback: Callable[[], Any]) -> None:
    """
    Call ``callback`` once the session's current transaction commits.

    Callbacks queued in a transaction that rolls back are dropped. Work that
    reads the rows just written from another session must be queued here,
    not started straight away.
    """
    sync_session = session.sync_session
    pending = sync_session.info.get(_AFTER_COMMIT_KEY)
    if pending is None:
        pending = sync_session.info[_AFTER_COMMIT_KEY] = []
        event.listen(sync_session, "after_commit", _flush_after_commit)
        event.listen(sync_session, "after_soft_rollback", _drop_after_commit)
    pending.append(callback)


def _flush_after_commit(sync_session) -> None:
    pending = sync_session.info.get(_AFTER_COMMIT_KEY) or []
    callbacks, pending[:] = list(pending), []
    for callback in callbacks:
        try:
            callback()
        except Exception:
            logger.exception("After-commit callback failed")


def _drop_after_commit(sync_session, previous_transaction) -> None:
    if previous_transaction.parent is None:
        pending = sync_session.info.get(_AFTER_COMMIT_KEY)
        if pending:
            pending.clear()
