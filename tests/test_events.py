"""
Tests for note change events and the hooks the notes service calls.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from conftest import make_org, make_user
from database.models import Base, IntegrationLog, OrganizationNote
from integrations.events import NoteChangeEvent, NoteEventHandler, NoteHooks
from integrations.manager import IntegrationManager
from integrations.types import TokenData
from notes import service as note_service
from onboarding.service import initialize_onboarding_steps


class _SameSession:
    """Session factory stand-in that hands out the test's own session."""

    def __init__(self, session):
        self.session = session

    def __call__(self):
        return self

    async def __aenter__(self):
        return self.session

    async def __aexit__(self, *exc):
        return False


def _hooks():
    hooks = MagicMock()
    hooks.before_note_deleted = AsyncMock()
    return hooks


@pytest.fixture
async def connected(session, org, owner, fake_provider):
    """A note connected to channel C1 of the fake provider."""
    manager = IntegrationManager()
    integration = await manager.create_integration(
        session, organization_id=org.id, provider=fake_provider, token_data=TokenData(access_token="tok")
    )
    note = await note_service.create_note(
        session, organization_id=org.id, user_id=owner.id, title="Launch", content="v1", hooks=_hooks()
    )
    await manager.connect_note_to_channel(session, note_id=note.id, integration_id=integration.id, channel_id="C1")
    return NoteEventHandler(manager), note, integration


class TestHandler:
    @pytest.mark.asyncio
    async def test_created(self, session, owner, connected, fake_provider):
        handler, note, _ = connected
        result = await handler.handle_note_created(session, str(note.id), str(owner.id))
        assert result.success and result.connections_notified == 1
        assert fake_provider.posted[0][1].change_type == "created"

    @pytest.mark.asyncio
    async def test_update_without_real_change_is_skipped(self, session, owner, connected, fake_provider):
        handler, note, _ = connected
        result = await handler.handle_note_updated(
            session, str(note.id), str(owner.id), {"title": "Launch", "content": "v1"}
        )
        assert result.success and result.connections_notified == 0
        assert fake_provider.posted == []

    @pytest.mark.asyncio
    async def test_update_with_change_posts(self, session, owner, connected, fake_provider):
        handler, note, _ = connected
        result = await handler.handle_note_updated(
            session, str(note.id), str(owner.id), {"title": "Old", "content": "v1"}
        )
        assert result.connections_notified == 1
        assert fake_provider.posted[0][1].change_type == "updated"

    @pytest.mark.asyncio
    async def test_missing_note(self, session, owner, fake_provider):
        import uuid

        result = await NoteEventHandler(IntegrationManager()).handle_note_created(
            session, str(uuid.uuid4()), str(owner.id)
        )
        assert not result.success and result.errors == ["Note not found"]

    @pytest.mark.asyncio
    async def test_provider_failures_still_count_as_processed(self, session, owner, connected, fake_provider):
        handler, note, _ = connected
        fake_provider.fail_post = True
        result = await handler.handle_note_created(session, str(note.id), str(owner.id))
        assert result.success
        assert result.connections_notified == 0
        assert len(result.errors) == 1

    @pytest.mark.asyncio
    async def test_organization_without_integrations(self, session, org, owner, fake_provider):
        handler = NoteEventHandler(IntegrationManager())
        event = NoteChangeEvent(
            note_id="n", change_type="created", user_id=str(owner.id), organization_id=str(org.id)
        )
        result = await handler.process_note_event(session, event)
        assert result.success and result.connections_notified == 0

    @pytest.mark.asyncio
    async def test_event_stats(self, session, org, owner, connected, fake_provider):
        handler, note, integration = connected
        await handler.handle_note_created(session, str(note.id), str(owner.id))
        fake_provider.fail_post = True
        await handler.handle_note_created(session, str(note.id), str(owner.id))
        session.add(IntegrationLog(integration_id=integration.id, action="fetch_channels", status="success"))
        await session.flush()

        stats = await handler.get_event_stats(session, org.id)

        assert stats == {
            "totalEvents": 2,
            "successfulEvents": 1,
            "failedEvents": 1,
            "connectionsNotified": 1,
        }


class TestHooks:
    @pytest.mark.asyncio
    async def test_before_delete_prepares_while_note_exists(self, session, owner, connected, fake_provider):
        handler, note, _ = connected
        hooks = NoteHooks(handler, session_factory=_SameSession(session))
        scheduled = []

        with patch("integrations.events.spawn_background", side_effect=lambda coro, label: scheduled.append(coro)):
            await hooks.before_note_deleted(session, note.id, owner.id)
            assert scheduled == []
            await session.commit()

        assert len(scheduled) == 1
        assert fake_provider.posted == []
        outcome = await scheduled[0]
        assert outcome == {"notified": 1, "errors": []}
        assert fake_provider.posted[0][1].change_type == "deleted"

    @pytest.mark.asyncio
    async def test_before_delete_without_connections(self, session, org, owner, fake_provider):
        hooks = NoteHooks(NoteEventHandler(IntegrationManager()), session_factory=_SameSession(session))
        note = await note_service.create_note(
            session, organization_id=org.id, user_id=owner.id, title="Solo", content="x", hooks=_hooks()
        )
        with patch("integrations.events.spawn_background") as spawn:
            await hooks.before_note_deleted(session, note.id, owner.id)
            await session.commit()
        spawn.assert_not_called()

    @pytest.mark.asyncio
    async def test_after_hooks_wait_for_commit(self, session, fake_provider):
        hooks = NoteHooks(NoteEventHandler(IntegrationManager()), session_factory=_SameSession(session))
        with patch("integrations.events.spawn_background") as spawn:
            hooks.after_note_created(session, "n1", "u1")
            hooks.after_note_updated(session, "n1", "u1", {"title": "t", "content": "c"})
            spawn.assert_not_called()
            await session.commit()

        labels = [call.kwargs["label"] for call in spawn.call_args_list]
        assert labels == ["note-created:n1", "note-updated:n1"]
        for call in spawn.call_args_list:
            call.args[0].close()

    @pytest.mark.asyncio
    async def test_rolled_back_write_schedules_nothing(self, session, fake_provider):
        hooks = NoteHooks(NoteEventHandler(IntegrationManager()), session_factory=_SameSession(session))
        with patch("integrations.events.spawn_background") as spawn:
            hooks.after_note_created(session, "n1", "u1")
            await session.rollback()
            await session.commit()
        spawn.assert_not_called()


class TestHooksAgainstCommittedData:
    """The background session is a separate connection to a file database."""

    @pytest.fixture
    async def file_factory(self, tmp_path):
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'notes.db'}")
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        try:
            yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        finally:
            await engine.dispose()

    @pytest.mark.asyncio
    async def test_rename_is_posted_after_commit(self, file_factory, fake_provider):
        manager = IntegrationManager()
        async with file_factory() as setup:
            await initialize_onboarding_steps(setup)
            user = await make_user(setup, name="Olive Owner")
            org = await make_org(setup, user)
            integration = await manager.create_integration(
                setup, organization_id=org.id, provider=fake_provider, token_data=TokenData(access_token="tok")
            )
            note = await note_service.create_note(
                setup, organization_id=org.id, user_id=user.id, title="Launch", content="v1", hooks=_hooks()
            )
            await manager.connect_note_to_channel(
                setup, note_id=note.id, integration_id=integration.id, channel_id="C1"
            )
            await setup.commit()

        hooks = NoteHooks(NoteEventHandler(manager), session_factory=file_factory)
        scheduled = []
        async with file_factory() as request_session:
            stored = await request_session.get(OrganizationNote, note.id)
            with patch(
                "integrations.events.spawn_background", side_effect=lambda coro, label: scheduled.append(coro)
            ):
                await note_service.update_note(request_session, stored, user.id, title="Renamed", hooks=hooks)
                assert scheduled == []
                await request_session.commit()

        assert len(scheduled) == 1
        result = await scheduled[0]
        assert result.connections_notified == 1
        assert [(channel, message.title, message.change_type) for channel, message in fake_provider.posted] == [
            ("C1", "Renamed", "updated")
        ]
