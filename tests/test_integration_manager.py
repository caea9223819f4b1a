"""
Tests for IntegrationManager: OAuth completion, integration rows,
note-to-channel connections and message fan-out.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy import func, select

from conftest import make_org
from database.models import Integration, IntegrationLog, NoteIntegrationConnection, User
from integrations.encryption import decrypt_token
from integrations.manager import IntegrationManager, generate_note_url, truncate_content
from integrations.types import IntegrationError, OAuthCallbackParams, TokenData
from notes import service as note_service
from onboarding.service import get_onboarding_progress
from utils.errors import NotFoundError


def _hooks():
    hooks = MagicMock()
    hooks.before_note_deleted = AsyncMock()
    return hooks


async def _note(session, org, user, title="Launch plan"):
    return await note_service.create_note(
        session, organization_id=org.id, user_id=user.id, title=title, content="Ship it", hooks=_hooks()
    )


async def _integration(manager, session, org, provider, token="tok"):
    return await manager.create_integration(
        session,
        organization_id=org.id,
        provider=provider,
        token_data=TokenData(access_token=token, refresh_token="refresh-1", metadata={"teamName": "Acme HQ"}),
    )


@pytest.fixture
def manager(fake_provider):
    return IntegrationManager()


class TestHelpers:
    def test_truncate_content(self):
        assert truncate_content("short") == "short"
        assert truncate_content("x" * 600) == "x" * 497 + "..."

    def test_note_url(self):
        assert generate_note_url("acme", "n1") == "https://app.example.com/app/acme/notes/n1"


class TestIntegrationRows:
    @pytest.mark.asyncio
    async def test_create_encrypts_and_flattens_metadata(self, session, org, manager, fake_provider):
        integration = await _integration(manager, session, org, fake_provider)

        assert integration.access_token != "tok"
        assert decrypt_token(integration.access_token) == "tok"
        assert integration.config["teamName"] == "Acme HQ"
        assert integration.config["metadata"] == {"teamName": "Acme HQ"}
        assert integration.provider_type == "communication"

    @pytest.mark.asyncio
    async def test_reconnect_reuses_row_and_keeps_options(self, session, org, manager, fake_provider):
        first = await _integration(manager, session, org, fake_provider, token="one")
        await manager.update_integration_config(session, first.id, {"notifyOnUpdate": False})

        second = await _integration(manager, session, org, fake_provider, token="two")

        assert second.id == first.id
        assert decrypt_token(second.access_token) == "two"
        assert second.config["notifyOnUpdate"] is False
        count = await session.execute(select(func.count()).select_from(Integration))
        assert count.scalar_one() == 1

    @pytest.mark.asyncio
    async def test_config_strings_are_sanitized(self, session, org, manager, fake_provider):
        integration = await _integration(manager, session, org, fake_provider)

        await manager.update_integration_config(
            session, integration.id, {"label": " <b>Team</b>\n", "notifyOnUpdate": True}
        )

        assert integration.config["label"] == "bTeam/b"
        assert integration.config["notifyOnUpdate"] is True
        assert integration.config["teamName"] == "Acme HQ"

    @pytest.mark.asyncio
    async def test_list_filters_inactive_and_type(self, session, org, manager, fake_provider):
        integration = await _integration(manager, session, org, fake_provider)
        assert len(await manager.get_organization_integrations(session, org.id)) == 1
        assert await manager.get_organization_integrations(session, org.id, "ticketing") == []

        integration.is_active = False
        await session.flush()
        assert await manager.get_organization_integrations(session, org.id) == []

    @pytest.mark.asyncio
    async def test_unknown_integration(self, session, manager):
        assert await manager.get_integration(session, "not-a-uuid") is None
        with pytest.raises(NotFoundError):
            await manager.update_integration_config(session, "not-a-uuid", {})

    @pytest.mark.asyncio
    async def test_refresh_without_refresh_token(self, session, org, manager, fake_provider):
        integration = await manager.create_integration(
            session, organization_id=org.id, provider=fake_provider, token_data=TokenData(access_token="tok")
        )
        with pytest.raises(IntegrationError, match="No refresh token available"):
            await manager.refresh_integration_tokens(session, integration.id)

    @pytest.mark.asyncio
    async def test_disconnect_revokes_and_removes_everything(self, session, org, owner, manager, fake_provider):
        integration = await _integration(manager, session, org, fake_provider)
        note = await _note(session, org, owner)
        await manager.connect_note_to_channel(
            session, note_id=note.id, integration_id=integration.id, channel_id="C1"
        )

        await manager.disconnect_integration(session, integration.id)

        assert fake_provider.revoked == ["tok"]
        for model in (Integration, NoteIntegrationConnection, IntegrationLog):
            count = await session.execute(select(func.count()).select_from(model))
            assert count.scalar_one() == 0


class TestOAuth:
    @pytest.mark.asyncio
    async def test_round_trip_marks_onboarding_step(self, session, org, owner, manager):
        started = await manager.initiate_oauth(
            org.id, "fake", "https://api.example.com/callback", {"userId": str(owner.id)}
        )
        assert started["state"] in started["auth_url"]

        integration, state = await manager.handle_oauth_callback(
            session, "fake", OAuthCallbackParams(code="abc", state=started["state"])
        )

        assert state.organization_id == str(org.id)
        assert decrypt_token(integration.access_token) == "access-abc"
        progress = await get_onboarding_progress(session, owner.id, org.id)
        step = next(s for s in progress["steps"] if s["key"] == "connect_integration")
        assert step["is_completed"] is True

    @pytest.mark.asyncio
    async def test_failed_onboarding_write_keeps_the_integration(self, session, org, owner, manager):
        async def conflicting_write(session, *args):
            session.add(User(email=owner.email, username=owner.username, password_hash="x"))
            await session.flush()

        started = await manager.initiate_oauth(
            org.id, "fake", "https://api.example.com/callback", {"userId": str(owner.id)}
        )
        with patch("integrations.manager.mark_step_completed", side_effect=conflicting_write):
            integration, _ = await manager.handle_oauth_callback(
                session, "fake", OAuthCallbackParams(code="abc", state=started["state"])
            )
        await session.commit()

        assert await session.get(Integration, integration.id) is not None

    @pytest.mark.asyncio
    async def test_provider_mismatch(self, session, org, manager):
        state = manager.flow_manager.state_manager.generate_state(str(org.id), "slack")
        with pytest.raises(IntegrationError, match="Provider name mismatch"):
            await manager.handle_oauth_callback(session, "fake", OAuthCallbackParams(code="abc", state=state))

    @pytest.mark.asyncio
    async def test_provider_error_is_reported(self, session, manager):
        with pytest.raises(IntegrationError, match="OAuth error: denied by user"):
            await manager.handle_oauth_callback(
                session, "fake", OAuthCallbackParams(error="access_denied", error_description="denied by user")
            )


class TestConnections:
    @pytest.mark.asyncio
    async def test_connect_is_idempotent_per_channel(self, session, org, owner, manager, fake_provider):
        integration = await _integration(manager, session, org, fake_provider)
        note = await _note(session, org, owner)

        first = await manager.connect_note_to_channel(
            session, note_id=note.id, integration_id=integration.id, channel_id="C1", user_id=owner.id
        )
        second = await manager.connect_note_to_channel(
            session, note_id=note.id, integration_id=integration.id, channel_id="C1"
        )

        assert first.id == second.id
        assert second.config["channelName"] == "general"
        connections = await manager.get_note_connections(session, note.id)
        assert [c.external_id for c in connections] == ["C1"]

    @pytest.mark.asyncio
    async def test_unknown_channel(self, session, org, owner, manager, fake_provider):
        integration = await _integration(manager, session, org, fake_provider)
        note = await _note(session, org, owner)
        with pytest.raises(NotFoundError, match="Channel not found"):
            await manager.connect_note_to_channel(
                session, note_id=note.id, integration_id=integration.id, channel_id="nope"
            )

    @pytest.mark.asyncio
    async def test_note_from_other_organization(self, session, org, owner, manager, fake_provider):
        integration = await _integration(manager, session, org, fake_provider)
        other = await make_org(session, owner, "other")
        note = await _note(session, other, owner)
        with pytest.raises(IntegrationError, match="same organization"):
            await manager.connect_note_to_channel(
                session, note_id=note.id, integration_id=integration.id, channel_id="C1"
            )

    @pytest.mark.asyncio
    async def test_disconnect_note(self, session, org, owner, manager, fake_provider):
        integration = await _integration(manager, session, org, fake_provider)
        note = await _note(session, org, owner)
        connection = await manager.connect_note_to_channel(
            session, note_id=note.id, integration_id=integration.id, channel_id="C2"
        )

        await manager.disconnect_note_from_channel(session, connection.id, user_id=owner.id)

        assert await manager.get_note_connections(session, note.id) == []
        with pytest.raises(NotFoundError):
            await manager.disconnect_note_from_channel(session, connection.id)


class TestFanOut:
    @pytest.mark.asyncio
    async def test_posts_to_every_connection(self, session, org, owner, manager, fake_provider):
        integration = await _integration(manager, session, org, fake_provider)
        note = await _note(session, org, owner)
        for channel_id in ("C1", "C2"):
            await manager.connect_note_to_channel(
                session, note_id=note.id, integration_id=integration.id, channel_id=channel_id
            )

        outcome = await manager.handle_note_update(session, note.id, "updated", owner.id)

        assert outcome == {"notified": 2, "errors": []}
        assert {channel for channel, _ in fake_provider.posted} == {"C1", "C2"}
        message = fake_provider.posted[0][1]
        assert message.author == "Olive Owner"
        assert message.note_url.endswith(f"/app/acme/notes/{note.id}")
        for connection in await manager.get_note_connections(session, note.id):
            assert connection.last_posted_at is not None

    @pytest.mark.asyncio
    async def test_failures_are_collected(self, session, org, owner, manager, fake_provider):
        integration = await _integration(manager, session, org, fake_provider)
        note = await _note(session, org, owner)
        await manager.connect_note_to_channel(
            session, note_id=note.id, integration_id=integration.id, channel_id="C1"
        )
        fake_provider.fail_post = True

        outcome = await manager.handle_note_update(session, note.id, "created", owner.id)

        assert outcome["notified"] == 0
        assert outcome["errors"] and outcome["errors"][0].startswith("fake:")
        errors = await session.execute(
            select(func.count()).select_from(IntegrationLog).where(IntegrationLog.status == "error")
        )
        assert errors.scalar_one() == 1

    @pytest.mark.asyncio
    async def test_note_without_connections(self, session, org, owner, manager):
        note = await _note(session, org, owner)
        assert await manager.handle_note_update(session, note.id, "created", owner.id) == {
            "notified": 0,
            "errors": [],
        }


class TestHealth:
    @pytest.mark.asyncio
    async def test_status_transitions(self, session, org, manager, fake_provider):
        integration = await _integration(manager, session, org, fake_provider)
        assert (await manager.get_integration_status(session, integration.id))["status"] == "active"

        integration.token_expires_at = datetime.now(timezone.utc) - timedelta(minutes=1)
        await session.flush()
        assert (await manager.get_integration_status(session, integration.id))["status"] == "expired"

        for _ in range(6):
            session.add(IntegrationLog(integration_id=integration.id, action="post_message", status="error"))
        await session.flush()
        status = await manager.get_integration_status(session, integration.id)
        assert status["status"] == "error"
        assert len(status["recentErrors"]) == 6

        integration.is_active = False
        await session.flush()
        assert (await manager.get_integration_status(session, integration.id))["status"] == "inactive"

    @pytest.mark.asyncio
    async def test_stats_and_validation(self, session, org, owner, manager, fake_provider):
        integration = await _integration(manager, session, org, fake_provider)
        note = await _note(session, org, owner)
        await manager.connect_note_to_channel(
            session, note_id=note.id, integration_id=integration.id, channel_id="C1"
        )

        stats = await manager.get_integration_stats(session, integration.id)
        assert stats["totalConnections"] == 1
        assert stats["activeConnections"] == 1
        assert stats["errorCount"] == 0
        assert stats["recentActivity"] >= 1

        fake_provider.channels = []
        result = await manager.validate_integration_connections(session, integration.id)
        assert result["valid"] == 0 and result["invalid"] == 1
