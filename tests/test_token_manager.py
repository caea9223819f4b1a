"""
Tests for stored integration tokens: encryption at rest, refresh and revoke.
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from conftest import FakeProvider
from database.models import Integration, IntegrationLog
from integrations import token_manager
from integrations.types import ProviderAPIError, TokenData, TokenRefreshError
from utils.errors import NotFoundError


async def _integration(session, org, *, refresh="refresh-1", expires_in=None):
    integration = Integration(organization_id=org.id, provider_name="fake", provider_type="communication")
    token_manager.apply_token_data(
        integration,
        TokenData(
            access_token="access-1",
            refresh_token=refresh,
            expires_at=datetime.now(timezone.utc) + expires_in if expires_in is not None else None,
        ),
    )
    session.add(integration)
    await session.flush()
    return integration


async def _actions(session, integration):
    result = await session.execute(
        select(IntegrationLog.action, IntegrationLog.status).where(IntegrationLog.integration_id == integration.id)
    )
    return result.all()


class TestStorage:
    @pytest.mark.asyncio
    async def test_store_and_read(self, session, org):
        integration = await _integration(session, org)
        await token_manager.store_token_data(
            session, integration.id, TokenData(access_token="new-access", refresh_token="new-refresh")
        )

        data = await token_manager.get_token_data(session, integration.id)
        assert data.access_token == "new-access"
        assert data.refresh_token == "new-refresh"
        assert integration.access_token != "new-access"
        assert integration.last_sync_at is not None

    @pytest.mark.asyncio
    async def test_store_for_missing_integration(self, session):
        import uuid

        with pytest.raises(NotFoundError):
            await token_manager.store_token_data(session, uuid.uuid4(), TokenData(access_token="x"))

    @pytest.mark.asyncio
    async def test_inactive_integration_has_no_tokens(self, session, org):
        integration = await _integration(session, org)
        integration.is_active = False
        await session.flush()
        assert await token_manager.get_token_data(session, integration.id) is None


class TestRefresh:
    @pytest.mark.asyncio
    async def test_success_keeps_unrotated_refresh_token(self, session, org):
        integration = await _integration(session, org)

        result = await token_manager.refresh_token(session, integration, FakeProvider())

        assert result.success
        data = token_manager.read_token_data(integration)
        assert data.access_token == "access-refreshed"
        assert data.refresh_token == "refresh-1"
        assert ("token_refresh", "success") in await _actions(session, integration)

    @pytest.mark.asyncio
    async def test_revoked_grant_deactivates(self, session, org):
        integration = await _integration(session, org)
        provider = FakeProvider()
        provider.refresh_error = ProviderAPIError("Token refresh failed: 400 - invalid_grant", http_status=400)

        result = await token_manager.refresh_token(session, integration, provider)

        assert not result.success and result.requires_reauth
        assert integration.is_active is False
        assert ("token_refresh", "error") in await _actions(session, integration)

    @pytest.mark.asyncio
    async def test_other_failures_leave_integration_active(self, session, org):
        integration = await _integration(session, org)
        provider = FakeProvider()
        provider.refresh_error = ValueError("unexpected payload")

        result = await token_manager.refresh_token(session, integration, provider)

        assert not result.success and not result.requires_reauth
        assert integration.is_active is True

    @pytest.mark.asyncio
    async def test_no_refresh_token(self, session, org):
        integration = await _integration(session, org, refresh=None)
        result = await token_manager.refresh_token(session, integration, FakeProvider())
        assert result.requires_reauth and result.error == "No refresh token available"


class TestValidAccessToken:
    @pytest.mark.asyncio
    async def test_fresh_token_is_returned(self, session, org):
        integration = await _integration(session, org, expires_in=timedelta(hours=1))
        assert await token_manager.get_valid_access_token(session, integration, FakeProvider()) == "access-1"

    @pytest.mark.asyncio
    async def test_expiring_token_is_refreshed(self, session, org):
        integration = await _integration(session, org, expires_in=timedelta(minutes=2))
        token = await token_manager.get_valid_access_token(session, integration, FakeProvider())
        assert token == "access-refreshed"

    @pytest.mark.asyncio
    async def test_expired_without_refresh_token(self, session, org):
        integration = await _integration(session, org, refresh=None, expires_in=timedelta(minutes=-1))
        assert await token_manager.get_valid_access_token(session, integration, FakeProvider()) is None

    @pytest.mark.asyncio
    async def test_tokens_needing_refresh(self, session, org):
        soon = await _integration(session, org, expires_in=timedelta(minutes=2))
        later = Integration(organization_id=org.id, provider_name="other", provider_type="ticketing")
        token_manager.apply_token_data(
            later,
            TokenData(access_token="a", expires_at=datetime.now(timezone.utc) + timedelta(hours=2)),
        )
        session.add(later)
        await session.flush()

        due = await token_manager.check_tokens_needing_refresh(session, org.id)

        assert [i.id for i in due] == [soon.id]
        validation = await token_manager.validate_integration_token(session, later.id)
        assert validation.is_valid and not validation.needs_refresh


class TestRevoke:
    @pytest.mark.asyncio
    async def test_revoke_wipes_tokens(self, session, org):
        integration = await _integration(session, org)
        provider = FakeProvider()

        assert await token_manager.revoke_token(session, integration, provider) is True

        assert provider.revoked == ["access-1"]
        assert integration.access_token is None and integration.refresh_token is None
        assert integration.is_active is False
        assert ("token_revoke", "success") in await _actions(session, integration)


class TestReauthDetection:
    def test_walks_the_cause_chain(self):
        try:
            try:
                raise ProviderAPIError("refresh failed", http_status=401)
            except ProviderAPIError as inner:
                raise TokenRefreshError("Token refresh failed for fake after 1 attempts") from inner
        except TokenRefreshError as exc:
            assert token_manager.is_reauth_error(exc)

    def test_plain_errors(self):
        assert not token_manager.is_reauth_error(RuntimeError("timeout"))
        assert token_manager.is_reauth_error(RuntimeError("account_inactive"))
