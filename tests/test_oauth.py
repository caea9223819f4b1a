"""
Tests for OAuth state signing, callback validation and refresh retries.
"""

import base64
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from conftest import FakeProvider
from integrations.oauth import (
    OAuthFlowManager,
    OAuthStateManager,
    TokenRefreshManager,
    is_retryable_error,
    should_refresh,
)
from integrations.types import IntegrationError, OAuthCallbackParams, OAuthStateError, TokenData, TokenRefreshError


class TestStateManager:
    def test_round_trip(self):
        manager = OAuthStateManager(secret="s3cret")
        state = manager.generate_state(
            "org-1", "slack", "https://app.example.com/done", {"userId": "u1"}, redirect_uri="https://cb"
        )

        parsed = manager.validate_state(state)

        assert parsed.organization_id == "org-1"
        assert parsed.provider_name == "slack"
        assert parsed.redirect_url == "https://app.example.com/done"
        assert parsed.redirect_uri == "https://cb"
        assert parsed.extras == {"userId": "u1"}

    def test_nonce_makes_states_unique(self):
        manager = OAuthStateManager(secret="s3cret")
        assert manager.generate_state("org-1", "slack") != manager.generate_state("org-1", "slack")

    @pytest.mark.parametrize(
        "state,reason",
        [
            ("", "empty or non-string"),
            (None, "empty or non-string"),
            ("no-dot", "malformed structure"),
            ("a.b.c", "malformed structure"),
        ],
    )
    def test_malformed(self, state, reason):
        with pytest.raises(OAuthStateError, match=reason):
            OAuthStateManager(secret="s3cret").validate_state(state)

    def test_wrong_secret(self):
        state = OAuthStateManager(secret="one").generate_state("org-1", "slack")
        with pytest.raises(OAuthStateError, match="signature verification failed"):
            OAuthStateManager(secret="two").validate_state(state)

    def test_tampered_payload(self):
        manager = OAuthStateManager(secret="s3cret")
        payload, signature = manager.generate_state("org-1", "slack").split(".")
        data = json.loads(base64.urlsafe_b64decode(payload))
        data["organization_id"] = "org-2"
        forged = base64.urlsafe_b64encode(json.dumps(data).encode()).decode()
        with pytest.raises(OAuthStateError, match="signature verification failed"):
            manager.validate_state(f"{forged}.{signature}")

    def test_missing_fields(self):
        manager = OAuthStateManager(secret="s3cret")
        payload = base64.urlsafe_b64encode(json.dumps({"organization_id": "x"}).encode()).decode()
        with pytest.raises(OAuthStateError, match="missing required fields"):
            manager.validate_state(f"{payload}.{manager._sign(payload)}")

    def test_expired(self):
        manager = OAuthStateManager(secret="s3cret")
        with patch("integrations.oauth._now_ms", return_value=1_000_000):
            state = manager.generate_state("org-1", "slack")
        with patch("integrations.oauth._now_ms", return_value=1_000_000 + 31 * 60 * 1000):
            with pytest.raises(OAuthStateError, match="expired"):
                manager.validate_state(state)


class TestFlow:
    @pytest.mark.asyncio
    async def test_callback_resolves_redirect_and_extras(self):
        flow = OAuthFlowManager(state_manager=OAuthStateManager(secret="s3cret"))
        provider = FakeProvider()
        started = await flow.start_oauth_flow(provider, "org-1", "https://cb", extras={"userId": "u1"})

        received = {}

        async def capture(params):
            received["params"] = params
            return TokenData(access_token="a")

        provider.handle_callback = capture
        token_data, state = await flow.complete_oauth_flow(
            provider, OAuthCallbackParams(code="c", state=started["state"])
        )

        assert token_data.access_token == "a"
        assert state.organization_id == "org-1"
        params = received["params"]
        assert params.organization_id == "org-1"
        assert params.redirect_uri == "https://cb"
        assert params.extras == {"userId": "u1"}

    @pytest.mark.asyncio
    async def test_organization_mismatch(self):
        flow = OAuthFlowManager(state_manager=OAuthStateManager(secret="s3cret"))
        provider = FakeProvider()
        started = await flow.start_oauth_flow(provider, "org-1", "https://cb")
        with pytest.raises(IntegrationError, match="Organization ID mismatch"):
            await flow.complete_oauth_flow(
                provider, OAuthCallbackParams(code="c", state=started["state"], organization_id="org-2")
            )

    @pytest.mark.asyncio
    async def test_missing_code(self):
        flow = OAuthFlowManager(state_manager=OAuthStateManager(secret="s3cret"))
        with pytest.raises(IntegrationError, match="code or state"):
            await flow.complete_oauth_flow(FakeProvider(), OAuthCallbackParams(state="x.y"))

    @pytest.mark.asyncio
    async def test_ensure_valid_token(self):
        flow = OAuthFlowManager(state_manager=OAuthStateManager(secret="s3cret"))
        fresh = TokenData(access_token="a", expires_at=datetime.now(timezone.utc) + timedelta(hours=1))
        assert await flow.ensure_valid_token(FakeProvider(), fresh) is fresh

        stale = TokenData(
            access_token="a", refresh_token="r", expires_at=datetime.now(timezone.utc) + timedelta(minutes=1)
        )
        refreshed = await flow.ensure_valid_token(FakeProvider(), stale)
        assert refreshed.access_token == "access-refreshed"
        assert refreshed.refresh_token == "r"

        with pytest.raises(TokenRefreshError):
            await flow.ensure_valid_token(FakeProvider(), stale.model_copy(update={"refresh_token": None}))


class TestRefreshRetry:
    @pytest.mark.asyncio
    async def test_retries_transient_errors_with_backoff(self):
        delays = []

        async def fake_sleep(delay):
            delays.append(delay)

        provider = FakeProvider()
        calls = {"n": 0}

        async def flaky(refresh_token):
            calls["n"] += 1
            if calls["n"] < 3:
                raise RuntimeError("connection reset by peer")
            return TokenData(access_token="ok")

        provider.refresh_token = flaky
        manager = TokenRefreshManager(max_retries=3, base_delay=1.0, sleep=fake_sleep)

        token_data = await manager.refresh_with_retry(provider, "r")

        assert token_data.access_token == "ok"
        assert delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_permanent_error_is_not_retried(self):
        delays = []

        async def fake_sleep(delay):
            delays.append(delay)

        provider = FakeProvider()
        provider.refresh_error = RuntimeError("invalid_grant")
        manager = TokenRefreshManager(sleep=fake_sleep)

        with pytest.raises(TokenRefreshError, match="after 1 attempts"):
            await manager.refresh_with_retry(provider, "r")
        assert delays == []

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self):
        async def fake_sleep(delay):
            return None

        provider = FakeProvider()
        provider.refresh_error = RuntimeError("503 Service Unavailable")
        manager = TokenRefreshManager(max_retries=2, sleep=fake_sleep)

        with pytest.raises(TokenRefreshError, match="after 2 attempts"):
            await manager.refresh_with_retry(provider, "r")


class TestHelpers:
    def test_is_retryable(self):
        assert is_retryable_error(RuntimeError("Gateway Timeout"))
        assert is_retryable_error(RuntimeError("429 Too Many Requests"))
        assert not is_retryable_error(RuntimeError("invalid_client"))

    def test_should_refresh(self):
        now = datetime.now(timezone.utc)
        assert not should_refresh(None)
        assert should_refresh(now + timedelta(minutes=4))
        assert not should_refresh(now + timedelta(minutes=6))
        # naive datetimes are treated as UTC
        assert should_refresh((now - timedelta(minutes=1)).replace(tzinfo=None))
