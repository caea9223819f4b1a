"""
Tests for the provider base class, the registry and the Slack and GitHub
providers against a mocked HTTP transport.
"""

import json
from types import SimpleNamespace
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from integrations.encryption import decrypt_token, encrypt_token
from integrations.provider import IntegrationProvider
from integrations.providers import BUILTIN_PROVIDERS
from integrations.providers.github import GitHubProvider
from integrations.providers.slack import SlackProvider
from integrations.registry import ProviderRegistry
from integrations.types import IntegrationError, MessageData, OAuthCallbackParams, ProviderNotFoundError


def _integration(access="tok", refresh=None, config=None):
    return SimpleNamespace(
        id="i1",
        access_token=encrypt_token(access),
        refresh_token=encrypt_token(refresh) if refresh else None,
        token_expires_at=None,
        config=config or {},
    )


def _connection(external_id="C1", config=None):
    return SimpleNamespace(external_id=external_id, config=config or {})


def _message(**overrides):
    data = {
        "title": "Roadmap",
        "content": "Q3 goals",
        "author": "Olive",
        "note_url": "https://app.example.com/app/acme/notes/n1",
        "change_type": "updated",
    }
    data.update(overrides)
    return MessageData(**data)


class TestBaseHelpers:
    def test_api_error_detail(self):
        resp = httpx.Response(400, json={"errors": [{"message": "Project is archived"}]})
        error = IntegrationProvider.handle_api_error(resp, "Failed")
        assert error.message == "Failed: 400 Bad Request - Project is archived"
        assert error.http_status == 400
        assert not error.is_unauthorized

    def test_api_error_unauthorized(self):
        error = IntegrationProvider.handle_api_error(httpx.Response(401, text="nope"), "Call")
        assert error.is_unauthorized

    def test_truncate_and_titles(self):
        provider = SlackProvider()
        assert provider.truncate_text("abcdef", 5) == "ab..."
        assert provider.format_task_title(_message(change_type="created")).startswith("✨ Roadmap")
        assert provider.get_change_emoji("other") == "📄"

    def test_describe(self):
        info = SlackProvider().describe()
        assert info["name"] == "slack"
        assert info["logo"] == "/icons/slack.svg"
        assert set(info) == {"name", "type", "display_name", "description", "logo", "configured"}


class TestRegistry:
    @pytest.fixture(autouse=True)
    def _clean(self):
        registry = ProviderRegistry()
        registry.clear()
        yield
        registry.clear()

    def test_singleton_and_discovery(self):
        registry = ProviderRegistry()
        assert registry is ProviderRegistry()
        registry.discover()
        assert len(registry.get_all()) == len(BUILTIN_PROVIDERS)
        assert registry.has("slack") and registry.has("trello")
        assert {p.name for p in registry.get_by_type("ticketing")} >= {"github", "jira", "linear"}

    def test_unknown_provider(self):
        with pytest.raises(ProviderNotFoundError, match="'nope' not found"):
            ProviderRegistry().get("nope")

    def test_unregister(self):
        registry = ProviderRegistry()
        registry.register(SlackProvider())
        assert registry.unregister("slack") is True
        assert registry.unregister("slack") is False


class TestSlack:
    @pytest.mark.asyncio
    async def test_auth_url(self):
        url = await SlackProvider().get_auth_url("org", "https://api.example.com/cb", "STATE")
        query = parse_qs(urlparse(url).query)
        assert query["state"] == ["STATE"]
        assert query["redirect_uri"] == ["https://api.example.com/cb"]
        assert "chat:write" in query["scope"][0]

    @pytest.mark.asyncio
    async def test_callback(self):
        def handler(request):
            assert request.url.path == "/api/oauth.v2.access"
            return httpx.Response(
                200,
                json={
                    "ok": True,
                    "access_token": "xoxb-1",
                    "scope": "chat:write",
                    "bot_user_id": "B1",
                    "team": {"id": "T1", "name": "Acme"},
                },
            )

        provider = SlackProvider(transport=httpx.MockTransport(handler))
        token = await provider.handle_callback(OAuthCallbackParams(code="c", redirect_uri="https://cb"))

        assert token.access_token == "xoxb-1"
        assert token.metadata["teamName"] == "Acme"
        assert token.refresh_token is None

    @pytest.mark.asyncio
    async def test_callback_error(self):
        provider = SlackProvider(
            transport=httpx.MockTransport(lambda r: httpx.Response(200, json={"ok": False, "error": "bad_code"}))
        )
        with pytest.raises(IntegrationError, match="bad_code"):
            await provider.handle_callback(OAuthCallbackParams(code="c"))

    @pytest.mark.asyncio
    async def test_channels_paginate_and_sort(self):
        pages = {
            None: {
                "ok": True,
                "channels": [{"id": "C2", "name": "Zeta", "is_member": True}, {"id": "C3", "name": "old", "is_archived": True}],
                "response_metadata": {"next_cursor": "p2"},
            },
            "p2": {"ok": True, "channels": [{"id": "C1", "name": "alpha", "is_private": True}]},
        }

        def handler(request):
            assert request.headers["authorization"] == "Bearer tok"
            return httpx.Response(200, json=pages[request.url.params.get("cursor")])

        channels = await SlackProvider(transport=httpx.MockTransport(handler)).get_available_channels(_integration())

        assert [c.id for c in channels] == ["C1", "C2"]
        assert channels[0].type == "private"
        assert channels[0].metadata["bot_needs_invite"] is True

    @pytest.mark.asyncio
    async def test_post_blocks(self):
        sent = {}

        def handler(request):
            sent.update(json.loads(request.content))
            return httpx.Response(200, json={"ok": True, "ts": "123.4"})

        result = await SlackProvider(transport=httpx.MockTransport(handler)).post_message(
            _integration(), _connection(), _message()
        )

        assert result == {"ts": "123.4", "channel": "C1"}
        assert sent["channel"] == "C1"
        assert sent["blocks"][-2]["elements"][0]["url"] == "https://app.example.com/app/acme/notes/n1"

    @pytest.mark.asyncio
    async def test_post_text_format_without_content(self):
        sent = {}

        def handler(request):
            sent.update(json.loads(request.content))
            return httpx.Response(200, json={"ok": True})

        await SlackProvider(transport=httpx.MockTransport(handler)).post_message(
            _integration(), _connection(config={"postFormat": "text", "includeContent": False}), _message()
        )
        assert "blocks" not in sent
        assert "Q3 goals" not in sent["text"]

    @pytest.mark.asyncio
    async def test_post_error_is_translated(self):
        provider = SlackProvider(
            transport=httpx.MockTransport(lambda r: httpx.Response(200, json={"ok": False, "error": "not_in_channel"}))
        )
        with pytest.raises(IntegrationError, match="invite the bot"):
            await provider.post_message(_integration(), _connection(), _message())

    @pytest.mark.asyncio
    async def test_refresh_is_not_supported(self):
        with pytest.raises(IntegrationError):
            await SlackProvider().refresh_token("x")


class TestGitHub:
    @pytest.mark.asyncio
    async def test_refreshes_once_on_unauthorized(self):
        issue_tokens = []

        def handler(request):
            if request.url.host == "github.com":
                form = parse_qs(request.content.decode())
                assert form["grant_type"] == ["refresh_token"]
                assert form["refresh_token"] == ["r1"]
                return httpx.Response(200, json={"access_token": "new", "expires_in": 3600})
            issue_tokens.append(request.headers["authorization"])
            if request.headers["authorization"] == "Bearer old":
                return httpx.Response(401, json={"message": "Bad credentials"})
            return httpx.Response(201, json={"id": 9, "number": 42, "html_url": "https://github.com/o/r/issues/42"})

        integration = _integration(access="old", refresh="r1")
        connection = _connection(
            external_id="123", config={"channelMetadata": {"repositoryFullName": "o/r"}, "defaultLabels": ["notes"]}
        )

        result = await GitHubProvider(transport=httpx.MockTransport(handler)).post_message(
            integration, connection, _message()
        )

        assert result == {"id": 9, "number": 42, "url": "https://github.com/o/r/issues/42"}
        assert issue_tokens == ["Bearer old", "Bearer new"]
        assert decrypt_token(integration.access_token) == "new"
        assert decrypt_token(integration.refresh_token) == "r1"
        assert integration.token_expires_at is not None

    @pytest.mark.asyncio
    async def test_unauthorized_without_refresh_token(self):
        provider = GitHubProvider(
            transport=httpx.MockTransport(lambda r: httpx.Response(401, json={"message": "Bad credentials"}))
        )
        with pytest.raises(IntegrationError, match="disconnect and reconnect"):
            await provider.post_message(_integration(), _connection(external_id="o/r"), _message())

    @pytest.mark.asyncio
    async def test_only_pushable_active_repos_are_channels(self):
        repos = [
            {"id": 1, "name": "app", "full_name": "o/app", "owner": {"login": "o"}, "permissions": {"push": True}},
            {"id": 2, "name": "docs", "full_name": "o/docs", "owner": {"login": "o"}, "permissions": {"push": False}},
            {"id": 3, "name": "old", "full_name": "o/old", "owner": {"login": "o"}, "archived": True,
             "permissions": {"push": True}},
        ]
        provider = GitHubProvider(transport=httpx.MockTransport(lambda r: httpx.Response(200, json=repos)))

        channels = await provider.get_available_channels(_integration())

        assert [(c.id, c.name) for c in channels] == [("1", "o/app")]

    def test_issue_respects_connection_options(self):
        issue = GitHubProvider().build_issue(
            _connection(config={"includeNoteContent": False, "defaultAssignees": ["olive"], "defaultMilestone": 3}),
            _message(),
        )
        assert "Q3 goals" not in issue["body"]
        assert issue["assignees"] == ["olive"] and issue["milestone"] == 3
        assert "labels" not in issue

    @pytest.mark.asyncio
    async def test_oauth_error_reported_with_200(self):
        provider = GitHubProvider(
            transport=httpx.MockTransport(
                lambda r: httpx.Response(200, json={"error": "bad_verification_code", "error_description": "expired"})
            )
        )
        with pytest.raises(IntegrationError, match="expired"):
            await provider.handle_callback(OAuthCallbackParams(code="c"))
