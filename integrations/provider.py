"""
IntegrationProvider — abstract interface for every third-party provider.

Each provider (Slack, Jira, Linear, …) subclasses this and implements the
OAuth flow plus channel discovery and message posting.  Shared helpers
cover error formatting, title/emoji formatting and authenticated calls
that refresh the token once on an unauthorized response.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, TypeVar

import httpx

from config.settings import config
from integrations.encryption import decrypt_token, encrypt_token
from integrations.types import (
    Channel,
    IntegrationError,
    MessageData,
    OAuthCallbackParams,
    ProviderAPIError,
    TokenData,
)

if TYPE_CHECKING:
    from database.models import Integration, NoteIntegrationConnection

logger = logging.getLogger(__name__)

T = TypeVar("T")

_EXPIRY_BUFFER = timedelta(minutes=5)

_CHANGE_EMOJIS = {
    "created": "✨",
    "updated": "📝",
    "deleted": "🗑️",
}


class IntegrationProvider(ABC):
    """Abstract base for all integration providers."""

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._transport = transport

    # ── Identity ────────────────────────────────────────────────────────
    @property
    @abstractmethod
    def name(self) -> str:
        """Unique slug: 'slack', 'jira', 'linear', …"""
        ...

    @property
    @abstractmethod
    def provider_type(self) -> str:
        """'productivity' | 'ticketing' | 'communication'."""
        ...

    @property
    @abstractmethod
    def display_name(self) -> str:
        ...

    @property
    def description(self) -> str:
        return ""

    @property
    def logo(self) -> str:
        return f"/icons/{self.name}.svg"

    @property
    @abstractmethod
    def config_schema(self) -> Dict[str, Any]:
        """JSON schema of the integration-level config this provider stores."""
        ...

    # ── OAuth flow ──────────────────────────────────────────────────────

    @abstractmethod
    async def get_auth_url(
        self,
        organization_id: str,
        redirect_uri: str,
        state: str,
        extras: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Build the provider's authorization URL carrying ``state``."""
        ...

    @abstractmethod
    async def handle_callback(self, params: OAuthCallbackParams) -> TokenData:
        """Exchange the authorization code for tokens."""
        ...

    @abstractmethod
    async def refresh_token(self, refresh_token: str) -> TokenData:
        ...

    async def refresh_integration_token(self, integration: "Integration", refresh_token: str) -> TokenData:
        """Refresh for a stored integration; providers with per-instance endpoints override this."""
        return await self.refresh_token(refresh_token)

    async def revoke_token(self, access_token: str) -> bool:
        """
        Revoke the token at the provider (optional).
        Returns True on success, False if the provider doesn't support it.
        """
        return False

    # ── Channels & messages ─────────────────────────────────────────────

    @abstractmethod
    async def get_available_channels(self, integration: "Integration") -> List[Channel]:
        ...

    @abstractmethod
    async def post_message(
        self,
        integration: "Integration",
        connection: "NoteIntegrationConnection",
        message: MessageData,
    ) -> Dict[str, Any]:
        """Post a note change; returns provider ids/urls of what was created."""
        ...

    @abstractmethod
    async def validate_connection(
        self,
        integration: "Integration",
        connection: "NoteIntegrationConnection",
    ) -> bool:
        ...

    # ── Helpers ─────────────────────────────────────────────────────────

    @property
    def client_id(self) -> str:
        return config.provider_credentials(self.name)["client_id"]

    @property
    def client_secret(self) -> str:
        return config.provider_credentials(self.name)["client_secret"]

    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def _client(self, **kwargs: Any) -> httpx.AsyncClient:
        kwargs.setdefault("timeout", 15.0)
        return httpx.AsyncClient(transport=self._transport, **kwargs)

    def is_token_expired(self, expires_at: Optional[datetime]) -> bool:
        if expires_at is None:
            return False
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at <= datetime.now(timezone.utc) + _EXPIRY_BUFFER

    @staticmethod
    def handle_api_error(response: httpx.Response, context: str) -> ProviderAPIError:
        """Build a ``ProviderAPIError`` from a failed response."""
        message = f"{context}: {response.status_code} {response.reason_phrase}"
        detail: Any = None
        try:
            body = response.json()
            if isinstance(body, dict):
                detail = body.get("error_description") or body.get("error") or body.get("message")
                if not detail and isinstance(body.get("errors"), list) and body["errors"]:
                    first = body["errors"][0]
                    detail = first.get("message") if isinstance(first, dict) else first
                if isinstance(detail, dict):
                    detail = detail.get("message")
        except ValueError:
            detail = response.text
        if detail:
            message = f"{message} - {detail}"
        return ProviderAPIError(message, http_status=response.status_code)

    def check_response(self, response: httpx.Response, context: str) -> Any:
        """Raise on an error status; otherwise return the decoded JSON body."""
        if response.is_error:
            raise self.handle_api_error(response, context)
        if not response.content:
            return {}
        return response.json()

    @staticmethod
    def get_change_emoji(change_type: str) -> str:
        return _CHANGE_EMOJIS.get(change_type, "📄")

    @staticmethod
    def truncate_text(text: Optional[str], max_length: int) -> str:
        if not text or len(text) <= max_length:
            return text or ""
        return text[: max_length - 3] + "..."

    def format_task_title(self, message: MessageData) -> str:
        return self.truncate_text(f"{self.get_change_emoji(message.change_type)} {message.title}", 100)

    def format_markdown_body(self, message: MessageData, include_content: bool = True) -> str:
        """Markdown issue body shared by the ticketing providers."""
        body = f"**Author:** {message.author}\n\n"
        if include_content and message.content:
            body += f"**Content:**\n{message.content}\n\n"
        body += f"**Source:** [View Note]({message.note_url})\n"
        body += f"**Change Type:** {message.change_type}\n"
        body += f"**Created:** {datetime.now(timezone.utc).isoformat()}"
        return body

    def get_access_token(self, integration: "Integration") -> str:
        if not integration.access_token:
            raise IntegrationError(f"No access token available for {self.display_name} integration")
        return decrypt_token(integration.access_token)

    @staticmethod
    def connection_config(connection: "NoteIntegrationConnection") -> Dict[str, Any]:
        return dict(connection.config or {})

    @staticmethod
    def integration_config(integration: "Integration") -> Dict[str, Any]:
        return dict(integration.config or {})

    async def make_authenticated_api_call(
        self,
        integration: "Integration",
        call: Callable[[str], Awaitable[T]],
    ) -> T:
        """
        Run ``call(access_token)``; on an unauthorized error refresh the
        token once and retry.

        Refreshed tokens are written (encrypted) onto ``integration``; the
        caller's session persists them.
        """
        try:
            return await call(self.get_access_token(integration))
        except ProviderAPIError as exc:
            if not exc.is_unauthorized:
                raise
            if not integration.refresh_token:
                raise IntegrationError(
                    f"{self.display_name} access token expired and no refresh token is available. "
                    f"Please disconnect and reconnect the {self.display_name} integration."
                ) from exc

        logger.info("Refreshing %s token after unauthorized response", self.name)
        try:
            refreshed = await self.refresh_integration_token(integration, decrypt_token(integration.refresh_token))
        except Exception as exc:
            raise IntegrationError(
                f"Authentication failed and token refresh failed: {exc}. "
                f"Please disconnect and reconnect the {self.display_name} integration."
            ) from exc

        integration.access_token = encrypt_token(refreshed.access_token)
        if refreshed.refresh_token:
            integration.refresh_token = encrypt_token(refreshed.refresh_token)
        integration.token_expires_at = refreshed.expires_at
        return await call(refreshed.access_token)

    def describe(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "type": self.provider_type,
            "display_name": self.display_name,
            "description": self.description,
            "logo": self.logo,
            "configured": self.is_configured(),
        }
