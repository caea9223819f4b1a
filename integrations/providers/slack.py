"""
SlackProvider — post note updates to Slack channels.

Bot tokens from ``oauth.v2.access`` do not expire, so there is no refresh.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode, urlparse

from integrations.provider import IntegrationProvider
from integrations.types import Channel, IntegrationError, MessageData, OAuthCallbackParams, TokenData

logger = logging.getLogger(__name__)

_SLACK_AUTH_URL = "https://slack.com/oauth/v2/authorize"
_SLACK_API = "https://slack.com/api"
_SCOPES = "channels:read,groups:read,chat:write,chat:write.public"
_PAGE_LIMIT = 200
_MAX_CHANNELS = 1000

# Slack error code → user-facing message
_POST_ERRORS = {
    "channel_not_found": "Slack channel not found. The channel may have been deleted or renamed.",
    "not_in_channel": "Bot is not a member of this Slack channel. Please invite the bot to the channel.",
    "is_archived": "Cannot post to archived Slack channel.",
    "msg_too_long": "Message is too long for Slack. Please shorten the note content.",
    "rate_limited": "Slack API rate limit exceeded. Please try again later.",
    "invalid_auth": "Slack authentication failed. Please reconnect your Slack integration.",
    "invalid_blocks": "Invalid Slack message format. This might be due to an invalid URL or block structure.",
}


def _is_absolute_url(url: str) -> bool:
    parsed = urlparse(url or "")
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


class SlackProvider(IntegrationProvider):
    """Slack OAuth v2 bot integration."""

    @property
    def name(self) -> str:
        return "slack"

    @property
    def provider_type(self) -> str:
        return "productivity"

    @property
    def display_name(self) -> str:
        return "Slack"

    @property
    def description(self) -> str:
        return "Connect notes to Slack channels for team collaboration"

    @property
    def config_schema(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "teamId": {"type": "string", "description": "Slack team ID"},
                "teamName": {"type": "string", "description": "Slack team name"},
                "botUserId": {"type": "string", "description": "Bot user ID"},
                "scope": {"type": "string", "description": "OAuth scope"},
            },
            "required": ["teamId", "teamName", "scope"],
        }

    async def get_auth_url(
        self,
        organization_id: str,
        redirect_uri: str,
        state: str,
        extras: Optional[Dict[str, Any]] = None,
    ) -> str:
        params = {
            "client_id": self.client_id,
            "scope": _SCOPES,
            "redirect_uri": redirect_uri,
            "state": state,
            "response_type": "code",
        }
        return f"{_SLACK_AUTH_URL}?{urlencode(params)}"

    async def handle_callback(self, params: OAuthCallbackParams) -> TokenData:
        data: Dict[str, Any] = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "code": params.code,
        }
        if params.redirect_uri:
            data["redirect_uri"] = params.redirect_uri
        async with self._client() as client:
            resp = await client.post(f"{_SLACK_API}/oauth.v2.access", data=data)
        body = self.check_response(resp, "Slack OAuth API error")
        if not body.get("ok") or not body.get("access_token"):
            raise IntegrationError(f"Slack OAuth error: {body.get('error', 'Unknown error')}")

        team = body.get("team") or {}
        logger.info("Slack workspace connected: %s (%s)", team.get("name"), team.get("id"))
        return TokenData(
            access_token=body["access_token"],
            scope=body.get("scope"),
            metadata={
                "teamId": team.get("id"),
                "teamName": team.get("name"),
                "botUserId": body.get("bot_user_id"),
                "scope": body.get("scope"),
            },
        )

    async def refresh_token(self, refresh_token: str) -> TokenData:
        raise IntegrationError("Slack bot tokens do not require refresh")

    async def revoke_token(self, access_token: str) -> bool:
        async with self._client() as client:
            resp = await client.post(
                f"{_SLACK_API}/auth.revoke",
                headers={"Authorization": f"Bearer {access_token}"},
            )
        return resp.is_success and bool(resp.json().get("ok"))

    async def _api_get(self, access_token: str, method: str, params: Dict[str, Any]) -> Dict[str, Any]:
        async with self._client() as client:
            resp = await client.get(
                f"{_SLACK_API}/{method}",
                params=params,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        body = self.check_response(resp, "Slack API error")
        if not body.get("ok"):
            error = body.get("error", "Unknown error")
            if error == "missing_scope":
                raise IntegrationError(
                    "Slack integration is missing required permissions. Please reconnect with proper scopes."
                )
            raise IntegrationError(f"Slack API error: {error}")
        return body

    async def get_available_channels(self, integration) -> List[Channel]:
        access_token = self.get_access_token(integration)
        raw: List[Dict[str, Any]] = []
        cursor: Optional[str] = None

        while True:
            params = {
                "types": "public_channel,private_channel",
                "exclude_archived": "true",
                "limit": _PAGE_LIMIT,
            }
            if cursor:
                params["cursor"] = cursor
            body = await self._api_get(access_token, "conversations.list", params)
            raw.extend(body.get("channels") or [])
            cursor = (body.get("response_metadata") or {}).get("next_cursor")
            if len(raw) > _MAX_CHANNELS:
                logger.warning("Reached Slack channel limit of %d, stopping pagination", _MAX_CHANNELS)
                break
            if not cursor:
                break

        channels = [
            Channel(
                id=ch["id"],
                name=ch["name"],
                type="private" if ch.get("is_private") else "public",
                metadata={
                    "is_member": ch.get("is_member", False),
                    "is_private": ch.get("is_private", False),
                    "member_count": ch.get("num_members", 0),
                    "purpose": (ch.get("purpose") or {}).get("value", ""),
                    "topic": (ch.get("topic") or {}).get("value", ""),
                    "bot_needs_invite": not ch.get("is_member", False),
                },
            )
            for ch in raw
            if not ch.get("is_archived")
        ]
        channels.sort(key=lambda c: c.name.lower())
        logger.debug("Fetched %d Slack channels", len(channels))
        return channels

    def format_blocks(self, message: MessageData, include_content: bool = True) -> List[Dict[str, Any]]:
        emoji = self.get_change_emoji(message.change_type)
        blocks: List[Dict[str, Any]] = [
            {
                "type": "section",
                "text": {
                    "type": "mrkdwn",
                    "text": f"{emoji} *{message.title}* was {message.change_type} by *{message.author}*",
                },
            }
        ]
        if include_content and message.content.strip():
            blocks.append(
                {"type": "section", "text": {"type": "mrkdwn", "text": self.truncate_text(message.content, 500)}}
            )
        if _is_absolute_url(message.note_url):
            blocks.append(
                {
                    "type": "actions",
                    "elements": [
                        {
                            "type": "button",
                            "text": {"type": "plain_text", "text": "View Note", "emoji": True},
                            "url": message.note_url,
                            "style": "primary",
                        }
                    ],
                }
            )
        else:
            blocks.append(
                {"type": "context", "elements": [{"type": "mrkdwn", "text": f"View Note: {message.note_url}"}]}
            )
        blocks.append({"type": "divider"})
        return blocks

    def format_text(self, message: MessageData, include_content: bool = True) -> str:
        emoji = self.get_change_emoji(message.change_type)
        text = f"{emoji} *{message.title}* was {message.change_type} by {message.author}"
        if include_content and message.content.strip():
            text += f"\n\n{self.truncate_text(message.content, 300)}"
        return text + f"\n\n<{message.note_url}|View Note>"

    async def post_message(self, integration, connection, message: MessageData) -> Dict[str, Any]:
        conn_config = self.connection_config(connection)
        include_content = conn_config.get("includeContent", True) is not False
        payload: Dict[str, Any] = {
            "channel": connection.external_id,
            "username": "Note Bot",
            "icon_emoji": ":memo:",
        }
        if conn_config.get("postFormat") == "text":
            payload["text"] = self.format_text(message, include_content)
        else:
            payload["blocks"] = self.format_blocks(message, include_content)
            payload["text"] = (
                f"{self.get_change_emoji(message.change_type)} {message.title} "
                f"was {message.change_type} by {message.author}"
            )

        async with self._client() as client:
            resp = await client.post(
                f"{_SLACK_API}/chat.postMessage",
                json=payload,
                headers={"Authorization": f"Bearer {self.get_access_token(integration)}"},
            )
        body = self.check_response(resp, "Slack API HTTP error")
        if not body.get("ok"):
            error = body.get("error", "Unknown error")
            for code, text in _POST_ERRORS.items():
                if code in error:
                    raise IntegrationError(text)
            raise IntegrationError(f"Slack API error: {error}")
        return {"ts": body.get("ts"), "channel": connection.external_id}

    async def validate_connection(self, integration, connection) -> bool:
        try:
            await self._api_get(
                self.get_access_token(integration), "conversations.info", {"channel": connection.external_id}
            )
            return True
        except IntegrationError as exc:
            logger.info("Slack connection %s invalid: %s", connection.external_id, exc)
            return False
