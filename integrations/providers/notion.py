"""
NotionProvider — create pages in Notion databases from note changes.

Notion public integrations issue non-expiring tokens; there is no refresh.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from integrations.provider import IntegrationProvider
from integrations.types import Channel, IntegrationError, MessageData, OAuthCallbackParams, TokenData

logger = logging.getLogger(__name__)

_NOTION_API = "https://api.notion.com/v1"
_NOTION_VERSION = "2022-06-28"
_DATABASE_ID_RE = re.compile(r"notion\.so/(?:.*?)([a-f0-9]{32})")


def _paragraph(*runs: Dict[str, Any]) -> Dict[str, Any]:
    return {"object": "block", "type": "paragraph", "paragraph": {"rich_text": list(runs)}}


def _text(content: str, url: Optional[str] = None) -> Dict[str, Any]:
    text: Dict[str, Any] = {"content": content}
    if url:
        text["link"] = {"url": url}
    return {"type": "text", "text": text}


def database_id_from_config(conn_config: Dict[str, Any]) -> Optional[str]:
    """Configured database id, or the 32-hex id parsed from the channel's notion.so URL."""
    if conn_config.get("databaseId"):
        return conn_config["databaseId"]
    url = (conn_config.get("channelMetadata") or {}).get("url") or ""
    match = _DATABASE_ID_RE.search(url)
    return match.group(1) if match else None


class NotionProvider(IntegrationProvider):
    """OAuth2 provider for Notion."""

    @property
    def name(self) -> str:
        return "notion"

    @property
    def provider_type(self) -> str:
        return "productivity"

    @property
    def display_name(self) -> str:
        return "Notion"

    @property
    def description(self) -> str:
        return "Create pages in Notion databases from your notes"

    @property
    def config_schema(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "workspaceId": {"type": "string", "title": "Workspace ID"},
                "workspaceName": {"type": "string", "title": "Workspace Name"},
                "workspaceIcon": {"type": "string"},
                "botId": {"type": "string"},
                "user": {
                    "type": "object",
                    "properties": {
                        "id": {"type": "string"},
                        "name": {"type": "string", "title": "User Name"},
                        "email": {"type": "string"},
                        "avatarUrl": {"type": "string"},
                    },
                },
            },
            "required": ["workspaceId", "workspaceName", "botId", "user"],
        }

    @staticmethod
    def _headers(access_token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
            "Notion-Version": _NOTION_VERSION,
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
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "owner": "user",
            "state": state,
        }
        return f"{_NOTION_API}/oauth/authorize?{urlencode(params)}"

    async def handle_callback(self, params: OAuthCallbackParams) -> TokenData:
        payload = {"grant_type": "authorization_code", "code": params.code}
        if params.redirect_uri:
            payload["redirect_uri"] = params.redirect_uri
        async with self._client() as client:
            resp = await client.post(
                f"{_NOTION_API}/oauth/token",
                json=payload,
                auth=(self.client_id, self.client_secret),
                headers={"Notion-Version": _NOTION_VERSION},
            )
        body = self.check_response(resp, "Notion token exchange failed")
        owner_user = (body.get("owner") or {}).get("user") or {}
        return TokenData(
            access_token=body["access_token"],
            metadata={
                "workspaceId": body.get("workspace_id"),
                "workspaceName": body.get("workspace_name"),
                "workspaceIcon": body.get("workspace_icon"),
                "botId": body.get("bot_id"),
                "user": {
                    "id": owner_user.get("id", ""),
                    "name": owner_user.get("name", ""),
                    "email": (owner_user.get("person") or {}).get("email"),
                    "avatarUrl": owner_user.get("avatar_url"),
                },
            },
        )

    async def refresh_token(self, refresh_token: str) -> TokenData:
        raise IntegrationError("Notion does not support token refresh. Users must re-authenticate.")

    @staticmethod
    def _database_title(database: Dict[str, Any]) -> str:
        title = "".join(part.get("plain_text", "") for part in database.get("title") or [])
        return title or "Untitled Database"

    async def get_available_channels(self, integration) -> List[Channel]:
        async def _fetch(token: str) -> List[Dict[str, Any]]:
            async with self._client() as client:
                resp = await client.post(
                    f"{_NOTION_API}/search",
                    json={
                        "filter": {"value": "database", "property": "object"},
                        "sort": {"direction": "descending", "timestamp": "last_edited_time"},
                    },
                    headers=self._headers(token),
                )
            return self.check_response(resp, "Failed to fetch databases").get("results") or []

        databases = await self.make_authenticated_api_call(integration, _fetch)
        return [
            Channel(
                id=db["id"],
                name=self._database_title(db),
                metadata={"url": db.get("url"), "icon": db.get("icon"), "lastEditedTime": db.get("last_edited_time")},
            )
            for db in databases
        ]

    @staticmethod
    def format_default_properties(defaults: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        formatted: Dict[str, Any] = {}
        for key, value in (defaults or {}).items():
            # bool before int: bool is an int subclass
            if isinstance(value, bool):
                formatted[key] = {"checkbox": value}
            elif isinstance(value, (int, float)):
                formatted[key] = {"number": value}
            elif isinstance(value, str):
                formatted[key] = {"rich_text": [{"text": {"content": value}}]}
        return formatted

    @staticmethod
    def format_blocks(message: MessageData, include_content: bool) -> List[Dict[str, Any]]:
        if not include_content:
            return [
                _paragraph(_text(f"A new note has been created by {message.author}.")),
                _paragraph(_text("View the full note: "), _text(message.note_url, message.note_url)),
            ]
        blocks = [
            _paragraph(_text(chunk.strip()))
            for chunk in (message.content or "").split("\n\n")
            if chunk.strip()
        ]
        blocks.append({"object": "block", "type": "divider", "divider": {}})
        blocks.append(_paragraph(_text(f"Created by: {message.author}")))
        blocks.append(_paragraph(_text("View original note: "), _text(message.note_url, message.note_url)))
        return blocks

    async def post_message(self, integration, connection, message: MessageData) -> Dict[str, Any]:
        conn_config = self.connection_config(connection)
        database_id = database_id_from_config(conn_config) or connection.external_id
        if not database_id:
            raise IntegrationError("No database ID configured for this connection")

        page = {
            "parent": {"database_id": database_id},
            "properties": {
                "Name": {"title": [{"text": {"content": message.title}}]},
                **self.format_default_properties(conn_config.get("defaultProperties")),
            },
            "children": self.format_blocks(message, bool(conn_config.get("includeNoteContent", True))),
        }

        async def _create(token: str) -> Dict[str, Any]:
            async with self._client() as client:
                resp = await client.post(f"{_NOTION_API}/pages", json=page, headers=self._headers(token))
            return self.check_response(resp, "Failed to create page")

        created = await self.make_authenticated_api_call(integration, _create)
        logger.info("Created Notion page %s", created.get("url"))
        return {"id": created.get("id"), "url": created.get("url")}

    async def validate_connection(self, integration, connection) -> bool:
        database_id = database_id_from_config(self.connection_config(connection)) or connection.external_id
        if not database_id:
            return False

        async def _fetch(token: str) -> Dict[str, Any]:
            async with self._client() as client:
                resp = await client.get(f"{_NOTION_API}/databases/{database_id}", headers=self._headers(token))
            return self.check_response(resp, "Failed to fetch database")

        try:
            return bool(await self.make_authenticated_api_call(integration, _fetch))
        except IntegrationError:
            return False
