"""
ClickUpProvider — create ClickUp tasks in lists.

Channels are spaces (``space:<id>``) and lists (``list:<id>``); tasks can
only be created in a list.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

from integrations.provider import IntegrationProvider
from integrations.types import Channel, IntegrationError, MessageData, OAuthCallbackParams, TokenData

logger = logging.getLogger(__name__)

_CLICKUP_AUTH_URL = "https://app.clickup.com/api"
_CLICKUP_API = "https://api.clickup.com/api/v2"


def _split_channel(channel_id: str) -> Tuple[str, str]:
    kind, _, raw_id = (channel_id or "").partition(":")
    if kind not in ("space", "list") or not raw_id:
        raise IntegrationError("Invalid channel type for ClickUp integration")
    return kind, raw_id


class ClickUpProvider(IntegrationProvider):
    """OAuth2 provider for ClickUp."""

    @property
    def name(self) -> str:
        return "clickup"

    @property
    def provider_type(self) -> str:
        return "productivity"

    @property
    def display_name(self) -> str:
        return "ClickUp"

    @property
    def description(self) -> str:
        return "Connect notes to ClickUp lists for task management"

    @property
    def config_schema(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "includeNoteContent": {"type": "boolean", "default": True},
                "defaultPriority": {"type": "integer", "minimum": 1, "maximum": 4},
                "defaultAssignees": {"type": "array", "items": {"type": "integer"}},
                "defaultTags": {"type": "array", "items": {"type": "string"}},
                "defaultStatus": {"type": "string"},
            },
        }

    @staticmethod
    def _headers(access_token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}

    async def get_auth_url(
        self,
        organization_id: str,
        redirect_uri: str,
        state: str,
        extras: Optional[Dict[str, Any]] = None,
    ) -> str:
        # ClickUp's authorize endpoint takes no response_type or scope
        params = {"client_id": self.client_id, "redirect_uri": redirect_uri, "state": state}
        return f"{_CLICKUP_AUTH_URL}?{urlencode(params)}"

    async def handle_callback(self, params: OAuthCallbackParams) -> TokenData:
        async with self._client() as client:
            resp = await client.post(
                f"{_CLICKUP_API}/oauth/token",
                json={
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "code": params.code,
                    "grant_type": "authorization_code",
                },
                headers={"Accept": "application/json"},
            )
        body = self.check_response(resp, "Token exchange failed")
        if body.get("error") or not body.get("access_token"):
            raise IntegrationError(f"Token exchange error: {body.get('error_description') or body.get('error')}")
        user = (await self._get(body["access_token"], "/user", "Failed to get ClickUp user")).get("user") or {}
        return TokenData(
            access_token=body["access_token"],
            metadata={"user": {"id": user.get("id"), "username": user.get("username"), "email": user.get("email")}},
        )

    async def refresh_token(self, refresh_token: str) -> TokenData:
        raise IntegrationError("ClickUp does not support token refresh. Please re-authenticate.")

    async def _get(self, access_token: str, path: str, context: str, params: Optional[Dict[str, Any]] = None) -> Any:
        async with self._client() as client:
            resp = await client.get(f"{_CLICKUP_API}{path}", params=params, headers=self._headers(access_token))
        return self.check_response(resp, context)

    async def get_available_channels(self, integration) -> List[Channel]:
        async def _fetch(token: str) -> List[Channel]:
            channels: List[Channel] = []
            teams = (await self._get(token, "/team", "Failed to get ClickUp teams")).get("teams") or []
            for team in teams:
                spaces = (
                    await self._get(
                        token, f"/team/{team['id']}/space", "Failed to get ClickUp spaces", {"archived": "false"}
                    )
                ).get("spaces") or []
                for space in spaces:
                    channels.append(
                        Channel(
                            id=f"space:{space['id']}",
                            name=f"{space['name']} (Space)",
                            type="private" if space.get("private") else "public",
                            metadata={
                                "type": "space",
                                "spaceId": space["id"],
                                "teamId": team["id"],
                                "teamName": team.get("name"),
                                "color": space.get("color"),
                                "private": space.get("private", False),
                            },
                        )
                    )
                    try:
                        lists = (
                            await self._get(
                                token, f"/space/{space['id']}/list", "Failed to get ClickUp lists", {"archived": "false"}
                            )
                        ).get("lists") or []
                    except IntegrationError as exc:
                        logger.warning("Skipping lists of ClickUp space %s: %s", space.get("name"), exc)
                        continue
                    for item in lists:
                        channels.append(
                            Channel(
                                id=f"list:{item['id']}",
                                name=f"{item['name']} (List) - {space['name']}",
                                metadata={
                                    "type": "list",
                                    "listId": item["id"],
                                    "listName": item["name"],
                                    "spaceId": space["id"],
                                    "spaceName": space["name"],
                                    "teamId": team["id"],
                                    "teamName": team.get("name"),
                                    "taskCount": item.get("task_count"),
                                    "archived": item.get("archived", False),
                                },
                            )
                        )
            return channels

        return await self.make_authenticated_api_call(integration, _fetch)

    def build_task(self, connection, message: MessageData) -> Dict[str, Any]:
        conn_config = self.connection_config(connection)
        parts = [f"**Author:** {message.author}", f"**Change:** {message.change_type}"]
        if conn_config.get("includeNoteContent", True) is not False and message.content:
            parts += ["", message.content]
        parts += ["", f"[View Note]({message.note_url})"]
        description = "\n".join(parts)

        task: Dict[str, Any] = {
            "name": self.format_task_title(message),
            "description": description,
            "markdown_description": description,
        }
        if conn_config.get("defaultPriority"):
            task["priority"] = conn_config["defaultPriority"]
        if conn_config.get("defaultAssignees"):
            task["assignees"] = conn_config["defaultAssignees"]
        if conn_config.get("defaultTags"):
            task["tags"] = conn_config["defaultTags"]
        if conn_config.get("defaultStatus"):
            task["status"] = conn_config["defaultStatus"]
        return task

    async def post_message(self, integration, connection, message: MessageData) -> Dict[str, Any]:
        kind, raw_id = _split_channel(connection.external_id)
        if kind == "space":
            raise IntegrationError("Please select a specific list within the space to create tasks")
        task = self.build_task(connection, message)

        async def _create(token: str) -> Dict[str, Any]:
            async with self._client() as client:
                resp = await client.post(f"{_CLICKUP_API}/list/{raw_id}/task", json=task, headers=self._headers(token))
            return self.check_response(resp, "Failed to create ClickUp task")

        created = await self.make_authenticated_api_call(integration, _create)
        return {"id": created.get("id"), "url": created.get("url")}

    async def validate_connection(self, integration, connection) -> bool:
        try:
            kind, raw_id = _split_channel(connection.external_id)
            path = f"/list/{raw_id}" if kind == "list" else f"/space/{raw_id}"

            async def _fetch(token: str) -> Any:
                return await self._get(token, path, "Failed to validate ClickUp channel")

            return bool(await self.make_authenticated_api_call(integration, _fetch))
        except IntegrationError:
            return False
