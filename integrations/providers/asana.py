"""
AsanaProvider — create Asana tasks in workspace projects.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from integrations.provider import IntegrationProvider
from integrations.types import Channel, IntegrationError, MessageData, OAuthCallbackParams, TokenData

logger = logging.getLogger(__name__)

_ASANA_AUTH_URL = "https://app.asana.com/-/oauth_authorize"
_ASANA_TOKEN_URL = "https://app.asana.com/-/oauth_token"
_ASANA_API = "https://app.asana.com/api/1.0"


class AsanaProvider(IntegrationProvider):
    """OAuth2 provider for Asana."""

    @property
    def name(self) -> str:
        return "asana"

    @property
    def provider_type(self) -> str:
        return "productivity"

    @property
    def display_name(self) -> str:
        return "Asana"

    @property
    def description(self) -> str:
        return "Connect notes to Asana projects for task management and team collaboration"

    @property
    def config_schema(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "user": {
                    "type": "object",
                    "properties": {"gid": {"type": "string"}, "name": {"type": "string"}, "email": {"type": "string"}},
                },
                "workspaces": {
                    "type": "array",
                    "items": {"type": "object", "properties": {"gid": {"type": "string"}, "name": {"type": "string"}}},
                },
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
        # access follows workspace permissions, no scopes
        params = {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "state": state,
        }
        return f"{_ASANA_AUTH_URL}?{urlencode(params)}"

    async def _token_request(self, data: Dict[str, Any], context: str) -> Dict[str, Any]:
        async with self._client() as client:
            resp = await client.post(
                _ASANA_TOKEN_URL,
                data={"client_id": self.client_id, "client_secret": self.client_secret, **data},
                headers={"Accept": "application/json"},
            )
        body = self.check_response(resp, context)
        if body.get("error"):
            raise IntegrationError(f"{context}: {body.get('error_description') or body['error']}")
        return body

    @staticmethod
    def _expires_at(body: Dict[str, Any]) -> Optional[datetime]:
        expires_in = body.get("expires_in")
        return datetime.now(timezone.utc) + timedelta(seconds=expires_in) if expires_in else None

    async def handle_callback(self, params: OAuthCallbackParams) -> TokenData:
        data = {"grant_type": "authorization_code", "code": params.code}
        if params.redirect_uri:
            data["redirect_uri"] = params.redirect_uri
        body = await self._token_request(data, "Asana token exchange failed")
        user = await self._get(body["access_token"], "/users/me", "Failed to get Asana user")
        workspaces = await self._get(body["access_token"], "/workspaces", "Failed to get Asana workspaces")
        return TokenData(
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token"),
            expires_at=self._expires_at(body),
            metadata={
                "user": {"gid": user.get("gid"), "name": user.get("name"), "email": user.get("email")},
                "workspaces": [{"gid": w["gid"], "name": w["name"]} for w in workspaces],
            },
        )

    async def refresh_token(self, refresh_token: str) -> TokenData:
        body = await self._token_request(
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
            "Asana token refresh failed",
        )
        return TokenData(
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token") or refresh_token,
            expires_at=self._expires_at(body),
        )

    async def _get(self, access_token: str, path: str, context: str, params: Optional[Dict[str, Any]] = None) -> Any:
        async with self._client() as client:
            resp = await client.get(f"{_ASANA_API}{path}", params=params, headers=self._headers(access_token))
        return self.check_response(resp, context).get("data")

    async def get_available_channels(self, integration) -> List[Channel]:
        async def _fetch(token: str) -> List[Channel]:
            channels: List[Channel] = []
            for workspace in await self._get(token, "/workspaces", "Failed to get Asana workspaces"):
                try:
                    projects = await self._get(
                        token,
                        "/projects",
                        "Failed to get Asana projects",
                        {
                            "workspace": workspace["gid"],
                            "archived": "false",
                            "limit": 100,
                            "opt_fields": "name,archived,public,color,notes,team.name",
                        },
                    )
                except IntegrationError as exc:
                    logger.warning("Skipping Asana workspace %s: %s", workspace.get("name"), exc)
                    continue
                for project in projects:
                    if project.get("archived"):
                        continue
                    channels.append(
                        Channel(
                            id=project["gid"],
                            name=f"{project['name']} ({workspace['name']})",
                            type="public" if project.get("public", True) else "private",
                            metadata={
                                "projectName": project["name"],
                                "workspaceName": workspace["name"],
                                "workspaceGid": workspace["gid"],
                                "color": project.get("color"),
                                "notes": project.get("notes"),
                                "team": project.get("team"),
                            },
                        )
                    )
            return channels

        channels = await self.make_authenticated_api_call(integration, _fetch)
        channels.sort(key=lambda c: c.name.lower())
        return channels

    def build_task(self, connection, message: MessageData) -> Dict[str, Any]:
        conn_config = self.connection_config(connection)
        project_gid = conn_config.get("projectGid") or connection.external_id

        notes = f"Created from note by {message.author}"
        if conn_config.get("includeNoteContent", True) is not False and message.content:
            notes += f"\n\n{message.content}"
        if message.note_url:
            notes += f"\n\nSource: {message.note_url}"

        task: Dict[str, Any] = {"name": message.title, "notes": notes, "projects": [project_gid]}
        if conn_config.get("defaultAssignee"):
            task["assignee"] = conn_config["defaultAssignee"]
        if conn_config.get("defaultSection"):
            task["memberships"] = [{"project": project_gid, "section": conn_config["defaultSection"]}]
        return task

    async def post_message(self, integration, connection, message: MessageData) -> Dict[str, Any]:
        task = self.build_task(connection, message)

        async def _create(token: str) -> Dict[str, Any]:
            async with self._client() as client:
                resp = await client.post(f"{_ASANA_API}/tasks", json={"data": task}, headers=self._headers(token))
            return self.check_response(resp, "Failed to create Asana task").get("data") or {}

        created = await self.make_authenticated_api_call(integration, _create)
        return {"id": created.get("gid"), "url": created.get("permalink_url")}

    async def validate_connection(self, integration, connection) -> bool:
        project_gid = self.connection_config(connection).get("projectGid") or connection.external_id

        async def _fetch(token: str) -> Any:
            return await self._get(token, f"/projects/{project_gid}", "Failed to get Asana project")

        try:
            project = await self.make_authenticated_api_call(integration, _fetch)
        except IntegrationError:
            return False
        return bool(project) and not project.get("archived", False)
