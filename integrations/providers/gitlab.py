"""
GitLabProvider — open GitLab issues from note changes.

Works against gitlab.com or a self-managed instance whose URL is passed as
``instanceUrl`` when the OAuth flow starts and kept in the integration config.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import quote, urlencode

from integrations.provider import IntegrationProvider
from integrations.types import Channel, IntegrationError, MessageData, OAuthCallbackParams, TokenData

logger = logging.getLogger(__name__)

_DEFAULT_INSTANCE = "https://gitlab.com"
_SCOPES = "api read_user read_repository write_repository"


def _instance(url: Optional[str]) -> str:
    return (url or _DEFAULT_INSTANCE).rstrip("/")


class GitLabProvider(IntegrationProvider):
    """OAuth2 provider for GitLab issues."""

    @property
    def name(self) -> str:
        return "gitlab"

    @property
    def provider_type(self) -> str:
        return "ticketing"

    @property
    def display_name(self) -> str:
        return "GitLab"

    @property
    def description(self) -> str:
        return "Create GitLab issues from notes in your projects"

    @property
    def config_schema(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "instanceUrl": {
                    "type": "string",
                    "title": "GitLab Instance URL",
                    "description": "Custom GitLab instance URL (leave empty for gitlab.com)",
                    "format": "uri",
                },
                "user": {
                    "type": "object",
                    "properties": {
                        "id": {"type": "number"},
                        "username": {"type": "string"},
                        "name": {"type": "string"},
                        "email": {"type": "string"},
                        "avatarUrl": {"type": "string"},
                    },
                    "required": ["id", "username", "name"],
                },
            },
        }

    def _api_base(self, integration) -> str:
        return f"{_instance(self.integration_config(integration).get('instanceUrl'))}/api/v4"

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
        params = {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "state": state,
            "scope": _SCOPES,
        }
        return f"{_instance((extras or {}).get('instanceUrl'))}/oauth/authorize?{urlencode(params)}"

    async def _token_request(self, instance_url: str, data: Dict[str, Any], context: str) -> TokenData:
        async with self._client() as client:
            resp = await client.post(
                f"{instance_url}/oauth/token",
                data={"client_id": self.client_id, "client_secret": self.client_secret, **data},
                headers={"Accept": "application/json"},
            )
        body = self.check_response(resp, context)
        if body.get("error"):
            raise IntegrationError(f"{context}: {body.get('error_description') or body['error']}")
        expires_in = body.get("expires_in")
        return TokenData(
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token"),
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in) if expires_in else None,
            scope=body.get("scope"),
        )

    async def handle_callback(self, params: OAuthCallbackParams) -> TokenData:
        instance_url = _instance(params.extras.get("instanceUrl"))
        data = {"grant_type": "authorization_code", "code": params.code}
        if params.redirect_uri:
            data["redirect_uri"] = params.redirect_uri
        token = await self._token_request(instance_url, data, "Token exchange failed")

        async with self._client() as client:
            resp = await client.get(f"{instance_url}/api/v4/user", headers=self._headers(token.access_token))
        user = self.check_response(resp, "Failed to get GitLab user")
        token.metadata = {
            "instanceUrl": instance_url,
            "user": {
                "id": user.get("id"),
                "username": user.get("username"),
                "name": user.get("name"),
                "email": user.get("email"),
                "avatarUrl": user.get("avatar_url"),
            },
        }
        return token

    async def refresh_token(self, refresh_token: str) -> TokenData:
        return await self._token_request(
            _DEFAULT_INSTANCE,
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
            "Token refresh failed",
        )

    async def refresh_integration_token(self, integration, refresh_token: str) -> TokenData:
        return await self._token_request(
            _instance(self.integration_config(integration).get("instanceUrl")),
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
            "Token refresh failed",
        )

    async def get_available_channels(self, integration) -> List[Channel]:
        base = self._api_base(integration)

        async def _fetch(token: str) -> List[Dict[str, Any]]:
            async with self._client() as client:
                resp = await client.get(
                    f"{base}/projects",
                    params={"membership": "true", "per_page": 100, "order_by": "last_activity_at"},
                    headers=self._headers(token),
                )
            return self.check_response(resp, "Failed to get GitLab projects")

        projects = await self.make_authenticated_api_call(integration, _fetch)
        return [
            Channel(
                id=str(project["id"]),
                name=project["name_with_namespace"],
                type="private" if project.get("visibility") == "private" else "public",
                metadata={
                    "projectId": project["id"],
                    "projectPath": project.get("path_with_namespace"),
                    "description": project.get("description"),
                    "webUrl": project.get("web_url"),
                    "avatarUrl": project.get("avatar_url"),
                    "defaultBranch": project.get("default_branch"),
                    "namespace": project.get("namespace"),
                },
            )
            for project in projects
        ]

    def build_issue(self, connection, message: MessageData) -> Dict[str, Any]:
        conn_config = self.connection_config(connection)
        description = f"**Note by {message.author}**\n\n"
        if conn_config.get("includeNoteContent", True) is not False and message.content:
            description += f"{self.truncate_text(message.content, 50000)}\n\n"
        description += f"[View full note]({message.note_url})"

        issue: Dict[str, Any] = {"title": self.truncate_text(message.title, 255), "description": description}
        if conn_config.get("defaultLabels"):
            issue["labels"] = ",".join(conn_config["defaultLabels"])
        if conn_config.get("milestoneId"):
            issue["milestone_id"] = conn_config["milestoneId"]
        if conn_config.get("assigneeId"):
            issue["assignee_id"] = conn_config["assigneeId"]
        return issue

    def _project_id(self, connection) -> str:
        project_id = self.connection_config(connection).get("projectId") or connection.external_id
        if not project_id:
            raise IntegrationError("Project ID is required for GitLab integration")
        return quote(str(project_id), safe="")

    async def post_message(self, integration, connection, message: MessageData) -> Dict[str, Any]:
        url = f"{self._api_base(integration)}/projects/{self._project_id(connection)}/issues"
        issue = self.build_issue(connection, message)

        async def _create(token: str) -> Dict[str, Any]:
            async with self._client() as client:
                resp = await client.post(url, json=issue, headers=self._headers(token))
            return self.check_response(resp, "Failed to create GitLab issue")

        created = await self.make_authenticated_api_call(integration, _create)
        return {"id": created.get("id"), "iid": created.get("iid"), "url": created.get("web_url")}

    async def validate_connection(self, integration, connection) -> bool:
        async def _fetch(token: str) -> Dict[str, Any]:
            url = f"{self._api_base(integration)}/projects/{self._project_id(connection)}"
            async with self._client() as client:
                resp = await client.get(url, headers=self._headers(token))
            return self.check_response(resp, "Failed to get GitLab project")

        try:
            return bool(await self.make_authenticated_api_call(integration, _fetch))
        except IntegrationError:
            return False
