"""
JiraProvider — create Jira Cloud issues from note changes.

OAuth 2.0 (3LO) through auth.atlassian.com; API calls go through
``api.atlassian.com/ex/jira/{cloudId}``.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from integrations.provider import IntegrationProvider
from integrations.types import Channel, IntegrationError, MessageData, OAuthCallbackParams, TokenData

logger = logging.getLogger(__name__)

_JIRA_AUTH_URL = "https://auth.atlassian.com/authorize"
_JIRA_TOKEN_URL = "https://auth.atlassian.com/oauth/token"
_ATLASSIAN_API = "https://api.atlassian.com"
_SCOPES = "read:jira-work write:jira-work manage:jira-project read:me offline_access"


def _expires_at(expires_in: Optional[int]) -> Optional[datetime]:
    return datetime.now(timezone.utc) + timedelta(seconds=expires_in) if expires_in else None


class JiraProvider(IntegrationProvider):
    """OAuth2 provider for Jira Cloud."""

    @property
    def name(self) -> str:
        return "jira"

    @property
    def provider_type(self) -> str:
        return "ticketing"

    @property
    def display_name(self) -> str:
        return "Jira"

    @property
    def description(self) -> str:
        return "Connect notes to Jira projects for issue tracking and project management"

    @property
    def config_schema(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "instanceUrl": {
                    "type": "string",
                    "title": "Jira Instance URL",
                    "description": "Your Jira Cloud instance URL (e.g., https://yourcompany.atlassian.net)",
                    "pattern": "^https://[a-zA-Z0-9-]+\\.atlassian\\.net/?$",
                },
                "defaultIssueType": {
                    "type": "string",
                    "title": "Default Issue Type",
                    "description": "Default issue type for created issues (e.g., Task, Story, Bug)",
                    "default": "Task",
                },
                "includeNoteContent": {
                    "type": "boolean",
                    "title": "Include Note Content",
                    "description": "Include the full note content in the issue description",
                    "default": True,
                },
                "useBotUser": {"type": "boolean", "default": False},
                "botUser": {"type": "object"},
            },
            "required": ["instanceUrl"],
        }

    def _headers(self, access_token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}

    # ── OAuth ───────────────────────────────────────────────────────────

    async def get_auth_url(
        self,
        organization_id: str,
        redirect_uri: str,
        state: str,
        extras: Optional[Dict[str, Any]] = None,
    ) -> str:
        params = {
            "audience": "api.atlassian.com",
            "client_id": self.client_id,
            "scope": _SCOPES,
            "redirect_uri": redirect_uri,
            "state": state,
            "response_type": "code",
            "prompt": "consent",
        }
        return f"{_JIRA_AUTH_URL}?{urlencode(params)}"

    async def _token_request(self, payload: Dict[str, Any], context: str) -> Dict[str, Any]:
        async with self._client() as client:
            resp = await client.post(
                _JIRA_TOKEN_URL,
                json={"client_id": self.client_id, "client_secret": self.client_secret, **payload},
                headers={"Accept": "application/json"},
            )
        body = self.check_response(resp, context)
        if body.get("error"):
            raise IntegrationError(f"{context}: {body.get('error_description') or body['error']}")
        if not body.get("access_token"):
            raise IntegrationError("No access token received from Jira")
        return body

    async def handle_callback(self, params: OAuthCallbackParams) -> TokenData:
        if not params.redirect_uri:
            raise IntegrationError("Invalid OAuth state: missing redirect URI")
        body = await self._token_request(
            {"grant_type": "authorization_code", "code": params.code, "redirect_uri": params.redirect_uri},
            "Token exchange failed",
        )
        access_token = body["access_token"]
        user, resources = await asyncio.gather(
            self._get_current_user(access_token),
            self._get_accessible_resources(access_token),
        )
        site = resources[0] if resources else {}
        return TokenData(
            access_token=access_token,
            refresh_token=body.get("refresh_token"),
            expires_at=_expires_at(body.get("expires_in")),
            scope=body.get("scope"),
            metadata={
                "user": user,
                "resources": resources,
                "cloudId": site.get("id"),
                "instanceUrl": site.get("url"),
            },
        )

    async def refresh_token(self, refresh_token: str) -> TokenData:
        if not refresh_token:
            raise IntegrationError("Refresh token is required")
        body = await self._token_request(
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
            "Token refresh failed",
        )
        return TokenData(
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token") or refresh_token,
            expires_at=_expires_at(body.get("expires_in")),
            scope=body.get("scope"),
        )

    # ── Atlassian API ───────────────────────────────────────────────────

    async def _get(self, access_token: str, url: str, context: str, params: Optional[Dict[str, Any]] = None) -> Any:
        async with self._client() as client:
            resp = await client.get(url, params=params, headers=self._headers(access_token))
        return self.check_response(resp, context)

    async def _get_current_user(self, access_token: str) -> Dict[str, Any]:
        return await self._get(access_token, f"{_ATLASSIAN_API}/me", "Failed to get user info")

    async def _get_accessible_resources(self, access_token: str) -> List[Dict[str, Any]]:
        return await self._get(
            access_token,
            f"{_ATLASSIAN_API}/oauth/token/accessible-resources",
            "Failed to get accessible resources",
        )

    async def _cloud_id(self, integration, access_token: str) -> str:
        cloud_id = self.integration_config(integration).get("cloudId")
        if cloud_id:
            return cloud_id
        resources = await self._get_accessible_resources(access_token)
        if not resources:
            raise IntegrationError("No accessible Jira resource found")
        return resources[0]["id"]

    async def _api_base(self, integration, access_token: str) -> str:
        return f"{_ATLASSIAN_API}/ex/jira/{await self._cloud_id(integration, access_token)}/rest/api/3"

    async def get_available_channels(self, integration) -> List[Channel]:
        async def _fetch(token: str) -> List[Dict[str, Any]]:
            base = await self._api_base(integration, token)
            data = await self._get(
                token, f"{base}/project/search", "Failed to get projects", {"expand": "lead,description"}
            )
            return data.get("values", [])

        projects = await self.make_authenticated_api_call(integration, _fetch)
        return [
            Channel(
                id=project["key"],
                name=f"{project['key']} - {project['name']}",
                type="public",
                metadata={
                    "projectId": project.get("id"),
                    "projectKey": project["key"],
                    "projectName": project["name"],
                    "projectType": project.get("projectTypeKey"),
                    "description": project.get("description"),
                    "lead": project.get("lead"),
                },
            )
            for project in projects
        ]

    async def _issue_types(self, integration, project_key: str) -> List[Dict[str, Any]]:
        async def _fetch(token: str) -> List[Dict[str, Any]]:
            base = await self._api_base(integration, token)
            data = await self._get(
                token,
                f"{base}/issue/createmeta",
                "Failed to get issue types",
                {"projectKeys": project_key, "expand": "projects.issuetypes"},
            )
            projects = data.get("projects") or []
            if not projects or not projects[0].get("issuetypes"):
                raise IntegrationError("No issue types found for project")
            return [t for t in projects[0]["issuetypes"] if not t.get("subtask")]

        return await self.make_authenticated_api_call(integration, _fetch)

    def _reporter_account_id(self, integration, connection) -> Optional[str]:
        conn_config = self.connection_config(connection)
        if conn_config.get("reporterAccountId"):
            return conn_config["reporterAccountId"]
        int_config = self.integration_config(integration)
        bot = int_config.get("botUser") or {}
        if int_config.get("useBotUser") and bot.get("accountId"):
            return bot["accountId"]
        return (int_config.get("user") or {}).get("account_id")

    async def build_issue(self, integration, connection, message: MessageData) -> Dict[str, Any]:
        int_config = self.integration_config(integration)
        include_content = int_config.get("includeNoteContent", True) is not False
        preferred = (int_config.get("defaultIssueType") or "Task").lower()
        project_key = connection.external_id

        try:
            types = await self._issue_types(integration, project_key)
            match = next((t for t in types if t["name"].lower() == preferred), None)
            issue_type = match["name"] if match else (types[0]["name"] if types else "Task")
        except IntegrationError as exc:
            logger.warning("Falling back to 'Task' issue type for %s: %s", project_key, exc)
            issue_type = "Task"

        summary = message.title
        if message.change_type != "created":
            summary = f"[{message.change_type.upper()}] {summary}"

        description = f"Note {message.change_type} by {message.author}"
        if message.note_url:
            description += f"\n\n[View Note|{message.note_url}]"
        if include_content and message.content:
            description += f"\n\n---\n\n{message.content}"

        fields: Dict[str, Any] = {
            "project": {"key": project_key},
            "summary": self.truncate_text(summary, 255),
            "description": {
                "type": "doc",
                "version": 1,
                "content": [{"type": "paragraph", "content": [{"type": "text", "text": description}]}],
            },
            "issuetype": {"name": issue_type},
        }
        reporter = self._reporter_account_id(integration, connection)
        if reporter:
            fields["reporter"] = {"id": reporter}
        return {"fields": fields}

    async def post_message(self, integration, connection, message: MessageData) -> Dict[str, Any]:
        if not connection.external_id:
            raise IntegrationError("Project key is required")
        issue = await self.build_issue(integration, connection, message)

        async def _create(token: str) -> Dict[str, Any]:
            base = await self._api_base(integration, token)
            async with self._client() as client:
                resp = await client.post(f"{base}/issue", json=issue, headers=self._headers(token))
            return self.check_response(resp, "Failed to create issue")

        created = await self.make_authenticated_api_call(integration, _create)
        logger.info("Created Jira issue %s in %s", created.get("key"), connection.external_id)
        return {"id": created.get("id"), "key": created.get("key"), "url": created.get("self")}

    async def validate_connection(self, integration, connection) -> bool:
        if not integration.access_token or not connection.external_id:
            return False

        async def _fetch(token: str) -> Any:
            base = await self._api_base(integration, token)
            return await self._get(token, f"{base}/project/{connection.external_id}", "Failed to get project")

        try:
            await self.make_authenticated_api_call(integration, _fetch)
            return True
        except IntegrationError:
            return False

    # ── UI helpers ──────────────────────────────────────────────────────

    async def search_users(self, integration, query: str) -> List[Dict[str, Any]]:
        async def _fetch(token: str) -> List[Dict[str, Any]]:
            base = await self._api_base(integration, token)
            return await self._get(token, f"{base}/user/search", "Failed to search users", {"query": query})

        return await self.make_authenticated_api_call(integration, _fetch)

    async def get_current_user_details(self, integration) -> Dict[str, Any]:
        async def _fetch(token: str) -> Dict[str, Any]:
            base = await self._api_base(integration, token)
            return await self._get(token, f"{base}/myself", "Failed to fetch user details")

        return await self.make_authenticated_api_call(integration, _fetch)
