"""
LinearProvider — create Linear issues in teams or projects (GraphQL API).

Channel ids are prefixed: ``team:<id>`` or ``project:<id>``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

from integrations.provider import IntegrationProvider
from integrations.types import Channel, IntegrationError, MessageData, OAuthCallbackParams, TokenData

logger = logging.getLogger(__name__)

_LINEAR_AUTH_URL = "https://linear.app/oauth/authorize"
_LINEAR_TOKEN_URL = "https://api.linear.app/oauth/token"
_LINEAR_GRAPHQL = "https://api.linear.app/graphql"

_VIEWER_QUERY = "query { viewer { id name email } }"
_TEAMS_QUERY = "query { teams { nodes { id name key description color } } }"
_PROJECTS_QUERY = """
query {
  projects {
    nodes { id name description state color teams { nodes { id name key } } }
  }
}
"""
_TEAM_QUERY = "query($id: String!) { team(id: $id) { id name key } }"
_PROJECT_QUERY = """
query($id: String!) {
  project(id: $id) { id name teams { nodes { id name key } } }
}
"""
_ISSUE_CREATE = """
mutation($input: IssueCreateInput!) {
  issueCreate(input: $input) {
    success
    issue { id identifier title url }
  }
}
"""


def _split_channel(channel_id: str) -> Tuple[str, str]:
    kind, _, raw_id = (channel_id or "").partition(":")
    if kind not in ("team", "project") or not raw_id:
        raise IntegrationError("Invalid channel type for Linear integration")
    return kind, raw_id


class LinearProvider(IntegrationProvider):
    """OAuth2 + GraphQL provider for Linear."""

    @property
    def name(self) -> str:
        return "linear"

    @property
    def provider_type(self) -> str:
        return "ticketing"

    @property
    def display_name(self) -> str:
        return "Linear"

    @property
    def description(self) -> str:
        return "Connect notes to Linear teams and projects for issue tracking and project management"

    @property
    def config_schema(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "includeNoteContent": {
                    "type": "boolean",
                    "description": "Include the full note content in the Linear issue description",
                    "default": True,
                },
                "defaultState": {
                    "type": "string",
                    "description": 'Default state for created issues (e.g., "Todo", "In Progress")',
                },
                "priority": {
                    "type": "integer",
                    "description": "Priority level for created issues",
                    "minimum": 0,
                    "maximum": 4,
                },
            },
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
            "state": state,
            "scope": "read,write",
        }
        return f"{_LINEAR_AUTH_URL}?{urlencode(params)}"

    async def _token_request(self, data: Dict[str, Any]) -> TokenData:
        async with self._client() as client:
            resp = await client.post(
                _LINEAR_TOKEN_URL,
                data={"client_id": self.client_id, "client_secret": self.client_secret, **data},
                headers={"Accept": "application/json"},
            )
        body = self.check_response(resp, "Failed to exchange code for token")
        if body.get("error"):
            raise IntegrationError(f"OAuth token exchange error: {body.get('error_description') or body['error']}")
        expires_in = body.get("expires_in")
        return TokenData(
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token"),
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in) if expires_in else None,
            scope=body.get("scope"),
        )

    async def handle_callback(self, params: OAuthCallbackParams) -> TokenData:
        data = {"grant_type": "authorization_code", "code": params.code}
        if params.redirect_uri:
            data["redirect_uri"] = params.redirect_uri
        token = await self._token_request(data)
        viewer = (await self.graphql(token.access_token, _VIEWER_QUERY))["viewer"]
        token.metadata = {"user": viewer}
        return token

    async def refresh_token(self, refresh_token: str) -> TokenData:
        if not refresh_token:
            raise IntegrationError("Linear does not support token refresh. Please re-authenticate.")
        return await self._token_request({"grant_type": "refresh_token", "refresh_token": refresh_token})

    async def revoke_token(self, access_token: str) -> bool:
        async with self._client() as client:
            resp = await client.post(
                "https://api.linear.app/oauth/revoke",
                headers={"Authorization": f"Bearer {access_token}"},
            )
        return resp.is_success

    async def graphql(self, access_token: str, query: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        async with self._client() as client:
            resp = await client.post(
                _LINEAR_GRAPHQL,
                json={"query": query.strip(), "variables": variables or {}},
                headers={"Authorization": f"Bearer {access_token}", "Content-Type": "application/json"},
            )
        body = self.check_response(resp, "Linear API request failed")
        errors = body.get("errors") or []
        if errors:
            raise IntegrationError(f"Linear GraphQL error: {errors[0].get('message', 'Unknown error')}")
        if not body.get("data"):
            raise IntegrationError("No data returned from Linear API")
        return body["data"]

    async def get_available_channels(self, integration) -> List[Channel]:
        async def _fetch(token: str) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
            teams = (await self.graphql(token, _TEAMS_QUERY))["teams"]["nodes"]
            projects = (await self.graphql(token, _PROJECTS_QUERY))["projects"]["nodes"]
            return teams, projects

        teams, projects = await self.make_authenticated_api_call(integration, _fetch)
        channels: List[Channel] = []
        for team in teams:
            channels.append(
                Channel(
                    id=f"team:{team['id']}",
                    name=f"{team['name']} (Team)",
                    metadata={
                        "type": "team",
                        "teamId": team["id"],
                        "teamKey": team.get("key"),
                        "color": team.get("color"),
                        "description": team.get("description"),
                    },
                )
            )
        for project in projects:
            project_teams = (project.get("teams") or {}).get("nodes") or []
            team_names = ", ".join(t["name"] for t in project_teams)
            channels.append(
                Channel(
                    id=f"project:{project['id']}",
                    name=f"{project['name']} (Project)" + (f" - {team_names}" if team_names else ""),
                    metadata={
                        "type": "project",
                        "projectId": project["id"],
                        "state": project.get("state"),
                        "color": project.get("color"),
                        "teams": project_teams,
                    },
                )
            )
        channels.sort(key=lambda c: c.name.lower())
        return channels

    def format_description(self, message: MessageData, include_content: bool = True) -> str:
        parts = [
            f"**Note:** [{message.title}]({message.note_url})",
            f"**Author:** {message.author}",
            f"**Action:** {message.change_type.capitalize()}",
        ]
        if include_content and message.content:
            parts += ["", "**Content:**", message.content]
        return "\n".join(parts)

    async def post_message(self, integration, connection, message: MessageData) -> Dict[str, Any]:
        kind, raw_id = _split_channel(connection.external_id)
        include_content = self.integration_config(integration).get("includeNoteContent", True) is not False
        issue_input: Dict[str, Any] = {
            "title": self.format_task_title(message),
            "description": self.format_description(message, include_content),
        }
        priority = self.integration_config(integration).get("priority")
        if priority is not None:
            issue_input["priority"] = priority

        async def _create(token: str) -> Dict[str, Any]:
            if kind == "team":
                issue_input["teamId"] = raw_id
            else:
                project = (await self.graphql(token, _PROJECT_QUERY, {"id": raw_id}))["project"]
                project_teams = (project.get("teams") or {}).get("nodes") or []
                if not project_teams:
                    raise IntegrationError("Project has no associated teams")
                issue_input["teamId"] = project_teams[0]["id"]
                issue_input["projectId"] = raw_id
            data = await self.graphql(token, _ISSUE_CREATE, {"input": issue_input})
            result = data["issueCreate"]
            if not result.get("success"):
                raise IntegrationError("Failed to create Linear issue")
            return result["issue"]

        issue = await self.make_authenticated_api_call(integration, _create)
        logger.info("Created Linear issue %s", issue.get("identifier"))
        return {"id": issue.get("id"), "key": issue.get("identifier"), "url": issue.get("url")}

    async def validate_connection(self, integration, connection) -> bool:
        try:
            kind, raw_id = _split_channel(connection.external_id)
            query = _TEAM_QUERY if kind == "team" else _PROJECT_QUERY

            async def _fetch(token: str) -> Dict[str, Any]:
                return await self.graphql(token, query, {"id": raw_id})

            data = await self.make_authenticated_api_call(integration, _fetch)
            return bool(data.get(kind))
        except IntegrationError:
            return False
