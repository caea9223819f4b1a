"""
GitHubProvider — open GitHub issues from note changes.

Classic OAuth tokens don't expire; GitHub Apps with expiring user tokens
return a refresh token, which ``refresh_token`` exchanges.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx

from integrations.provider import IntegrationProvider
from integrations.types import Channel, IntegrationError, MessageData, OAuthCallbackParams, TokenData

logger = logging.getLogger(__name__)

# GitHub OAuth2 endpoints
_GH_AUTH_URL = "https://github.com/login/oauth/authorize"
_GH_TOKEN_URL = "https://github.com/login/oauth/access_token"
_GH_API = "https://api.github.com"
_PER_PAGE = 100


class GitHubProvider(IntegrationProvider):
    """OAuth2 provider for GitHub issues."""

    @property
    def name(self) -> str:
        return "github"

    @property
    def provider_type(self) -> str:
        return "ticketing"

    @property
    def display_name(self) -> str:
        return "GitHub"

    @property
    def description(self) -> str:
        return "Create GitHub issues from notes in your repositories"

    @property
    def config_schema(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "includeNoteContent": {"type": "boolean", "default": True},
                "defaultLabels": {"type": "array", "items": {"type": "string"}},
                "defaultAssignees": {"type": "array", "items": {"type": "string"}},
                "defaultMilestone": {"type": "integer"},
            },
        }

    def _headers(self, access_token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
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
            "scope": "repo read:user user:email",
            "state": state,
        }
        return f"{_GH_AUTH_URL}?{urlencode(params)}"

    async def _token_request(self, data: Dict[str, Any], context: str) -> Dict[str, Any]:
        async with self._client() as client:
            resp = await client.post(
                _GH_TOKEN_URL,
                data={"client_id": self.client_id, "client_secret": self.client_secret, **data},
                headers={"Accept": "application/json"},
            )
        body = self.check_response(resp, context)
        # GitHub reports OAuth errors with HTTP 200
        if "error" in body:
            raise IntegrationError(f"{context}: {body.get('error_description', body['error'])}")
        return body

    @staticmethod
    def _token_from(body: Dict[str, Any], fallback_refresh: Optional[str] = None) -> TokenData:
        expires_in = body.get("expires_in")
        return TokenData(
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token") or fallback_refresh,
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in) if expires_in else None,
            scope=body.get("scope"),
        )

    async def handle_callback(self, params: OAuthCallbackParams) -> TokenData:
        data = {"code": params.code}
        if params.redirect_uri:
            data["redirect_uri"] = params.redirect_uri
        body = await self._token_request(data, "GitHub OAuth error")
        token = self._token_from(body)

        async with self._client() as client:
            resp = await client.get(f"{_GH_API}/user", headers=self._headers(token.access_token))
        user = self.check_response(resp, "Failed to get GitHub user")
        token.metadata = {
            "user": {
                "id": user.get("id"),
                "login": user.get("login"),
                "name": user.get("name"),
                "avatar_url": user.get("avatar_url"),
                "email": user.get("email"),
            }
        }
        return token

    async def refresh_token(self, refresh_token: str) -> TokenData:
        if not refresh_token:
            raise IntegrationError("GitHub does not support token refresh. Please re-authenticate.")
        body = await self._token_request(
            {"refresh_token": refresh_token, "grant_type": "refresh_token"},
            "GitHub token refresh error",
        )
        return self._token_from(body, refresh_token)

    async def revoke_token(self, access_token: str) -> bool:
        """Revoke the token via GitHub's OAuth application API."""
        try:
            async with self._client() as client:
                resp = await client.request(
                    "DELETE",
                    f"{_GH_API}/applications/{self.client_id}/token",
                    auth=(self.client_id, self.client_secret),
                    json={"access_token": access_token},
                )
            return resp.status_code == 204
        except httpx.HTTPError:
            logger.warning("GitHub token revocation failed", exc_info=True)
            return False

    async def get_repositories(self, access_token: str) -> List[Dict[str, Any]]:
        repos: List[Dict[str, Any]] = []
        page = 1
        async with self._client() as client:
            while True:
                resp = await client.get(
                    f"{_GH_API}/user/repos",
                    params={
                        "page": page,
                        "per_page": _PER_PAGE,
                        "sort": "updated",
                        "affiliation": "owner,collaborator,organization_member",
                    },
                    headers=self._headers(access_token),
                )
                batch = self.check_response(resp, "Failed to get GitHub repositories")
                repos.extend(batch)
                if len(batch) < _PER_PAGE:
                    break
                page += 1
        return repos

    async def get_available_channels(self, integration) -> List[Channel]:
        repos = await self.make_authenticated_api_call(integration, self.get_repositories)
        return [
            Channel(
                id=str(repo["id"]),
                name=f"{repo['owner']['login']}/{repo['name']}",
                type="private" if repo.get("private") else "public",
                metadata={
                    "repositoryId": str(repo["id"]),
                    "repositoryName": repo["name"],
                    "repositoryFullName": repo["full_name"],
                    "ownerName": repo["owner"]["login"],
                    "description": repo.get("description"),
                    "htmlUrl": repo.get("html_url"),
                    "defaultBranch": repo.get("default_branch"),
                    "isPrivate": repo.get("private", False),
                    "isFork": repo.get("fork", False),
                },
            )
            for repo in repos
            if not repo.get("archived") and not repo.get("disabled") and (repo.get("permissions") or {}).get("push")
        ]

    @staticmethod
    def _repository_full_name(connection) -> str:
        conn_config = connection.config or {}
        return (
            conn_config.get("repositoryFullName")
            or (conn_config.get("channelMetadata") or {}).get("repositoryFullName")
            or connection.external_id
        )

    def build_issue(self, connection, message: MessageData) -> Dict[str, Any]:
        conn_config = self.connection_config(connection)
        include_content = conn_config.get("includeNoteContent", True) is not False
        issue: Dict[str, Any] = {
            "title": self.truncate_text(message.title, 256),
            "body": self.format_markdown_body(message, include_content),
        }
        if conn_config.get("defaultLabels"):
            issue["labels"] = conn_config["defaultLabels"]
        if conn_config.get("defaultAssignees"):
            issue["assignees"] = conn_config["defaultAssignees"]
        if conn_config.get("defaultMilestone"):
            issue["milestone"] = conn_config["defaultMilestone"]
        return issue

    async def post_message(self, integration, connection, message: MessageData) -> Dict[str, Any]:
        repository = self._repository_full_name(connection)
        issue = self.build_issue(connection, message)

        async def _create(token: str) -> Dict[str, Any]:
            async with self._client() as client:
                resp = await client.post(
                    f"{_GH_API}/repos/{repository}/issues", json=issue, headers=self._headers(token)
                )
            return self.check_response(resp, "Failed to create GitHub issue")

        created = await self.make_authenticated_api_call(integration, _create)
        logger.info("Created GitHub issue #%s in %s", created.get("number"), repository)
        return {"id": created.get("id"), "number": created.get("number"), "url": created.get("html_url")}

    async def validate_connection(self, integration, connection) -> bool:
        repository = self._repository_full_name(connection)

        async def _fetch(token: str) -> Dict[str, Any]:
            async with self._client() as client:
                resp = await client.get(f"{_GH_API}/repos/{repository}", headers=self._headers(token))
            return self.check_response(resp, "Failed to get GitHub repository")

        try:
            repo = await self.make_authenticated_api_call(integration, _fetch)
        except IntegrationError:
            return False
        return bool((repo.get("permissions") or {}).get("push"))
