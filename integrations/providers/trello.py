"""
TrelloProvider — create Trello cards in board lists.

Trello still uses OAuth 1.0a (HMAC-SHA1):
  1. POST OAuthGetRequestToken  → request token + secret
  2. redirect the user to /authorize?oauth_token=…
  3. POST OAuthGetAccessToken with the verifier → access token + secret

The request-token secret is kept in memory for ten minutes between steps
1 and 3.  The access-token secret is stored as the integration's refresh
token; Trello tokens created with ``expiration=never`` do not expire.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import secrets
import time
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs, quote, urlencode

from config.settings import config
from integrations.provider import IntegrationProvider
from integrations.types import Channel, IntegrationError, MessageData, OAuthCallbackParams, TokenData

logger = logging.getLogger(__name__)

_TRELLO_OAUTH = "https://trello.com/1"
_TRELLO_API = "https://api.trello.com/1"
_REQUEST_TOKEN_TTL = 10 * 60

# request token → {"organization_id", "secret", "created"}
_request_tokens: Dict[str, Dict[str, Any]] = {}


def _pct(value: str) -> str:
    return quote(value, safe="~-._")


def oauth1_signature(
    method: str,
    url: str,
    params: Dict[str, str],
    consumer_secret: str,
    token_secret: str = "",
) -> str:
    """RFC 5849 HMAC-SHA1 signature over the sorted, percent-encoded params."""
    normalized = "&".join(f"{_pct(k)}={_pct(v)}" for k, v in sorted(params.items()))
    base_string = "&".join([method.upper(), _pct(url), _pct(normalized)])
    key = f"{_pct(consumer_secret)}&{_pct(token_secret)}"
    digest = hmac.new(key.encode(), base_string.encode(), hashlib.sha1).digest()
    return base64.b64encode(digest).decode()


def _prune_request_tokens(now: Optional[float] = None) -> None:
    now = now or time.time()
    for token in [t for t, ctx in _request_tokens.items() if now - ctx["created"] > _REQUEST_TOKEN_TTL]:
        _request_tokens.pop(token, None)


class TrelloProvider(IntegrationProvider):
    """OAuth 1.0a provider for Trello."""

    @property
    def name(self) -> str:
        return "trello"

    @property
    def provider_type(self) -> str:
        return "productivity"

    @property
    def display_name(self) -> str:
        return "Trello"

    @property
    def description(self) -> str:
        return "Create Trello cards from notes in your board lists"

    @property
    def config_schema(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "user": {
                    "type": "object",
                    "properties": {"id": {"type": "string"}, "username": {"type": "string"}, "fullName": {"type": "string"}},
                },
            },
        }

    def _oauth_params(self, **extra: str) -> Dict[str, str]:
        return {
            "oauth_consumer_key": self.client_id,
            "oauth_nonce": secrets.token_hex(16),
            "oauth_signature_method": "HMAC-SHA1",
            "oauth_timestamp": str(int(time.time())),
            "oauth_version": "1.0",
            **extra,
        }

    async def _signed_post(self, url: str, params: Dict[str, str], token_secret: str, context: str) -> Dict[str, str]:
        params["oauth_signature"] = oauth1_signature("POST", url, params, self.client_secret, token_secret)
        async with self._client() as client:
            resp = await client.post(url, data=params)
        if resp.is_error:
            raise self.handle_api_error(resp, context)
        parsed = parse_qs(resp.text)
        return {k: v[0] for k, v in parsed.items()}

    async def get_auth_url(
        self,
        organization_id: str,
        redirect_uri: str,
        state: str,
        extras: Optional[Dict[str, Any]] = None,
    ) -> str:
        # OAuth 1.0a has no state parameter; carry it on the callback URL
        separator = "&" if "?" in redirect_uri else "?"
        callback = f"{redirect_uri}{separator}{urlencode({'state': state})}"
        url = f"{_TRELLO_OAUTH}/OAuthGetRequestToken"
        data = await self._signed_post(
            url, self._oauth_params(oauth_callback=callback), "", "Failed to get request token"
        )
        request_token, request_secret = data.get("oauth_token"), data.get("oauth_token_secret")
        if not request_token or not request_secret:
            raise IntegrationError("Failed to get request token from Trello")

        _prune_request_tokens()
        _request_tokens[request_token] = {
            "organization_id": str(organization_id),
            "secret": request_secret,
            "created": time.time(),
        }
        params = {
            "oauth_token": request_token,
            "name": config.app_name,
            "scope": "read,write",
            "expiration": "never",
        }
        return f"{_TRELLO_OAUTH}/OAuthAuthorizeToken?{urlencode(params)}"

    async def handle_callback(self, params: OAuthCallbackParams) -> TokenData:
        # ``code`` carries the oauth_verifier
        if not params.oauth_token:
            raise IntegrationError("Missing oauth_token in Trello callback")
        _prune_request_tokens()
        context = _request_tokens.get(params.oauth_token)
        if context is None:
            raise IntegrationError("Trello request token expired or unknown. Please try connecting again.")
        if params.organization_id and context["organization_id"] != params.organization_id:
            raise IntegrationError("Organization ID mismatch in Trello request token")

        url = f"{_TRELLO_OAUTH}/OAuthGetAccessToken"
        data = await self._signed_post(
            url,
            self._oauth_params(oauth_token=params.oauth_token, oauth_verifier=params.code or ""),
            context["secret"],
            "Failed to get access token",
        )
        access_token, access_secret = data.get("oauth_token"), data.get("oauth_token_secret")
        if not access_token or not access_secret:
            raise IntegrationError("Failed to get access token from Trello")
        _request_tokens.pop(params.oauth_token, None)

        member = await self._get(access_token, "/members/me", "Failed to get Trello member")
        return TokenData(
            access_token=access_token,
            refresh_token=access_secret,
            metadata={
                "user": {"id": member.get("id"), "username": member.get("username"), "fullName": member.get("fullName")}
            },
        )

    async def refresh_token(self, refresh_token: str) -> TokenData:
        raise IntegrationError("Trello tokens do not expire. Please reconnect the Trello integration.")

    async def revoke_token(self, access_token: str) -> bool:
        async with self._client() as client:
            resp = await client.delete(
                f"{_TRELLO_API}/tokens/{access_token}", params={"key": self.client_id, "token": access_token}
            )
        return resp.is_success

    async def _get(self, access_token: str, path: str, context: str, params: Optional[Dict[str, Any]] = None) -> Any:
        query = {"key": self.client_id, "token": access_token, **(params or {})}
        async with self._client() as client:
            resp = await client.get(f"{_TRELLO_API}{path}", params=query)
        return self.check_response(resp, context)

    async def get_available_channels(self, integration) -> List[Channel]:
        async def _fetch(token: str) -> List[Channel]:
            channels: List[Channel] = []
            boards = await self._get(token, "/members/me/boards", "Failed to fetch boards", {"filter": "open"})
            for board in boards:
                try:
                    lists = await self._get(token, f"/boards/{board['id']}/lists", "Failed to fetch lists", {"filter": "open"})
                except IntegrationError as exc:
                    logger.warning("Skipping lists of Trello board %s: %s", board.get("name"), exc)
                    continue
                for item in lists:
                    channels.append(
                        Channel(
                            id=item["id"],
                            name=f"{board['name']} / {item['name']}",
                            metadata={
                                "boardId": board["id"],
                                "boardName": board["name"],
                                "listName": item["name"],
                                "boardUrl": board.get("url"),
                            },
                        )
                    )
            return channels

        return await self.make_authenticated_api_call(integration, _fetch)

    def build_card(self, connection, message: MessageData) -> Dict[str, Any]:
        conn_config = self.connection_config(connection)
        list_id = conn_config.get("listId") or connection.external_id
        if not list_id:
            raise IntegrationError(
                "No list ID found in connection configuration. Please reconfigure the Trello integration."
            )
        desc = f"**Author:** {message.author}\n**Change:** {message.change_type}\n\n"
        if conn_config.get("includeNoteContent", True) is not False and message.content:
            desc += f"{self.truncate_text(message.content, 16000)}\n\n"
        desc += f"[View Note]({message.note_url})"
        card: Dict[str, Any] = {"name": self.format_task_title(message), "desc": desc, "idList": list_id}
        if conn_config.get("labelIds"):
            card["idLabels"] = ",".join(conn_config["labelIds"])
        return card

    async def post_message(self, integration, connection, message: MessageData) -> Dict[str, Any]:
        card = self.build_card(connection, message)

        async def _create(token: str) -> Dict[str, Any]:
            async with self._client() as client:
                resp = await client.post(
                    f"{_TRELLO_API}/cards", params={"key": self.client_id, "token": token}, json=card
                )
            return self.check_response(resp, "Failed to create Trello card")

        created = await self.make_authenticated_api_call(integration, _create)
        return {"id": created.get("id"), "url": created.get("shortUrl") or created.get("url")}

    async def validate_connection(self, integration, connection) -> bool:
        list_id = self.connection_config(connection).get("listId") or connection.external_id

        async def _fetch(token: str) -> Dict[str, Any]:
            return await self._get(token, f"/lists/{list_id}", "Failed to fetch list")

        try:
            found = await self.make_authenticated_api_call(integration, _fetch)
        except IntegrationError:
            return False
        return bool(found) and not found.get("closed", False)
