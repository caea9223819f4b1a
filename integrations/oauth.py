"""
OAuth state, callback handling and token refresh.

  • OAuthStateManager     — signed, time-boxed state strings
  • OAuthCallbackHandler  — validates the redirect and exchanges the code
  • TokenRefreshManager   — refresh with exponential-backoff retries
  • OAuthFlowManager      — the three above behind one façade

State format: ``urlsafe_b64(json) + "." + hmac_sha256_hex(payload)``.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import hashlib
import hmac
import json
import logging
import secrets
import time
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Optional, Tuple

from pydantic import ValidationError

from config.settings import config
from integrations.types import (
    IntegrationError,
    OAuthCallbackParams,
    OAuthState,
    OAuthStateError,
    TokenData,
    TokenRefreshError,
)

if TYPE_CHECKING:
    from integrations.provider import IntegrationProvider

logger = logging.getLogger(__name__)

STATE_TTL_MS = 30 * 60 * 1000
REFRESH_BUFFER = timedelta(minutes=5)

_RETRYABLE_MARKERS = (
    "network",
    "timeout",
    "connection",
    "econnreset",
    "enotfound",
    "econnrefused",
    "socket hang up",
    "rate limit",
    "too many requests",
    "service unavailable",
    "internal server error",
    "bad gateway",
    "gateway timeout",
)


def _now_ms() -> int:
    return int(time.time() * 1000)


# ── State ───────────────────────────────────────────────────────────────


class OAuthStateManager:
    """Generate and verify OAuth state strings."""

    def __init__(self, secret: Optional[str] = None, ttl_ms: int = STATE_TTL_MS):
        self._secret = (secret or config.oauth_state_secret).encode()
        self._ttl_ms = ttl_ms

    def _sign(self, payload: str) -> str:
        return hmac.new(self._secret, payload.encode(), hashlib.sha256).hexdigest()

    def generate_state(
        self,
        organization_id: str,
        provider_name: str,
        redirect_url: Optional[str] = None,
        extras: Optional[Dict[str, Any]] = None,
        *,
        redirect_uri: Optional[str] = None,
    ) -> str:
        state = OAuthState(
            organization_id=str(organization_id),
            provider_name=provider_name,
            redirect_url=redirect_url,
            redirect_uri=redirect_uri,
            timestamp=_now_ms(),
            nonce=secrets.token_hex(16),
            extras=extras or {},
        )
        payload = base64.urlsafe_b64encode(state.model_dump_json().encode()).decode()
        return f"{payload}.{self._sign(payload)}"

    def validate_state(self, state: Any) -> OAuthState:
        """
        Verify signature and age; return the decoded state.

        Raises ``OAuthStateError`` describing the first check that failed.
        """
        if not state or not isinstance(state, str):
            raise OAuthStateError("Invalid state: empty or non-string")

        parts = state.split(".")
        if len(parts) != 2 or not all(parts):
            raise OAuthStateError("Invalid state: malformed structure")
        payload, signature = parts

        if not hmac.compare_digest(signature, self._sign(payload)):
            raise OAuthStateError("Invalid state: signature verification failed")

        try:
            data = json.loads(base64.urlsafe_b64decode(payload.encode()))
        except (binascii.Error, ValueError):
            raise OAuthStateError("Invalid state: failed to parse data")

        try:
            parsed = OAuthState.model_validate(data)
        except ValidationError:
            raise OAuthStateError("Invalid state: missing required fields")

        if _now_ms() - parsed.timestamp > self._ttl_ms:
            raise OAuthStateError("Invalid state: expired")
        return parsed


# ── Callback ────────────────────────────────────────────────────────────


class OAuthCallbackHandler:
    def __init__(self, state_manager: OAuthStateManager):
        self._state_manager = state_manager

    async def handle_callback(
        self,
        provider: "IntegrationProvider",
        params: OAuthCallbackParams,
    ) -> Tuple[TokenData, OAuthState]:
        if params.error:
            raise IntegrationError(f"OAuth error: {params.error_description or params.error}")
        if not params.code or not params.state:
            raise IntegrationError("Missing required OAuth parameters: code or state")

        state = self._state_manager.validate_state(params.state)
        if state.provider_name != provider.name:
            raise IntegrationError("Provider name mismatch in OAuth state")
        if params.organization_id and params.organization_id != state.organization_id:
            raise IntegrationError("Organization ID mismatch in OAuth state")

        resolved = params.model_copy(
            update={
                "organization_id": state.organization_id,
                "redirect_uri": params.redirect_uri or state.redirect_uri,
                "extras": {**state.extras, **params.extras},
            }
        )
        token_data = await provider.handle_callback(resolved)
        logger.info("OAuth code exchanged for %s (org %s)", provider.name, state.organization_id)
        return token_data, state


# ── Refresh ─────────────────────────────────────────────────────────────


def is_retryable_error(exc: BaseException) -> bool:
    message = str(exc).lower()
    return any(marker in message for marker in _RETRYABLE_MARKERS)


def should_refresh(expires_at: Optional[datetime], buffer: timedelta = REFRESH_BUFFER) -> bool:
    """True when the token expires within ``buffer``; False if it never expires."""
    if expires_at is None:
        return False
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return expires_at <= datetime.now(timezone.utc) + buffer


class TokenRefreshManager:
    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self._sleep = sleep

    async def refresh_with_retry(
        self,
        provider: "IntegrationProvider",
        refresh_token: str,
        integration: Any = None,
    ) -> TokenData:
        last_error: Optional[BaseException] = None
        attempt = 0
        while attempt < self.max_retries:
            attempt += 1
            try:
                token_data = (
                    await provider.refresh_integration_token(integration, refresh_token)
                    if integration is not None
                    else await provider.refresh_token(refresh_token)
                )
                if not token_data or not token_data.access_token:
                    raise TokenRefreshError("Invalid token data: missing access token")
                if attempt > 1:
                    logger.info("Token refresh for %s succeeded on attempt %d", provider.name, attempt)
                return token_data
            except Exception as exc:
                last_error = exc
                if attempt < self.max_retries and is_retryable_error(exc):
                    delay = self.base_delay * (2 ** (attempt - 1))
                    logger.warning(
                        "Token refresh for %s failed (attempt %d/%d), retrying in %.1fs: %s",
                        provider.name, attempt, self.max_retries, delay, exc,
                    )
                    await self._sleep(delay)
                    continue
                break

        raise TokenRefreshError(
            f"Token refresh failed for {provider.name} after {attempt} attempts: {last_error}"
        ) from last_error

    def should_refresh(self, expires_at: Optional[datetime], buffer: timedelta = REFRESH_BUFFER) -> bool:
        return should_refresh(expires_at, buffer)


# ── Flow façade ─────────────────────────────────────────────────────────


class OAuthFlowManager:
    def __init__(
        self,
        state_manager: Optional[OAuthStateManager] = None,
        refresh_manager: Optional[TokenRefreshManager] = None,
    ):
        self.state_manager = state_manager or OAuthStateManager()
        self.callback_handler = OAuthCallbackHandler(self.state_manager)
        self.refresh_manager = refresh_manager or TokenRefreshManager()

    async def start_oauth_flow(
        self,
        provider: "IntegrationProvider",
        organization_id: str,
        redirect_uri: str,
        *,
        redirect_url: Optional[str] = None,
        extras: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, str]:
        state = self.state_manager.generate_state(
            organization_id, provider.name, redirect_url, extras, redirect_uri=redirect_uri
        )
        auth_url = await provider.get_auth_url(organization_id, redirect_uri, state, extras)
        return {"auth_url": auth_url, "state": state}

    async def complete_oauth_flow(
        self,
        provider: "IntegrationProvider",
        params: OAuthCallbackParams,
    ) -> Tuple[TokenData, OAuthState]:
        return await self.callback_handler.handle_callback(provider, params)

    async def ensure_valid_token(self, provider: "IntegrationProvider", token_data: TokenData) -> TokenData:
        if not should_refresh(token_data.expires_at):
            return token_data
        if not token_data.refresh_token:
            raise TokenRefreshError("Token needs refresh but no refresh token available")
        refreshed = await self.refresh_manager.refresh_with_retry(provider, token_data.refresh_token)
        if not refreshed.refresh_token:
            refreshed = refreshed.model_copy(update={"refresh_token": token_data.refresh_token})
        return refreshed
