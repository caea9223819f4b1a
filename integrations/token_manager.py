"""
Token manager — store, read, refresh and revoke the OAuth tokens of an
organization integration.

Tokens are always written encrypted; every refresh and revoke leaves an
``IntegrationLog`` row behind.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database.helpers import to_uuid
from database.models import Integration, IntegrationLog
from integrations.encryption import decrypt_token, encrypt_token, validate_token
from integrations.oauth import TokenRefreshManager, should_refresh
from integrations.provider import IntegrationProvider
from integrations.types import TokenData, TokenRefreshResult, TokenValidation
from utils.errors import NotFoundError

logger = logging.getLogger(__name__)

_REAUTH_MARKERS = (
    "invalid_grant",
    "invalid_token",
    "token_revoked",
    "authorization_revoked",
    "account_inactive",
    "invalid_refresh_token",
)

_refresh_manager = TokenRefreshManager()


def is_reauth_error(exc: BaseException) -> bool:
    """True when the user has to go through the OAuth flow again."""
    current: Optional[BaseException] = exc
    while current is not None:
        message = str(current).lower()
        if any(marker in message for marker in _REAUTH_MARKERS):
            return True
        if getattr(current, "http_status", None) in (401, 403):
            return True
        current = current.__cause__
    return False


async def log_integration_activity(
    session: AsyncSession,
    integration_id: str | uuid.UUID,
    action: str,
    status: str,
    *,
    request_data: Optional[Dict[str, Any]] = None,
    response_data: Optional[Dict[str, Any]] = None,
    error_message: Optional[str] = None,
) -> None:
    """Append an integration log row; logging failures never reach the caller."""
    try:
        session.add(
            IntegrationLog(
                integration_id=to_uuid(integration_id),
                action=action,
                status=status,
                request_data=request_data,
                response_data=response_data,
                error_message=error_message,
            )
        )
        await session.flush()
    except Exception:
        logger.exception("Failed to log integration activity %s for %s", action, integration_id)


async def _load(session: AsyncSession, integration_id: str | uuid.UUID) -> Optional[Integration]:
    return await session.get(Integration, to_uuid(integration_id))


def apply_token_data(integration: Integration, token_data: TokenData) -> None:
    integration.access_token = encrypt_token(token_data.access_token)
    integration.refresh_token = encrypt_token(token_data.refresh_token) if token_data.refresh_token else None
    integration.token_expires_at = token_data.expires_at


async def store_token_data(
    session: AsyncSession,
    integration_id: str | uuid.UUID,
    token_data: TokenData,
) -> Integration:
    integration = await _load(session, integration_id)
    if integration is None:
        raise NotFoundError("Integration not found")
    apply_token_data(integration, token_data)
    integration.is_active = True
    integration.last_sync_at = datetime.now(timezone.utc)
    await session.flush()
    return integration


def read_token_data(integration: Integration) -> Optional[TokenData]:
    if not integration.access_token:
        return None
    return TokenData(
        access_token=decrypt_token(integration.access_token),
        refresh_token=decrypt_token(integration.refresh_token) if integration.refresh_token else None,
        expires_at=integration.token_expires_at,
    )


async def get_token_data(session: AsyncSession, integration_id: str | uuid.UUID) -> Optional[TokenData]:
    integration = await _load(session, integration_id)
    if integration is None or not integration.is_active:
        return None
    return read_token_data(integration)


async def refresh_token(
    session: AsyncSession,
    integration: Integration,
    provider: IntegrationProvider,
) -> TokenRefreshResult:
    """
    Refresh the integration's access token through ``provider``.

    The stored refresh token is kept when the provider does not rotate it.
    A re-auth failure deactivates the integration.
    """
    current = read_token_data(integration)
    if current is None or not current.refresh_token:
        return TokenRefreshResult(
            success=False,
            error="No refresh token available",
            requires_reauth=True,
        )

    try:
        refreshed = await _refresh_manager.refresh_with_retry(provider, current.refresh_token, integration)
    except Exception as exc:
        requires_reauth = is_reauth_error(exc)
        logger.warning("Token refresh failed for integration %s: %s", integration.id, exc)
        if requires_reauth:
            integration.is_active = False
        await log_integration_activity(
            session,
            integration.id,
            "token_refresh",
            "error",
            error_message=str(exc),
            response_data={"requiresReauth": requires_reauth},
        )
        await session.flush()
        return TokenRefreshResult(success=False, error=str(exc), requires_reauth=requires_reauth)

    if not refreshed.refresh_token:
        refreshed = refreshed.model_copy(update={"refresh_token": current.refresh_token})
    apply_token_data(integration, refreshed)
    integration.last_sync_at = datetime.now(timezone.utc)
    await log_integration_activity(
        session,
        integration.id,
        "token_refresh",
        "success",
        response_data={"expiresAt": refreshed.expires_at.isoformat() if refreshed.expires_at else None},
    )
    await session.flush()
    logger.info("Refreshed token for integration %s (%s)", integration.id, provider.name)
    return TokenRefreshResult(success=True, token_data=refreshed)


async def get_valid_access_token(
    session: AsyncSession,
    integration: Integration,
    provider: IntegrationProvider,
) -> Optional[str]:
    """Return a usable access token, refreshing first when it is about to expire."""
    token_data = read_token_data(integration)
    if token_data is None:
        return None
    if not should_refresh(token_data.expires_at):
        return token_data.access_token
    if not token_data.refresh_token:
        return None if validate_token(token_data.expires_at).is_expired else token_data.access_token

    result = await refresh_token(session, integration, provider)
    if result.success and result.token_data:
        return result.token_data.access_token
    return None


async def validate_integration_token(
    session: AsyncSession,
    integration_id: str | uuid.UUID,
) -> Optional[TokenValidation]:
    integration = await _load(session, integration_id)
    if integration is None or not integration.access_token:
        return None
    return validate_token(integration.token_expires_at)


async def check_tokens_needing_refresh(
    session: AsyncSession,
    organization_id: Optional[str | uuid.UUID] = None,
) -> List[Integration]:
    stmt = select(Integration).where(
        Integration.is_active.is_(True),
        Integration.token_expires_at.is_not(None),
    )
    if organization_id is not None:
        stmt = stmt.where(Integration.organization_id == to_uuid(organization_id))
    result = await session.execute(stmt)
    return [
        integration
        for integration in result.scalars().all()
        if validate_token(integration.token_expires_at).needs_refresh
    ]


async def revoke_token(
    session: AsyncSession,
    integration: Integration,
    provider: Optional[IntegrationProvider] = None,
) -> bool:
    """
    Revoke at the provider (best effort), then wipe the stored tokens.

    Returns whether the provider confirmed the revocation.
    """
    revoked = False
    if provider is not None and integration.access_token:
        try:
            revoked = await provider.revoke_token(decrypt_token(integration.access_token))
        except Exception as exc:
            logger.warning("Provider revoke failed for integration %s: %s", integration.id, exc)

    integration.access_token = None
    integration.refresh_token = None
    integration.token_expires_at = None
    integration.is_active = False
    await log_integration_activity(
        session,
        integration.id,
        "token_revoke",
        "success",
        response_data={"providerRevoked": revoked},
    )
    await session.flush()
    return revoked
