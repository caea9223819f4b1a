"""
Integration API routes — providers, OAuth connect/callback, integration
management and note ↔ channel connections.

Route prefix: /api/v1/integrations
"""

from __future__ import annotations

import html
import json
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode, urlparse

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from auth.dependencies import db_session, get_current_user_id
from config.settings import config
from database.helpers import get_membership, to_uuid
from database.models import Integration, OrganizationNote
from integrations.events import NoteEventHandler
from integrations.manager import integration_manager, serialize_connection, serialize_integration
from integrations.providers.jira import JiraProvider
from integrations.security import oauth_rate_limiter, rate_limit_key, validate_redirect_url
from integrations.types import IntegrationError, OAuthCallbackParams
from organizations.roles import has_role
from organizations.service import require_org_member
from utils.errors import ForbiddenError, NotFoundError, RateLimitedError, ServiceError

logger = logging.getLogger(__name__)

router = APIRouter(tags=["integrations"])


class AuthUrlRequest(BaseModel):
    redirect_url: Optional[str] = None
    extras: Dict[str, Any] = Field(default_factory=dict)


class ConfigUpdateRequest(BaseModel):
    config: Dict[str, Any]


class ConnectNoteRequest(BaseModel):
    integration_id: str
    channel_id: str
    config: Dict[str, Any] = Field(default_factory=dict)


def callback_uri(provider: str) -> str:
    return f"{config.oauth_redirect_base.rstrip('/')}/api/v1/integrations/{provider}/callback"


async def _authorized_integration(
    session: AsyncSession,
    integration_id: str,
    user_id: str,
    *,
    min_role: Optional[str] = None,
) -> Integration:
    """Load an integration the user can see; 404 rather than leak other tenants."""
    integration = await integration_manager.get_integration(session, integration_id)
    if integration is None:
        raise NotFoundError("Integration not found")
    membership = await get_membership(session, user_id, integration.organization_id)
    if membership is None:
        raise NotFoundError("Integration not found")
    if min_role and not has_role(membership.role, min_role):
        raise ForbiddenError(f"This action requires the '{min_role}' role")
    return integration


async def _authorized_note(session: AsyncSession, note_id: str, user_id: str) -> OrganizationNote:
    try:
        note = await session.get(OrganizationNote, to_uuid(note_id))
    except ValueError:
        note = None
    if note is None or await get_membership(session, user_id, note.organization_id) is None:
        raise NotFoundError("Note not found")
    return note


# ── Providers ──────────────────────────────────────────────────────────


@router.get("/providers")
async def list_providers() -> List[Dict[str, Any]]:
    """All integration providers and whether the server has credentials for them."""
    return [p.describe() for p in integration_manager.get_all_providers()]


# ── Organization integrations ──────────────────────────────────────────


@router.get("/organizations/{slug}")
async def list_organization_integrations(
    slug: str,
    type: Optional[str] = Query(None),
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
) -> List[Dict[str, Any]]:
    org, _ = await require_org_member(session, slug, user_id)
    integrations = await integration_manager.get_organization_integrations(session, org.id, type)
    return [
        {**serialize_integration(i), "connectionCount": sum(1 for c in i.connections if c.is_active)}
        for i in integrations
    ]


@router.post("/organizations/{slug}/{provider}/auth-url")
async def get_auth_url(
    slug: str,
    provider: str,
    body: AuthUrlRequest,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
) -> Dict[str, str]:
    """
    Start an OAuth flow for ``provider``.

    The frontend opens ``auth_url`` in a popup; the provider redirects back
    to ``/{provider}/callback``.
    """
    org, _ = await require_org_member(session, slug, user_id, min_role="admin")

    limit = oauth_rate_limiter.check(rate_limit_key(str(org.id), "oauth_initiate", provider))
    if not limit.allowed:
        raise RateLimitedError("Too many OAuth requests, please try again later", retry_after=limit.retry_after)

    if body.redirect_url and not validate_redirect_url(body.redirect_url, _allowed_redirect_hosts()):
        raise ServiceError("Invalid redirect URL")

    result = await integration_manager.initiate_oauth(
        org.id,
        provider,
        callback_uri(provider),
        {**body.extras, "userId": user_id},
        redirect_url=body.redirect_url,
    )
    return {"auth_url": result["auth_url"], "state": result["state"], "provider": provider}


def _allowed_redirect_hosts() -> List[str]:
    host = urlparse(config.app_base_url).hostname
    return [host] if host else []


@router.get("/organizations/{slug}/event-stats")
async def organization_event_stats(
    slug: str,
    hours: int = Query(24, ge=1, le=24 * 30),
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
) -> Dict[str, int]:
    org, _ = await require_org_member(session, slug, user_id)
    return await NoteEventHandler().get_event_stats(session, org.id, hours)


# ── OAuth callback ─────────────────────────────────────────────────────


@router.get("/{provider}/callback")
async def oauth_callback(
    provider: str,
    request: Request,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    error_description: Optional[str] = Query(None),
    oauth_token: Optional[str] = Query(None),
    oauth_verifier: Optional[str] = Query(None),
    format: Optional[str] = Query(None),
    session: AsyncSession = Depends(db_session),
):
    """
    The provider redirects the OAuth popup here.

    Returns a small HTML page that notifies the opener window, a redirect
    when the flow was started with ``redirect_url``, or JSON with
    ``?format=json``.
    """
    wants_json = format == "json" or "application/json" in request.headers.get("accept", "")
    params = OAuthCallbackParams(
        code=code or oauth_verifier,
        state=state,
        error=error,
        error_description=error_description,
        oauth_token=oauth_token,
    )

    try:
        integration, oauth_state = await integration_manager.handle_oauth_callback(session, provider, params)
        await session.commit()
    except Exception as exc:
        await session.rollback()
        logger.error("OAuth callback failed for %s: %s", provider, exc)
        message = str(exc) if isinstance(exc, ServiceError) else "Unexpected error while connecting"
        if wants_json:
            status_code = exc.status_code if isinstance(exc, ServiceError) else 500
            return JSONResponse(
                status_code=status_code,
                content={"success": False, "provider": provider, "detail": message},
            )
        return HTMLResponse(_callback_html(False, f"Connection failed: {message}", provider))

    logger.info("OAuth connected: org=%s provider=%s", integration.organization_id, provider)
    if wants_json:
        return {"success": True, "provider": provider, "integration": serialize_integration(integration)}
    if oauth_state.redirect_url:
        separator = "&" if "?" in oauth_state.redirect_url else "?"
        query = urlencode({"integration": provider, "status": "connected"})
        return RedirectResponse(f"{oauth_state.redirect_url}{separator}{query}", status_code=302)
    display = integration_manager.get_provider(provider).display_name
    return HTMLResponse(_callback_html(True, f"Connected {display}", provider))


# ── Integration management ─────────────────────────────────────────────


@router.delete("/{integration_id}")
async def disconnect_integration(
    integration_id: str,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
) -> Dict[str, Any]:
    await _authorized_integration(session, integration_id, user_id, min_role="admin")
    await integration_manager.disconnect_integration(session, integration_id)
    return {"status": "disconnected", "integration_id": integration_id}


@router.patch("/{integration_id}/config")
async def update_integration_config(
    integration_id: str,
    body: ConfigUpdateRequest,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
) -> Dict[str, Any]:
    await _authorized_integration(session, integration_id, user_id, min_role="admin")
    integration = await integration_manager.update_integration_config(session, integration_id, body.config)
    return serialize_integration(integration)


@router.get("/{integration_id}/status")
async def integration_status(
    integration_id: str,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
) -> Dict[str, Any]:
    await _authorized_integration(session, integration_id, user_id)
    return await integration_manager.get_integration_status(session, integration_id)


@router.get("/{integration_id}/stats")
async def integration_stats(
    integration_id: str,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
) -> Dict[str, Any]:
    await _authorized_integration(session, integration_id, user_id)
    return await integration_manager.get_integration_stats(session, integration_id)


@router.get("/{integration_id}/channels")
async def list_channels(
    integration_id: str,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
) -> List[Dict[str, Any]]:
    await _authorized_integration(session, integration_id, user_id)
    channels = await integration_manager.get_available_channels(session, integration_id)
    return [c.model_dump() for c in channels]


@router.post("/{integration_id}/validate")
async def validate_connections(
    integration_id: str,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
) -> Dict[str, Any]:
    await _authorized_integration(session, integration_id, user_id)
    return await integration_manager.validate_integration_connections(session, integration_id)


@router.post("/{integration_id}/refresh")
async def refresh_tokens(
    integration_id: str,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
) -> Dict[str, Any]:
    await _authorized_integration(session, integration_id, user_id, min_role="admin")
    integration = await integration_manager.refresh_integration_tokens(session, integration_id)
    return serialize_integration(integration)


@router.get("/{integration_id}/jira/users")
async def jira_search_users(
    integration_id: str,
    q: str = Query("", max_length=100),
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
) -> List[Dict[str, Any]]:
    integration = await _authorized_integration(session, integration_id, user_id)
    provider = _jira(integration)
    return await provider.search_users(integration, q)


@router.get("/{integration_id}/jira/current-user")
async def jira_current_user(
    integration_id: str,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
) -> Dict[str, Any]:
    integration = await _authorized_integration(session, integration_id, user_id)
    provider = _jira(integration)
    return await provider.get_current_user_details(integration)


def _jira(integration: Integration) -> JiraProvider:
    provider = integration_manager.get_provider(integration.provider_name)
    if not isinstance(provider, JiraProvider):
        raise IntegrationError("This operation is only available for Jira integrations")
    return provider


# ── Note connections ───────────────────────────────────────────────────


@router.get("/notes/{note_id}/connections")
async def list_note_connections(
    note_id: str,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
) -> List[Dict[str, Any]]:
    note = await _authorized_note(session, note_id, user_id)
    connections = await integration_manager.get_note_connections(session, note.id)
    return [serialize_connection(c) for c in connections]


@router.post("/notes/{note_id}/connections", status_code=201)
async def connect_note(
    note_id: str,
    body: ConnectNoteRequest,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
) -> Dict[str, Any]:
    note = await _authorized_note(session, note_id, user_id)
    connection = await integration_manager.connect_note_to_channel(
        session,
        note_id=note.id,
        integration_id=body.integration_id,
        channel_id=body.channel_id,
        user_id=user_id,
        connection_config=body.config,
    )
    return serialize_connection(connection)


@router.delete("/connections/{connection_id}")
async def disconnect_note(
    connection_id: str,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
) -> Dict[str, Any]:
    connection = await integration_manager.get_connection(session, connection_id)
    if connection is None or await get_membership(session, user_id, connection.integration.organization_id) is None:
        raise NotFoundError("Connection not found")
    await integration_manager.disconnect_note_from_channel(session, connection_id, user_id=user_id)
    return {"status": "disconnected", "connection_id": connection_id}


# ── Callback HTML template ─────────────────────────────────────────────


def _callback_html(success: bool, message: str, provider: str) -> str:
    """
    Small HTML page shown in the OAuth popup after redirect.
    Sends a postMessage to the opener and auto-closes.
    """
    status_emoji = "✅" if success else "❌"
    status_text = "Connected!" if success else "Failed"
    color = "#16a34a" if success else "#ef4444"
    payload = json.dumps(
        {"type": "oauth-callback", "provider": provider, "success": success, "message": message}
    ).replace("<", "\\u003c")
    target_origin = json.dumps(config.app_base_url.rstrip("/"))

    return f"""<!DOCTYPE html>
<html>
<head>
    <title>{html.escape(config.app_name)} — {html.escape(provider)} {status_text}</title>
    <style>
        body {{
            font-family: 'Inter', system-ui, sans-serif;
            background: #f8fafc; color: #0f172a;
            display: flex; align-items: center; justify-content: center;
            height: 100vh; margin: 0;
        }}
        .card {{
            text-align: center; padding: 40px;
            background: #ffffff; border: 1px solid #e2e8f0;
            border-radius: 12px; max-width: 400px;
        }}
        .emoji {{ font-size: 3rem; }}
        h2 {{ color: {color}; margin: 16px 0 8px; }}
        p {{ color: #475569; font-size: 0.85rem; }}
        .close-note {{ color: #94a3b8; font-size: 0.7rem; margin-top: 20px; }}
    </style>
</head>
<body>
    <div class="card">
        <div class="emoji">{status_emoji}</div>
        <h2>{status_text}</h2>
        <p>{html.escape(message)}</p>
        <p class="close-note">This window will close automatically…</p>
    </div>
    <script>
        if (window.opener) {{
            window.opener.postMessage({payload}, {target_origin});
        }}
        setTimeout(() => window.close(), 2000);
    </script>
</body>
</html>"""
