"""
IntegrationManager — the service the routes and note hooks talk to.

Coordinates the provider registry, the OAuth flow and the token manager,
owns the Integration / NoteIntegrationConnection rows, and fans note
changes out to every connected channel.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from config.settings import config
from database.helpers import get_user, to_uuid
from database.models import (
    Integration,
    IntegrationLog,
    NoteIntegrationConnection,
    OrganizationNote,
)
from integrations import token_manager
from integrations.oauth import OAuthFlowManager
from integrations.provider import IntegrationProvider
from integrations.registry import ProviderRegistry
from integrations.security import sanitize_input
from integrations.types import (
    Channel,
    ChangeType,
    IntegrationError,
    IntegrationLogEntry,
    MessageData,
    OAuthCallbackParams,
    OAuthState,
    TokenData,
)
from notes.activity import log_note_activity
from onboarding.service import mark_step_completed
from utils.errors import NotFoundError

logger = logging.getLogger(__name__)

MESSAGE_CONTENT_LIMIT = 500
STATUS_ERROR_THRESHOLD = 5
RECENT_ERRORS_LIMIT = 10


def truncate_content(content: str, max_length: int = MESSAGE_CONTENT_LIMIT) -> str:
    if len(content) <= max_length:
        return content
    return content[: max_length - 3] + "..."


def generate_note_url(org_slug: str, note_id: str | uuid.UUID) -> str:
    return f"{config.app_base_url.rstrip('/')}/app/{org_slug}/notes/{note_id}"


def serialize_integration(integration: Integration) -> Dict[str, Any]:
    cfg = dict(integration.config or {})
    return {
        "id": str(integration.id),
        "organizationId": str(integration.organization_id),
        "providerName": integration.provider_name,
        "providerType": integration.provider_type,
        "config": cfg,
        "isActive": integration.is_active,
        "tokenExpiresAt": integration.token_expires_at.isoformat() if integration.token_expires_at else None,
        "lastSyncAt": integration.last_sync_at.isoformat() if integration.last_sync_at else None,
        "createdAt": integration.created_at.isoformat() if integration.created_at else None,
    }


def serialize_connection(connection: NoteIntegrationConnection) -> Dict[str, Any]:
    cfg = dict(connection.config or {})
    data = {
        "id": str(connection.id),
        "noteId": str(connection.note_id),
        "integrationId": str(connection.integration_id),
        "externalId": connection.external_id,
        "channelName": cfg.get("channelName"),
        "channelType": cfg.get("channelType"),
        "config": cfg,
        "isActive": connection.is_active,
        "lastPostedAt": connection.last_posted_at.isoformat() if connection.last_posted_at else None,
        "createdAt": connection.created_at.isoformat() if connection.created_at else None,
    }
    if "integration" in connection.__dict__ and connection.integration is not None:
        data["providerName"] = connection.integration.provider_name
    return data


class IntegrationManager:
    """Process-wide integration service; every DB operation takes the caller's session."""

    def __init__(
        self,
        registry: Optional[ProviderRegistry] = None,
        flow_manager: Optional[OAuthFlowManager] = None,
    ):
        self.registry = registry or ProviderRegistry()
        self.flow_manager = flow_manager or OAuthFlowManager()

    # ── Providers ───────────────────────────────────────────────────────

    def get_provider(self, name: str) -> IntegrationProvider:
        self.registry.discover()
        return self.registry.get(name)

    def get_all_providers(self) -> List[IntegrationProvider]:
        self.registry.discover()
        return self.registry.get_all()

    def get_providers_by_type(self, provider_type: str) -> List[IntegrationProvider]:
        self.registry.discover()
        return self.registry.get_by_type(provider_type)

    # ── OAuth ───────────────────────────────────────────────────────────

    async def initiate_oauth(
        self,
        organization_id: str | uuid.UUID,
        provider_name: str,
        redirect_uri: str,
        extras: Optional[Dict[str, Any]] = None,
        *,
        redirect_url: Optional[str] = None,
    ) -> Dict[str, str]:
        provider = self.get_provider(provider_name)
        if not provider.is_configured():
            raise IntegrationError(f"{provider.display_name} integration is not configured")
        return await self.flow_manager.start_oauth_flow(
            provider,
            str(organization_id),
            redirect_uri,
            redirect_url=redirect_url,
            extras=extras,
        )

    async def handle_oauth_callback(
        self,
        session: AsyncSession,
        provider_name: str,
        params: OAuthCallbackParams,
    ) -> Tuple[Integration, OAuthState]:
        """
        Validate the state, exchange the code and upsert the organization's
        integration for this provider.
        """
        provider = self.get_provider(provider_name)
        token_data, state = await self.flow_manager.complete_oauth_flow(provider, params)
        integration = await self.create_integration(
            session,
            organization_id=state.organization_id,
            provider=provider,
            token_data=token_data,
        )
        await token_manager.log_integration_activity(
            session,
            integration.id,
            "oauth_complete",
            "success",
            request_data={"provider": provider_name},
        )

        user_id = state.extras.get("userId")
        if user_id:
            try:
                async with session.begin_nested():
                    await mark_step_completed(
                        session,
                        user_id,
                        state.organization_id,
                        "connect_integration",
                        {"completedVia": "oauth_callback", "provider": provider_name},
                    )
            except Exception:
                logger.exception("Failed to track connect_integration onboarding step")

        return integration, state

    # ── Integration CRUD ────────────────────────────────────────────────

    async def create_integration(
        self,
        session: AsyncSession,
        *,
        organization_id: str | uuid.UUID,
        provider: IntegrationProvider,
        token_data: TokenData,
        extra_config: Optional[Dict[str, Any]] = None,
    ) -> Integration:
        """Create or reconnect the (organization, provider) integration."""
        oid = to_uuid(organization_id)
        metadata = dict(token_data.metadata or {})
        integration_config = {
            **metadata,
            **(extra_config or {}),
            "scope": token_data.scope,
            "metadata": metadata,
        }

        result = await session.execute(
            select(Integration).where(
                Integration.organization_id == oid,
                Integration.provider_name == provider.name,
            )
        )
        integration = result.scalar_one_or_none()
        if integration is None:
            integration = Integration(
                organization_id=oid,
                provider_name=provider.name,
                provider_type=provider.provider_type,
                config=integration_config,
            )
            session.add(integration)
        else:
            # keep user-set options across a reconnect
            integration.config = {**(integration.config or {}), **integration_config}
            integration.provider_type = provider.provider_type

        token_manager.apply_token_data(integration, token_data)
        integration.is_active = True
        integration.last_sync_at = datetime.now(timezone.utc)
        await session.flush()
        logger.info("Integration %s connected for organization %s", provider.name, oid)
        return integration

    async def get_integration(
        self,
        session: AsyncSession,
        integration_id: str | uuid.UUID,
    ) -> Optional[Integration]:
        try:
            iid = to_uuid(integration_id)
        except ValueError:
            return None
        result = await session.execute(
            select(Integration)
            .where(Integration.id == iid)
            .options(selectinload(Integration.organization), selectinload(Integration.connections))
        )
        return result.scalar_one_or_none()

    async def _require_integration(self, session: AsyncSession, integration_id: str | uuid.UUID) -> Integration:
        integration = await self.get_integration(session, integration_id)
        if integration is None:
            raise NotFoundError("Integration not found")
        return integration

    async def _require_active_integration(
        self,
        session: AsyncSession,
        integration_id: str | uuid.UUID,
    ) -> Integration:
        integration = await self.get_integration(session, integration_id)
        if integration is None or not integration.is_active:
            raise NotFoundError("Integration not found or inactive")
        return integration

    async def get_organization_integrations(
        self,
        session: AsyncSession,
        organization_id: str | uuid.UUID,
        provider_type: Optional[str] = None,
    ) -> List[Integration]:
        stmt = (
            select(Integration)
            .where(
                Integration.organization_id == to_uuid(organization_id),
                Integration.is_active.is_(True),
            )
            .options(selectinload(Integration.connections))
            .order_by(Integration.created_at.desc())
        )
        if provider_type:
            stmt = stmt.where(Integration.provider_type == provider_type)
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def update_integration_config(
        self,
        session: AsyncSession,
        integration_id: str | uuid.UUID,
        new_config: Dict[str, Any],
    ) -> Integration:
        integration = await self._require_integration(session, integration_id)
        new_config = {
            key: sanitize_input(value) if isinstance(value, str) else value for key, value in new_config.items()
        }
        integration.config = {**(integration.config or {}), **new_config}
        await session.flush()
        await token_manager.log_integration_activity(
            session, integration.id, "config_update", "success", request_data={"config": new_config}
        )
        return integration

    async def disconnect_integration(self, session: AsyncSession, integration_id: str | uuid.UUID) -> None:
        integration = await self._require_integration(session, integration_id)
        provider_name = integration.provider_name
        connection_count = len(integration.connections)

        if integration.access_token and self.registry.has(provider_name):
            await token_manager.revoke_token(session, integration, self.registry.get(provider_name))

        await session.execute(
            delete(NoteIntegrationConnection).where(NoteIntegrationConnection.integration_id == integration.id)
        )
        await session.execute(delete(IntegrationLog).where(IntegrationLog.integration_id == integration.id))
        await session.execute(delete(Integration).where(Integration.id == integration.id))
        session.expunge(integration)
        logger.info(
            "Integration %s (%s) disconnected, %d connection(s) removed",
            integration_id, provider_name, connection_count,
        )

    # ── Note ↔ channel connections ──────────────────────────────────────

    async def connect_note_to_channel(
        self,
        session: AsyncSession,
        *,
        note_id: str | uuid.UUID,
        integration_id: str | uuid.UUID,
        channel_id: str,
        user_id: Optional[str | uuid.UUID] = None,
        connection_config: Optional[Dict[str, Any]] = None,
    ) -> NoteIntegrationConnection:
        integration = await self._require_active_integration(session, integration_id)

        note = await session.get(OrganizationNote, to_uuid(note_id))
        if note is None:
            raise NotFoundError("Note not found")
        if note.organization_id != integration.organization_id:
            raise IntegrationError("Note and integration must belong to the same organization")

        provider = self.get_provider(integration.provider_name)
        channels = await provider.get_available_channels(integration)
        channel = next((c for c in channels if c.id == channel_id), None)
        if channel is None:
            raise NotFoundError("Channel not found or not accessible")

        stored_config = {
            **(connection_config or {}),
            "channelName": channel.name,
            "channelType": channel.type,
            "channelMetadata": channel.metadata or {},
        }
        result = await session.execute(
            select(NoteIntegrationConnection).where(
                NoteIntegrationConnection.note_id == note.id,
                NoteIntegrationConnection.integration_id == integration.id,
                NoteIntegrationConnection.external_id == channel_id,
            )
        )
        connection = result.scalar_one_or_none()
        if connection is None:
            connection = NoteIntegrationConnection(
                note_id=note.id,
                integration_id=integration.id,
                external_id=channel_id,
            )
            session.add(connection)
        connection.config = stored_config
        connection.is_active = True
        await session.flush()

        await token_manager.log_integration_activity(
            session,
            integration.id,
            "connection_create",
            "success",
            request_data={"noteId": str(note.id), "channelId": channel_id, "channelName": channel.name},
        )
        if user_id:
            await log_note_activity(
                session,
                note_id=note.id,
                user_id=user_id,
                action="integration_connected",
                integration_id=integration.id,
                metadata={"channelName": channel.name, "externalId": channel_id},
            )
        return connection

    async def disconnect_note_from_channel(
        self,
        session: AsyncSession,
        connection_id: str | uuid.UUID,
        *,
        user_id: Optional[str | uuid.UUID] = None,
    ) -> None:
        connection = await session.get(NoteIntegrationConnection, to_uuid(connection_id))
        if connection is None:
            raise NotFoundError("Connection not found")
        note_id, integration_id, external_id = connection.note_id, connection.integration_id, connection.external_id
        channel_name = (connection.config or {}).get("channelName")

        await session.delete(connection)
        await session.flush()

        await token_manager.log_integration_activity(
            session,
            integration_id,
            "connection_delete",
            "success",
            request_data={"noteId": str(note_id), "channelId": external_id},
        )
        if user_id:
            await log_note_activity(
                session,
                note_id=note_id,
                user_id=user_id,
                action="integration_disconnected",
                integration_id=integration_id,
                metadata={"channelName": channel_name, "externalId": external_id},
            )

    async def get_connection(
        self,
        session: AsyncSession,
        connection_id: str | uuid.UUID,
    ) -> Optional[NoteIntegrationConnection]:
        result = await session.execute(
            select(NoteIntegrationConnection)
            .where(NoteIntegrationConnection.id == to_uuid(connection_id))
            .options(selectinload(NoteIntegrationConnection.integration))
        )
        return result.scalar_one_or_none()

    async def get_note_connections(
        self,
        session: AsyncSession,
        note_id: str | uuid.UUID,
    ) -> List[NoteIntegrationConnection]:
        result = await session.execute(
            select(NoteIntegrationConnection)
            .where(
                NoteIntegrationConnection.note_id == to_uuid(note_id),
                NoteIntegrationConnection.is_active.is_(True),
            )
            .options(selectinload(NoteIntegrationConnection.integration))
            .order_by(NoteIntegrationConnection.created_at.desc())
        )
        return list(result.scalars().all())

    async def get_integration_connections(
        self,
        session: AsyncSession,
        integration_id: str | uuid.UUID,
    ) -> List[NoteIntegrationConnection]:
        result = await session.execute(
            select(NoteIntegrationConnection)
            .where(
                NoteIntegrationConnection.integration_id == to_uuid(integration_id),
                NoteIntegrationConnection.is_active.is_(True),
            )
            .options(selectinload(NoteIntegrationConnection.integration))
            .order_by(NoteIntegrationConnection.created_at.desc())
        )
        return list(result.scalars().all())

    # ── Channels & messages ─────────────────────────────────────────────

    async def get_available_channels(
        self,
        session: AsyncSession,
        integration_id: str | uuid.UUID,
    ) -> List[Channel]:
        integration = await self._require_active_integration(session, integration_id)
        provider = self.get_provider(integration.provider_name)
        try:
            channels = await provider.get_available_channels(integration)
        except Exception as exc:
            await token_manager.log_integration_activity(
                session, integration.id, "fetch_channels", "error", error_message=str(exc)
            )
            raise
        await token_manager.log_integration_activity(
            session, integration.id, "fetch_channels", "success", request_data={"channelCount": len(channels)}
        )
        return channels

    async def prepare_note_message(
        self,
        session: AsyncSession,
        note_id: str | uuid.UUID,
        change_type: ChangeType,
        user_id: str | uuid.UUID,
    ) -> Tuple[List[NoteIntegrationConnection], Optional[MessageData]]:
        """Load the note's active connections and the message to post to them."""
        connections = await self.get_note_connections(session, note_id)
        if not connections:
            return [], None

        result = await session.execute(
            select(OrganizationNote)
            .where(OrganizationNote.id == to_uuid(note_id))
            .options(selectinload(OrganizationNote.organization))
        )
        note = result.scalar_one_or_none()
        user = await get_user(session, user_id)
        if note is None or user is None:
            raise NotFoundError("Note or user not found")

        message = MessageData(
            title=note.title,
            content=truncate_content(note.content or ""),
            author=user.name or user.username,
            note_url=generate_note_url(note.organization.slug, note.id),
            change_type=change_type,
        )
        return connections, message

    async def dispatch_note_message(
        self,
        session: AsyncSession,
        connections: List[NoteIntegrationConnection],
        message: MessageData,
    ) -> Dict[str, Any]:
        """
        Post ``message`` to every connection.

        Provider calls run concurrently; one failing channel never stops the
        others. Returns ``{"notified": n, "errors": [...]}``.
        """
        outcomes = await asyncio.gather(
            *(self._post_to_connection(conn, message) for conn in connections),
            return_exceptions=True,
        )

        notified, errors = 0, []
        now = datetime.now(timezone.utc)
        for connection, outcome in zip(connections, outcomes):
            request_data = {
                "noteId": str(connection.note_id),
                "channelId": connection.external_id,
                "changeType": message.change_type,
            }
            if isinstance(outcome, BaseException):
                errors.append(f"{connection.integration.provider_name}: {outcome}")
                await token_manager.log_integration_activity(
                    session,
                    connection.integration_id,
                    "post_message",
                    "error",
                    request_data=request_data,
                    error_message=str(outcome),
                )
                continue
            notified += 1
            # rows of a deleted note are already gone; the update then matches nothing
            await session.execute(
                update(NoteIntegrationConnection)
                .where(NoteIntegrationConnection.id == connection.id)
                .values(last_posted_at=now)
            )
            await token_manager.log_integration_activity(
                session,
                connection.integration_id,
                "post_message",
                "success",
                request_data=request_data,
                response_data=outcome or None,
            )
        await session.flush()

        if errors:
            logger.warning(
                "Note %s notification: %d succeeded, %d failed", message.change_type, notified, len(errors)
            )
        return {"notified": notified, "errors": errors}

    async def handle_note_update(
        self,
        session: AsyncSession,
        note_id: str | uuid.UUID,
        change_type: ChangeType,
        user_id: str | uuid.UUID,
    ) -> Dict[str, Any]:
        """Post a note change to every channel the note is connected to."""
        connections, message = await self.prepare_note_message(session, note_id, change_type, user_id)
        if not connections or message is None:
            return {"notified": 0, "errors": []}
        return await self.dispatch_note_message(session, connections, message)

    async def _post_to_connection(
        self,
        connection: NoteIntegrationConnection,
        message: MessageData,
    ) -> Dict[str, Any]:
        provider = self.get_provider(connection.integration.provider_name)
        return await provider.post_message(connection.integration, connection, message)

    # ── Tokens ──────────────────────────────────────────────────────────

    async def refresh_integration_tokens(
        self,
        session: AsyncSession,
        integration_id: str | uuid.UUID,
    ) -> Integration:
        integration = await self._require_integration(session, integration_id)
        if not integration.refresh_token:
            raise IntegrationError("No refresh token available")
        outcome = await token_manager.refresh_token(session, integration, self.get_provider(integration.provider_name))
        if not outcome.success:
            raise IntegrationError(outcome.error or "Token refresh failed")
        return integration

    # ── Health ──────────────────────────────────────────────────────────

    async def validate_integration_connections(
        self,
        session: AsyncSession,
        integration_id: str | uuid.UUID,
    ) -> Dict[str, Any]:
        connections = await self.get_integration_connections(session, integration_id)
        if not connections:
            return {"valid": 0, "invalid": 0, "errors": ["No connections found"]}

        provider = self.get_provider(connections[0].integration.provider_name)
        valid, invalid, errors = 0, 0, []
        for connection in connections:
            try:
                if await provider.validate_connection(connection.integration, connection):
                    valid += 1
                else:
                    invalid += 1
                    errors.append(f"Connection {connection.id} is invalid")
            except Exception as exc:
                invalid += 1
                errors.append(f"Connection {connection.id}: {exc}")

        await token_manager.log_integration_activity(
            session,
            integration_id,
            "validate_connections",
            "error" if errors else "success",
            request_data={"valid": valid, "invalid": invalid, "totalConnections": len(connections)},
        )
        return {"valid": valid, "invalid": invalid, "errors": errors}

    async def get_integration_status(
        self,
        session: AsyncSession,
        integration_id: str | uuid.UUID,
    ) -> Dict[str, Any]:
        integration = await self._require_integration(session, integration_id)
        now = datetime.now(timezone.utc)
        result = await session.execute(
            select(IntegrationLog)
            .where(
                IntegrationLog.integration_id == integration.id,
                IntegrationLog.status == "error",
                IntegrationLog.created_at >= now - timedelta(hours=24),
            )
            .order_by(IntegrationLog.created_at.desc())
            .limit(RECENT_ERRORS_LIMIT)
        )
        recent_errors = list(result.scalars().all())

        if not integration.is_active:
            status = "inactive"
        elif len(recent_errors) > STATUS_ERROR_THRESHOLD:
            status = "error"
        elif integration.token_expires_at and integration.token_expires_at < now:
            status = "expired"
        else:
            status = "active"

        return {
            "status": status,
            "lastSync": integration.last_sync_at.isoformat() if integration.last_sync_at else None,
            "connectionCount": len(integration.connections),
            "recentErrors": [
                IntegrationLogEntry(
                    action=log.action,
                    status=log.status,
                    request_data=log.request_data,
                    response_data=log.response_data,
                    error_message=log.error_message,
                    timestamp=log.created_at,
                ).model_dump(mode="json")
                for log in recent_errors
            ],
        }

    async def get_integration_stats(
        self,
        session: AsyncSession,
        integration_id: str | uuid.UUID,
    ) -> Dict[str, Any]:
        iid = to_uuid(integration_id)
        connections = await self.get_integration_connections(session, iid)
        now = datetime.now(timezone.utc)

        async def _count(*conditions) -> int:
            res = await session.execute(
                select(func.count()).select_from(IntegrationLog).where(IntegrationLog.integration_id == iid, *conditions)
            )
            return int(res.scalar_one())

        recent_activity = await _count(IntegrationLog.created_at >= now - timedelta(days=7))
        error_count = await _count(
            IntegrationLog.status == "error",
            IntegrationLog.created_at >= now - timedelta(hours=24),
        )
        last = await session.execute(
            select(func.max(IntegrationLog.created_at)).where(IntegrationLog.integration_id == iid)
        )
        last_activity = last.scalar_one_or_none()

        return {
            "totalConnections": len(connections),
            "activeConnections": sum(1 for c in connections if c.is_active),
            "recentActivity": recent_activity,
            "errorCount": error_count,
            "lastActivity": last_activity.isoformat() if last_activity else None,
        }


integration_manager = IntegrationManager()
