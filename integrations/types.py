"""
Shared data types and exceptions for the integrations package.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field

from utils.errors import NotFoundError, ServiceError

ProviderType = Literal["productivity", "ticketing", "communication"]
IntegrationStatus = Literal["active", "inactive", "error", "expired"]
ChannelType = Literal["public", "private", "dm"]
ChangeType = Literal["created", "updated", "deleted"]
LogStatus = Literal["success", "error", "pending"]


class TokenData(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    scope: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class Channel(BaseModel):
    id: str
    name: str
    type: ChannelType = "public"
    metadata: Dict[str, Any] = Field(default_factory=dict)


class MessageData(BaseModel):
    title: str
    content: str
    author: str
    note_url: str
    change_type: ChangeType


class OAuthCallbackParams(BaseModel):
    organization_id: Optional[str] = None
    code: Optional[str] = None
    state: Optional[str] = None
    error: Optional[str] = None
    error_description: Optional[str] = None
    oauth_token: Optional[str] = None       # OAuth 1.0a (Trello)
    redirect_uri: Optional[str] = None      # filled from the validated state
    extras: Dict[str, Any] = Field(default_factory=dict)  # from the validated state


class OAuthState(BaseModel):
    organization_id: str
    provider_name: str
    redirect_url: Optional[str] = None      # where the UI goes after completion
    redirect_uri: Optional[str] = None      # OAuth callback registered with the provider
    timestamp: int                          # epoch milliseconds
    nonce: str
    extras: Dict[str, Any] = Field(default_factory=dict)


class IntegrationLogEntry(BaseModel):
    action: str
    status: LogStatus
    request_data: Optional[Dict[str, Any]] = None
    response_data: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    timestamp: datetime


class TokenRefreshResult(BaseModel):
    success: bool
    token_data: Optional[TokenData] = None
    error: Optional[str] = None
    requires_reauth: bool = False


class TokenValidation(BaseModel):
    is_valid: bool
    is_expired: bool
    expires_in: Optional[int] = None    # seconds
    needs_refresh: bool


# ── Exceptions ──────────────────────────────────────────────────────────


class IntegrationError(ServiceError):
    """Generic integration failure (HTTP 400)."""


class OAuthStateError(IntegrationError):
    pass


class TokenRefreshError(IntegrationError):
    pass


class EncryptionError(IntegrationError):
    status_code = 500


class ProviderNotFoundError(NotFoundError):
    pass


class ProviderAPIError(IntegrationError):
    """A provider's REST API answered with an error status."""

    status_code = 502

    def __init__(self, message: str, http_status: Optional[int] = None):
        super().__init__(message)
        self.http_status = http_status

    @property
    def is_unauthorized(self) -> bool:
        return self.http_status == 401 or "unauthorized" in self.message.lower()
