"""
SQLAlchemy ORM models for users, organizations, notes, integrations,
onboarding and billing state.

Column types are kept portable (``Uuid``, ``JSON``) so the same models run
against PostgreSQL in production and SQLite in tests.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, relationship


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend (SQLite drops tzinfo)."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class Base(DeclarativeBase):
    pass


# ── Users & organizations ───────────────────────────────────────────────


class User(Base):
    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    email = Column(String(255), unique=True, nullable=False)
    username = Column(String(64), unique=True, nullable=False)
    name = Column(String(128))
    password_hash = Column(String(255), nullable=False, default="")
    image_key = Column(String(512))
    created_at = Column(UTCDateTime, default=_utcnow)
    updated_at = Column(UTCDateTime, default=_utcnow, onupdate=_utcnow)

    memberships = relationship("UserOrganization", back_populates="user", cascade="all, delete-orphan")
    utm_source = relationship("UtmSource", back_populates="user", uselist=False, cascade="all, delete-orphan")

    @property
    def display_name(self) -> str:
        return self.name or self.username


class UtmSource(Base):
    __tablename__ = "utm_sources"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False)
    source = Column(String(255))
    medium = Column(String(255))
    campaign = Column(String(255))
    term = Column(String(255))
    content = Column(String(255))
    referrer = Column(String(255))
    created_at = Column(UTCDateTime, default=_utcnow)

    user = relationship("User", back_populates="utm_source")


class Organization(Base):
    __tablename__ = "organizations"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(128), nullable=False)
    slug = Column(String(128), unique=True, nullable=False)
    description = Column(Text)
    active = Column(Boolean, default=True, nullable=False)
    size = Column(String(32))

    stripe_customer_id = Column(String(255), unique=True)
    stripe_subscription_id = Column(String(255))
    stripe_product_id = Column(String(255))
    plan_name = Column(String(64))
    subscription_status = Column(String(32))

    created_at = Column(UTCDateTime, default=_utcnow)
    updated_at = Column(UTCDateTime, default=_utcnow, onupdate=_utcnow)

    members = relationship("UserOrganization", back_populates="organization", cascade="all, delete-orphan")
    image = relationship("OrganizationImage", back_populates="organization", uselist=False, cascade="all, delete-orphan")
    invitations = relationship("OrganizationInvitation", back_populates="organization", cascade="all, delete-orphan")
    notes = relationship("OrganizationNote", back_populates="organization", cascade="all, delete-orphan")
    integrations = relationship("Integration", back_populates="organization", cascade="all, delete-orphan")


class OrganizationImage(Base):
    __tablename__ = "organization_images"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id = Column(Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), unique=True, nullable=False)
    alt_text = Column(String(255))
    object_key = Column(String(512), nullable=False)
    created_at = Column(UTCDateTime, default=_utcnow)

    organization = relationship("Organization", back_populates="image")


class UserOrganization(Base):
    __tablename__ = "user_organizations"

    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    organization_id = Column(Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), primary_key=True)
    role = Column(String(16), nullable=False, default="member")
    active = Column(Boolean, default=True, nullable=False)
    is_default = Column(Boolean, default=False, nullable=False)
    department = Column(String(128))
    created_at = Column(UTCDateTime, default=_utcnow)
    updated_at = Column(UTCDateTime, default=_utcnow, onupdate=_utcnow)

    user = relationship("User", back_populates="memberships")
    organization = relationship("Organization", back_populates="members")


class OrganizationInvitation(Base):
    __tablename__ = "organization_invitations"
    __table_args__ = (UniqueConstraint("email", "organization_id", name="uq_invitation_email_org"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    email = Column(String(255), nullable=False)
    organization_id = Column(Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    role = Column(String(16), nullable=False, default="member")
    token = Column(String(64), unique=True, nullable=False)
    expires_at = Column(UTCDateTime)
    inviter_id = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"))
    created_at = Column(UTCDateTime, default=_utcnow)

    organization = relationship("Organization", back_populates="invitations")
    inviter = relationship("User")


# ── Notes ───────────────────────────────────────────────────────────────


class OrganizationNote(Base):
    __tablename__ = "organization_notes"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    title = Column(String(255), nullable=False)
    content = Column(Text, nullable=False, default="")
    is_public = Column(Boolean, default=True, nullable=False)
    organization_id = Column(Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    created_by_id = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"))
    created_at = Column(UTCDateTime, default=_utcnow)
    updated_at = Column(UTCDateTime, default=_utcnow, onupdate=_utcnow)

    organization = relationship("Organization", back_populates="notes")
    created_by = relationship("User")
    images = relationship("OrganizationNoteImage", back_populates="note", cascade="all, delete-orphan")
    comments = relationship("NoteComment", back_populates="note", cascade="all, delete-orphan")
    access = relationship("NoteAccess", back_populates="note", cascade="all, delete-orphan")
    favorites = relationship("OrganizationNoteFavorite", back_populates="note", cascade="all, delete-orphan")
    activity_logs = relationship("NoteActivityLog", back_populates="note", cascade="all, delete-orphan")
    connections = relationship("NoteIntegrationConnection", back_populates="note", cascade="all, delete-orphan")


Index("ix_notes_org_updated", OrganizationNote.organization_id, OrganizationNote.updated_at)


class OrganizationNoteImage(Base):
    __tablename__ = "organization_note_images"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    note_id = Column(Uuid, ForeignKey("organization_notes.id", ondelete="CASCADE"), nullable=False)
    alt_text = Column(String(255))
    object_key = Column(String(512), nullable=False)
    created_at = Column(UTCDateTime, default=_utcnow)

    note = relationship("OrganizationNote", back_populates="images")


class NoteAccess(Base):
    __tablename__ = "note_access"
    __table_args__ = (UniqueConstraint("note_id", "user_id", name="uq_note_access"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    note_id = Column(Uuid, ForeignKey("organization_notes.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(UTCDateTime, default=_utcnow)

    note = relationship("OrganizationNote", back_populates="access")
    user = relationship("User")


class OrganizationNoteFavorite(Base):
    __tablename__ = "organization_note_favorites"
    __table_args__ = (UniqueConstraint("user_id", "note_id", name="uq_note_favorite"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    note_id = Column(Uuid, ForeignKey("organization_notes.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(UTCDateTime, default=_utcnow)

    note = relationship("OrganizationNote", back_populates="favorites")


class NoteComment(Base):
    __tablename__ = "note_comments"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    content = Column(Text, nullable=False)
    note_id = Column(Uuid, ForeignKey("organization_notes.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    parent_id = Column(Uuid, ForeignKey("note_comments.id", ondelete="CASCADE"))
    created_at = Column(UTCDateTime, default=_utcnow)
    updated_at = Column(UTCDateTime, default=_utcnow, onupdate=_utcnow)

    note = relationship("OrganizationNote", back_populates="comments")
    user = relationship("User")
    parent = relationship("NoteComment", back_populates="replies", remote_side=[id])
    replies = relationship("NoteComment", back_populates="parent", cascade="all, delete-orphan")
    images = relationship("NoteCommentImage", back_populates="comment", cascade="all, delete-orphan")


class NoteCommentImage(Base):
    __tablename__ = "note_comment_images"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    comment_id = Column(Uuid, ForeignKey("note_comments.id", ondelete="CASCADE"), nullable=False)
    alt_text = Column(String(255))
    object_key = Column(String(512), nullable=False)
    created_at = Column(UTCDateTime, default=_utcnow)

    comment = relationship("NoteComment", back_populates="images")


class NoteActivityLog(Base):
    __tablename__ = "note_activity_logs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    note_id = Column(Uuid, ForeignKey("organization_notes.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    action = Column(String(32), nullable=False)
    metadata_ = Column("metadata", JSON, default=dict)
    target_user_id = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"))
    integration_id = Column(Uuid, ForeignKey("integrations.id", ondelete="SET NULL"))
    comment_id = Column(Uuid)
    created_at = Column(UTCDateTime, default=_utcnow)

    note = relationship("OrganizationNote", back_populates="activity_logs")
    user = relationship("User", foreign_keys=[user_id])
    target_user = relationship("User", foreign_keys=[target_user_id])
    integration = relationship("Integration")


Index("ix_note_activity_note_created", NoteActivityLog.note_id, NoteActivityLog.created_at)


# ── Integrations ────────────────────────────────────────────────────────


class Integration(Base):
    __tablename__ = "integrations"
    __table_args__ = (UniqueConstraint("organization_id", "provider_name", name="uq_integration_org_provider"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id = Column(Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    provider_name = Column(String(32), nullable=False)
    provider_type = Column(String(32), nullable=False, default="productivity")
    access_token = Column(Text)       # AES-256-GCM, hex
    refresh_token = Column(Text)      # AES-256-GCM, hex
    token_expires_at = Column(UTCDateTime)
    config = Column(JSON, default=dict)
    is_active = Column(Boolean, default=True, nullable=False)
    last_sync_at = Column(UTCDateTime)
    created_at = Column(UTCDateTime, default=_utcnow)
    updated_at = Column(UTCDateTime, default=_utcnow, onupdate=_utcnow)

    organization = relationship("Organization", back_populates="integrations")
    connections = relationship("NoteIntegrationConnection", back_populates="integration", cascade="all, delete-orphan")
    logs = relationship("IntegrationLog", back_populates="integration", cascade="all, delete-orphan")


class NoteIntegrationConnection(Base):
    __tablename__ = "note_integration_connections"
    __table_args__ = (
        UniqueConstraint("note_id", "integration_id", "external_id", name="uq_note_integration_channel"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    note_id = Column(Uuid, ForeignKey("organization_notes.id", ondelete="CASCADE"), nullable=False)
    integration_id = Column(Uuid, ForeignKey("integrations.id", ondelete="CASCADE"), nullable=False)
    external_id = Column(String(255), nullable=False)
    config = Column(JSON, default=dict)
    is_active = Column(Boolean, default=True, nullable=False)
    last_posted_at = Column(UTCDateTime)
    created_at = Column(UTCDateTime, default=_utcnow)
    updated_at = Column(UTCDateTime, default=_utcnow, onupdate=_utcnow)

    note = relationship("OrganizationNote", back_populates="connections")
    integration = relationship("Integration", back_populates="connections")


class IntegrationLog(Base):
    __tablename__ = "integration_logs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    integration_id = Column(Uuid, ForeignKey("integrations.id", ondelete="CASCADE"), nullable=False)
    action = Column(String(32), nullable=False)
    status = Column(String(16), nullable=False)   # success | error | pending
    request_data = Column(JSON)
    response_data = Column(JSON)
    error_message = Column(Text)
    created_at = Column(UTCDateTime, default=_utcnow)

    integration = relationship("Integration", back_populates="logs")


Index("ix_integration_logs_integration_created", IntegrationLog.integration_id, IntegrationLog.created_at)


# ── Onboarding ──────────────────────────────────────────────────────────


class OnboardingStep(Base):
    __tablename__ = "onboarding_steps"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    key = Column(String(64), unique=True, nullable=False)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=False, default="")
    icon = Column(String(64))
    action_config = Column(JSON)
    auto_detect = Column(Boolean, default=True, nullable=False)
    detect_config = Column(JSON)
    sort_order = Column(Integer, default=0, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(UTCDateTime, default=_utcnow)


class OnboardingStepProgress(Base):
    __tablename__ = "onboarding_step_progress"
    __table_args__ = (
        UniqueConstraint("user_id", "organization_id", "step_id", name="uq_step_progress"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    organization_id = Column(Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    step_id = Column(Uuid, ForeignKey("onboarding_steps.id", ondelete="CASCADE"), nullable=False)
    is_completed = Column(Boolean, default=False, nullable=False)
    completed_at = Column(UTCDateTime)
    metadata_ = Column("metadata", JSON)
    created_at = Column(UTCDateTime, default=_utcnow)

    step = relationship("OnboardingStep")


class OnboardingProgress(Base):
    __tablename__ = "onboarding_progress"
    __table_args__ = (UniqueConstraint("user_id", "organization_id", name="uq_onboarding_progress"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    organization_id = Column(Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    total_steps = Column(Integer, default=0, nullable=False)
    completed_count = Column(Integer, default=0, nullable=False)
    is_completed = Column(Boolean, default=False, nullable=False)
    is_visible = Column(Boolean, default=True, nullable=False)
    completed_at = Column(UTCDateTime)
    created_at = Column(UTCDateTime, default=_utcnow)
    updated_at = Column(UTCDateTime, default=_utcnow, onupdate=_utcnow)
