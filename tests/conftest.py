"""
Shared fixtures: an in-memory SQLite database per test, a throwaway upload
directory and small factories for users and organizations.

Environment variables are set before any application module is imported,
since ``config.settings.config`` is built at import time.
"""

from __future__ import annotations

import os
import tempfile
import uuid
from typing import AsyncGenerator

_TMP = tempfile.mkdtemp(prefix="epic-notes-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_TMP}/app.db")
os.environ.setdefault("STORAGE_LOCAL_ROOT", os.path.join(_TMP, "uploads"))
os.environ.setdefault("INTEGRATION_ENCRYPTION_KEY", "0f" * 32)
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("OAUTH_STATE_SECRET", "test-oauth-state-secret")
os.environ.setdefault("APP_BASE_URL", "https://app.example.com")
os.environ.setdefault("RESEND_API_KEY", "")
os.environ.setdefault("STRIPE_SECRET_KEY", "")

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from auth.password import hash_password
from database.models import Base, Organization, User
from integrations.provider import IntegrationProvider
from integrations.registry import ProviderRegistry
from integrations.types import Channel, OAuthCallbackParams, ProviderAPIError, TokenData
from onboarding.service import initialize_onboarding_steps
from organizations.service import create_organization

# bcrypt at cost 12 is slow; hash once and reuse
PASSWORD = "password123"
_PASSWORD_HASH = hash_password(PASSWORD)


@pytest.fixture
async def engine():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        await initialize_onboarding_steps(session)
        await session.flush()
        yield session


async def make_user(session: AsyncSession, username: str | None = None, *, name: str | None = None) -> User:
    username = username or f"user_{uuid.uuid4().hex[:8]}"
    user = User(
        id=uuid.uuid4(),
        email=f"{username}@example.com",
        username=username,
        name=name,
        password_hash=_PASSWORD_HASH,
    )
    session.add(user)
    await session.flush()
    return user


async def make_org(session: AsyncSession, owner: User, slug: str | None = None) -> Organization:
    slug = slug or f"org-{uuid.uuid4().hex[:8]}"
    return await create_organization(session, name=slug.title(), slug=slug, user_id=owner.id)


async def add_member(session: AsyncSession, org: Organization, user: User, role: str = "member") -> None:
    from database.models import UserOrganization

    session.add(UserOrganization(user_id=user.id, organization_id=org.id, role=role, active=True))
    await session.flush()


@pytest.fixture
async def owner(session) -> User:
    return await make_user(session, "owner", name="Olive Owner")


@pytest.fixture
async def org(session, owner) -> Organization:
    return await make_org(session, owner, "acme")


class FakeProvider(IntegrationProvider):
    """In-memory provider; records posted messages and can be told to fail."""

    def __init__(self, name: str = "fake", channels=None):
        super().__init__()
        self._name = name
        self.channels = channels or [Channel(id="C1", name="general"), Channel(id="C2", name="random")]
        self.posted = []
        self.fail_post = False
        self.refresh_error: Exception | None = None
        self.revoked = []

    @property
    def name(self) -> str:
        return self._name

    @property
    def provider_type(self) -> str:
        return "communication"

    @property
    def display_name(self) -> str:
        return "Fake"

    @property
    def config_schema(self):
        return {"type": "object", "properties": {}}

    def is_configured(self) -> bool:
        return True

    async def get_auth_url(self, organization_id, redirect_uri, state, extras=None) -> str:
        return f"https://fake.example.com/authorize?state={state}&redirect_uri={redirect_uri}"

    async def handle_callback(self, params: OAuthCallbackParams) -> TokenData:
        return TokenData(
            access_token=f"access-{params.code}",
            refresh_token="refresh-1",
            scope="chat:write",
            metadata={"teamName": "Acme HQ"},
        )

    async def refresh_token(self, refresh_token: str) -> TokenData:
        if self.refresh_error is not None:
            raise self.refresh_error
        return TokenData(access_token="access-refreshed")

    async def revoke_token(self, access_token: str) -> bool:
        self.revoked.append(access_token)
        return True

    async def get_available_channels(self, integration):
        return list(self.channels)

    async def post_message(self, integration, connection, message):
        if self.fail_post:
            raise ProviderAPIError("Fake post failed: 500 Internal Server Error", http_status=500)
        self.posted.append((connection.external_id, message))
        return {"messageId": f"m{len(self.posted)}"}

    async def validate_connection(self, integration, connection) -> bool:
        return any(c.id == connection.external_id for c in self.channels)


@pytest.fixture
def fake_provider():
    registry = ProviderRegistry()
    registry.clear()
    provider = FakeProvider()
    registry.register(provider)
    # stop discover() from pulling in the built-in providers
    registry._discovered = True
    try:
        yield provider
    finally:
        registry.clear()
