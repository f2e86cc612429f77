"""Pytest configuration and shared fixtures for the test suite."""

from typing import AsyncGenerator

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

from pharmadoc_oauth.audit import SecurityAuditLogger
from pharmadoc_oauth.cache import InMemoryNonceStore, InMemoryRateLimitStore, TokenCache
from pharmadoc_oauth.config import Settings
from pharmadoc_oauth.database import create_session_factory, init_db
from pharmadoc_oauth.encryption import TokenCipher
from pharmadoc_oauth.providers import ProviderRegistry, build_registry
from pharmadoc_oauth.refresh import RefreshCoordinator
from pharmadoc_oauth.schemas import Provider
from pharmadoc_oauth.storage import (
    IntegrationRepository,
    OAuthStateRepository,
    WebhookSubscriptionRepository,
)
from pharmadoc_oauth.token_store import TokenStore
from pharmadoc_oauth.vault import StaticSecretSource
from pharmadoc_oauth.webhooks import WebhookValidator

from .helpers import CALDAV_KEY, MASTER_KEY, ZOOM_SECRET, FakeClock, ProviderStub, SecondsClock


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite://",
        base_url="https://oauth.pharmadoc.test",
        frontend_url="https://app.pharmadoc.test",
        token_master_key=MASTER_KEY,
        google_client_id="google-client",
        google_client_secret="google-secret",
        microsoft_client_id="ms-client",
        microsoft_client_secret="ms-secret",
        zoom_client_id="zoom-client",
        zoom_client_secret="zoom-secret",
        zoom_webhook_secret_token=ZOOM_SECRET,
        caldav_webhook_api_key=CALDAV_KEY,
        refresh_sweep_interval_seconds=0,
    )

@pytest.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """In-memory SQLite shared by every session of one test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await init_db(engine)
    yield engine
    await engine.dispose()

@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)

@pytest.fixture
def integrations(session_factory) -> IntegrationRepository:
    return IntegrationRepository(session_factory)

@pytest.fixture
def states(session_factory) -> OAuthStateRepository:
    return OAuthStateRepository(session_factory)

@pytest.fixture
def subscriptions(session_factory) -> WebhookSubscriptionRepository:
    return WebhookSubscriptionRepository(session_factory)

@pytest.fixture
def audit(session_factory) -> SecurityAuditLogger:
    return SecurityAuditLogger(session_factory)

@pytest.fixture
def cipher() -> TokenCipher:
    # Fewer KDF rounds keep the suite fast; the default is covered separately
    return TokenCipher(StaticSecretSource({"oauth_token_master_key": MASTER_KEY}), iterations=1000)

@pytest.fixture
def cache() -> TokenCache:
    return TokenCache(ttl_seconds=300)

@pytest.fixture
def provider_stub() -> ProviderStub:
    return ProviderStub()

@pytest.fixture
def registry(settings, provider_stub) -> ProviderRegistry:
    return build_registry(settings, transport=provider_stub.transport)

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()

@pytest.fixture
def token_store(integrations, cipher, cache, registry, audit) -> TokenStore:
    return TokenStore(integrations, cipher, cache, registry, audit)

@pytest.fixture
def coordinator(integrations, token_store, registry, audit, clock) -> RefreshCoordinator:
    return RefreshCoordinator(integrations, token_store, registry, audit, buffer_seconds=300, clock=clock)

@pytest.fixture
def webhook_clock() -> SecondsClock:
    return SecondsClock()

@pytest.fixture
def rate_limits(webhook_clock) -> InMemoryRateLimitStore:
    return InMemoryRateLimitStore(clock=webhook_clock)

@pytest.fixture
def nonces(webhook_clock) -> InMemoryNonceStore:
    return InMemoryNonceStore(clock=webhook_clock)

@pytest.fixture
def validator(settings, rate_limits, nonces, subscriptions, audit, webhook_clock) -> WebhookValidator:
    return WebhookValidator(settings, rate_limits, nonces, subscriptions, audit, clock=webhook_clock)

@pytest.fixture
async def integration(integrations):
    """A connected Google integration without tokens."""
    return await integrations.upsert_connection(
        user_id="rep-1",
        provider=Provider.GOOGLE,
        provider_user_id="google-user-1",
        provider_email="rep@example.com",
        provider_name="Pharma Rep",
    )
