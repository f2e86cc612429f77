"""Builds and tears down the service's long-lived components."""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx
import redis.asyncio as redis
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from .audit import SecurityAuditLogger
from .cache import (
    InMemoryNonceStore,
    InMemoryRateLimitStore,
    NonceStore,
    RateLimitStore,
    RedisNonceStore,
    RedisRateLimitStore,
    TokenCache,
)
from .config import Settings
from .connections import ConnectionManager
from .database import create_engine, create_session_factory, init_db
from .encryption import TokenCipher
from .providers import ProviderRegistry, build_registry
from .refresh import RefreshCoordinator, RefreshScheduler
from .storage import IntegrationRepository, OAuthStateRepository, WebhookSubscriptionRepository
from .tasks import PeriodicTask
from .token_store import TokenStore
from .vault import SecretSource, SettingsSecretSource
from .webhooks import WebhookValidator

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    integrations: IntegrationRepository
    states: OAuthStateRepository
    subscriptions: WebhookSubscriptionRepository
    audit: SecurityAuditLogger
    cipher: TokenCipher
    cache: TokenCache
    providers: ProviderRegistry
    token_store: TokenStore
    coordinator: RefreshCoordinator
    connections: ConnectionManager
    rate_limits: RateLimitStore
    nonces: NonceStore
    validator: WebhookValidator
    scheduler: RefreshScheduler
    janitor: PeriodicTask
    redis_client: Optional[redis.Redis] = None

    @classmethod
    async def build(
        cls,
        settings: Settings,
        engine: Optional[AsyncEngine] = None,
        secret_source: Optional[SecretSource] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        redis_client: Optional[redis.Redis] = None,
    ) -> "ServiceContainer":
        engine = engine or create_engine(settings)
        await init_db(engine)
        session_factory = create_session_factory(engine)

        integrations = IntegrationRepository(session_factory)
        states = OAuthStateRepository(session_factory)
        subscriptions = WebhookSubscriptionRepository(session_factory)
        audit = SecurityAuditLogger(session_factory)

        cipher = TokenCipher(
            secret_source or SettingsSecretSource(settings),
            secret_name=settings.token_master_key_name,
        )
        cache = TokenCache(ttl_seconds=settings.token_cache_ttl_seconds)
        providers = build_registry(settings, transport=transport)

        token_store = TokenStore(integrations, cipher, cache, providers, audit)
        coordinator = RefreshCoordinator(
            integrations,
            token_store,
            providers,
            audit,
            buffer_seconds=settings.token_refresh_buffer_seconds,
        )
        connections = ConnectionManager(settings, states, integrations, token_store, providers, audit)

        if settings.webhook_state_backend == "redis":
            redis_client = redis_client or redis.from_url(settings.redis_url, decode_responses=True)
            rate_limits: RateLimitStore = RedisRateLimitStore(redis_client)
            nonces: NonceStore = RedisNonceStore(redis_client)
            logger.info("Webhook rate limits and nonces stored in Redis")
        else:
            rate_limits = InMemoryRateLimitStore()
            nonces = InMemoryNonceStore()

        validator = WebhookValidator(settings, rate_limits, nonces, subscriptions, audit)
        scheduler = RefreshScheduler(coordinator, settings.refresh_sweep_interval_seconds)

        async def cleanup_state() -> None:
            cache.cleanup()
            await validator.cleanup()

        janitor = PeriodicTask("Webhook state cleanup", cleanup_state, settings.webhook_rate_window_seconds)

        return cls(
            settings=settings,
            engine=engine,
            session_factory=session_factory,
            integrations=integrations,
            states=states,
            subscriptions=subscriptions,
            audit=audit,
            cipher=cipher,
            cache=cache,
            providers=providers,
            token_store=token_store,
            coordinator=coordinator,
            connections=connections,
            rate_limits=rate_limits,
            nonces=nonces,
            validator=validator,
            scheduler=scheduler,
            janitor=janitor,
            redis_client=redis_client,
        )

    async def start(self) -> None:
        await self.scheduler.start()
        await self.janitor.start()

    async def close(self) -> None:
        await self.scheduler.stop()
        await self.janitor.stop()
        await self.rate_limits.close()
        await self.nonces.close()
        self.cache.clear()
        if self.redis_client is not None:
            await self.redis_client.aclose()
        await self.engine.dispose()
        logger.info("Service container closed")
