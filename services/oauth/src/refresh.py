"""Token refresh coordination.

An integration moves ``connected(valid) -> connected(needs refresh) ->
refreshing -> connected(valid)``, or to ``expired`` when the provider refuses
or cannot be reached. The coordinator never retries; callers and the periodic
sweep decide whether to try again.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

from .audit import SecurityAuditLogger
from .errors import RefreshError, TokenMissingError
from .providers import ProviderRegistry
from .schemas import IntegrationStatus, TokenSet, as_utc, utcnow
from .storage import IntegrationRepository
from .tasks import PeriodicTask
from .token_store import TokenStore

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    """Counts from one pass over expiring integrations."""
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"total": self.total, "succeeded": self.succeeded, "failed": self.failed}


class RefreshCoordinator:
    """Decides when tokens need refreshing and refreshes them through the store."""

    def __init__(
        self,
        repository: IntegrationRepository,
        token_store: TokenStore,
        providers: ProviderRegistry,
        audit: SecurityAuditLogger,
        buffer_seconds: int = 300,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.token_store = token_store
        self.providers = providers
        self.audit = audit
        self.buffer = timedelta(seconds=buffer_seconds)
        self._clock = clock

    def needs_refresh(self, expires_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
        """True when the token expires within the buffer (inclusive) or expiry is unknown."""
        if expires_at is None:
            return True
        now = now or self._clock()
        return as_utc(expires_at) - now <= self.buffer

    async def refresh(self, integration_id: str) -> TokenSet:
        """Refresh one integration's access token and store the result.

        Shares the token store's per-integration lock, so a refresh and a
        revoke of the same integration never interleave.

        Raises:
            TokenMissingError: no stored tokens or no refresh token, or the
                integration was disconnected while the provider call ran.
            RefreshError: the provider call failed; the integration is now expired.
        """
        async with self.token_store.locks.hold(integration_id):
            return await self._refresh(integration_id)

    async def _refresh(self, integration_id: str) -> TokenSet:
        integration = await self.repository.get(integration_id)
        if integration is None:
            raise TokenMissingError(f"Integration {integration_id} not found")

        current = await self.token_store.retrieve(integration_id)
        if current is None or not current.refresh_token:
            raise TokenMissingError(f"No refresh token available for integration {integration_id}")

        try:
            adapter = self.providers.get(integration.provider)
            refreshed = await adapter.refresh_access_token(current.refresh_token)
            tokens = TokenSet(
                access_token=refreshed.access_token,
                refresh_token=refreshed.refresh_token or current.refresh_token,
                expires_at=refreshed.expires_at,
                scope=refreshed.scope or current.scope,
            )
            await self.token_store.store(integration_id, tokens)
        except Exception as e:
            error = RefreshError.from_failure(integration_id, e)
            if not await self._mark_expired(integration_id, integration.provider, error):
                raise TokenMissingError(
                    f"Integration {integration_id} was disconnected during refresh"
                ) from e
            raise error from e

        await self.audit.log_token_event(integration_id, "token_refreshed", {
            "provider": integration.provider,
            "expires_at": tokens.expires_at.isoformat() if tokens.expires_at else None,
        })
        logger.info(f"Refreshed {integration.provider} token for integration {integration_id}")
        return tokens

    async def _mark_expired(self, integration_id: str, provider: str, error: RefreshError) -> bool:
        """Record the failure. Returns False if the integration was disconnected meanwhile."""
        cause = error.cause
        reason = f"{type(cause).__name__}: {cause}" if cause else str(error)
        logger.warning(f"Token refresh failed for integration {integration_id} ({error.kind.value}): {reason}")

        expired = await self.repository.mark_expired(integration_id, reason)
        await self.audit.log_token_event(integration_id, "token_refresh_failed", {
            "provider": provider,
            "kind": error.kind.value,
            "error": type(cause).__name__ if cause else None,
        })
        if not expired:
            logger.info(f"Integration {integration_id} is disconnected; not marking it expired")
            return False

        await self.audit.log_token_event(integration_id, "integration_expired", {
            "provider": provider,
        })
        return True

    async def ensure_fresh(self, integration_id: str) -> TokenSet:
        """Tokens for an API call, refreshed first when they are about to expire."""
        tokens = await self.token_store.retrieve(integration_id)
        if tokens is None:
            raise TokenMissingError(f"No tokens stored for integration {integration_id}")
        if self.needs_refresh(tokens.expires_at):
            return await self.refresh(integration_id)
        return tokens

    async def refresh_expiring(self) -> SweepResult:
        """Refresh every connected integration inside the buffer window.

        Integrations are refreshed concurrently; one failure never aborts the
        others.
        """
        now = self._clock()
        candidates = [
            integration.id
            for integration in await self.repository.list_by_status(IntegrationStatus.CONNECTED)
            if integration.has_tokens and self.needs_refresh(integration.token_expires_at, now)
        ]
        result = SweepResult(total=len(candidates))
        if not candidates:
            return result

        outcomes = await asyncio.gather(
            *(self.refresh(integration_id) for integration_id in candidates),
            return_exceptions=True,
        )
        for integration_id, outcome in zip(candidates, outcomes):
            if isinstance(outcome, Exception):
                result.failed += 1
                kind = getattr(outcome, "kind", None)
                result.errors[integration_id] = kind.value if kind else type(outcome).__name__
            else:
                result.succeeded += 1

        logger.info(
            f"Refresh sweep: {result.total} expiring, "
            f"{result.succeeded} refreshed, {result.failed} failed"
        )
        return result

    async def token_health(self) -> dict:
        """Token counts by provider and status plus expiry buckets."""
        now = self._clock()
        soon = now + timedelta(hours=24)
        health = {
            "total_integrations": 0,
            "by_provider": {},
            "by_status": {},
            "expired_tokens": 0,
            "expiring_soon": 0,
            "healthy_tokens": 0,
        }

        for integration in await self.repository.list_all():
            health["total_integrations"] += 1
            health["by_provider"][integration.provider] = health["by_provider"].get(integration.provider, 0) + 1
            health["by_status"][integration.status] = health["by_status"].get(integration.status, 0) + 1
            if not integration.has_tokens:
                continue

            expires_at = as_utc(integration.token_expires_at)
            if expires_at is None or expires_at <= now:
                health["expired_tokens"] += 1
            elif expires_at <= soon:
                health["expiring_soon"] += 1
            else:
                health["healthy_tokens"] += 1

        return health


class RefreshScheduler(PeriodicTask):
    """Runs the refresh sweep periodically in the background."""

    def __init__(self, coordinator: RefreshCoordinator, interval_seconds: float):
        super().__init__("Refresh sweep", coordinator.refresh_expiring, interval_seconds)
        self.coordinator = coordinator
