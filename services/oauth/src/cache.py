"""Process-local caches and swappable stores for webhook state.

The token cache is never a source of truth: the encrypted blob in the database
is. Rate-limit windows and nonces default to in-memory stores, which limit per
process only; the Redis stores share that state across instances.
"""

import logging
import math
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional

import redis.asyncio as redis

from .schemas import TokenSet

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class TokenCache:
    """Short-lived cache of decrypted tokens keyed by integration and auth tag."""

    def __init__(self, ttl_seconds: float = 300, clock: Clock = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[tuple[str, str], tuple[float, TokenSet]] = {}

    def get(self, integration_id: str, auth_tag: str) -> Optional[TokenSet]:
        entry = self._entries.get((integration_id, auth_tag))
        if entry is None:
            return None
        stored_at, tokens = entry
        if self._clock() - stored_at >= self.ttl_seconds:
            del self._entries[(integration_id, auth_tag)]
            return None
        return tokens.model_copy(deep=True)

    def put(self, integration_id: str, auth_tag: str, tokens: TokenSet) -> None:
        self._entries[(integration_id, auth_tag)] = (self._clock(), tokens.model_copy(deep=True))

    def invalidate(self, integration_id: str) -> int:
        """Drop every cached entry for an integration."""
        keys = [key for key in self._entries if key[0] == integration_id]
        for key in keys:
            del self._entries[key]
        return len(keys)

    def cleanup(self) -> int:
        """Drop expired entries."""
        now = self._clock()
        expired = [
            key for key, (stored_at, _) in self._entries.items()
            if now - stored_at >= self.ttl_seconds
        ]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


@dataclass
class RateLimitDecision:
    """Outcome of recording one request against a sliding window."""
    allowed: bool
    current: int
    limit: int
    reset_at: Optional[float] = None


class RateLimitStore(ABC):
    """Sliding-window request counter."""

    @abstractmethod
    async def hit(self, key: str, limit: int, window_seconds: float) -> RateLimitDecision:
        """Record a request for ``key`` unless the window is already full."""
        pass

    async def cleanup(self) -> int:
        return 0

    async def close(self) -> None:
        pass


class NonceStore(ABC):
    """One-time markers used to detect replayed deliveries."""

    @abstractmethod
    async def add_if_absent(self, nonce: str, ttl_seconds: float) -> bool:
        """Record ``nonce``. Returns False if it was already recorded."""
        pass

    async def cleanup(self) -> int:
        return 0

    async def close(self) -> None:
        pass


class InMemoryRateLimitStore(RateLimitStore):
    """Per-process sliding windows, pruned on every check."""

    def __init__(self, clock: Clock = time.time):
        self._clock = clock
        self._windows: dict[str, list[float]] = {}
        self._window_seconds: dict[str, float] = {}

    async def hit(self, key: str, limit: int, window_seconds: float) -> RateLimitDecision:
        now = self._clock()
        requests = [ts for ts in self._windows.get(key, []) if now - ts < window_seconds]
        self._window_seconds[key] = window_seconds

        if len(requests) >= limit:
            self._windows[key] = requests
            return RateLimitDecision(
                allowed=False,
                current=len(requests),
                limit=limit,
                reset_at=min(requests) + window_seconds,
            )

        requests.append(now)
        self._windows[key] = requests
        return RateLimitDecision(allowed=True, current=len(requests), limit=limit)

    async def cleanup(self) -> int:
        now = self._clock()
        removed = 0
        for key in list(self._windows):
            window = self._window_seconds.get(key, 0)
            requests = [ts for ts in self._windows[key] if now - ts < window]
            if requests:
                self._windows[key] = requests
            else:
                del self._windows[key]
                self._window_seconds.pop(key, None)
                removed += 1
        return removed

    async def close(self) -> None:
        self._windows.clear()
        self._window_seconds.clear()


class InMemoryNonceStore(NonceStore):
    """Per-process nonce cache with expiry."""

    def __init__(self, clock: Clock = time.time):
        self._clock = clock
        self._nonces: dict[str, float] = {}

    async def add_if_absent(self, nonce: str, ttl_seconds: float) -> bool:
        now = self._clock()
        expires_at = self._nonces.get(nonce)
        if expires_at is not None and expires_at > now:
            return False
        self._nonces[nonce] = now + ttl_seconds
        return True

    async def cleanup(self) -> int:
        now = self._clock()
        expired = [nonce for nonce, expires_at in self._nonces.items() if expires_at <= now]
        for nonce in expired:
            del self._nonces[nonce]
        return len(expired)

    async def close(self) -> None:
        self._nonces.clear()

    def __contains__(self, nonce: str) -> bool:
        expires_at = self._nonces.get(nonce)
        return expires_at is not None and expires_at > self._clock()


class RedisRateLimitStore(RateLimitStore):
    """Sliding windows kept in Redis sorted sets, shared across instances."""

    def __init__(self, client: redis.Redis, prefix: str = "webhook:rate:", clock: Clock = time.time):
        self._redis = client
        self._prefix = prefix
        self._clock = clock

    async def hit(self, key: str, limit: int, window_seconds: float) -> RateLimitDecision:
        now = self._clock()
        redis_key = f"{self._prefix}{key}"

        pipe = self._redis.pipeline()
        pipe.zremrangebyscore(redis_key, "-inf", now - window_seconds)
        pipe.zcard(redis_key)
        _, current = await pipe.execute()

        if current >= limit:
            oldest = await self._redis.zrange(redis_key, 0, 0, withscores=True)
            reset_at = oldest[0][1] + window_seconds if oldest else None
            return RateLimitDecision(allowed=False, current=current, limit=limit, reset_at=reset_at)

        pipe = self._redis.pipeline()
        pipe.zadd(redis_key, {f"{now}:{uuid.uuid4().hex}": now})
        pipe.expire(redis_key, math.ceil(window_seconds))
        await pipe.execute()
        return RateLimitDecision(allowed=True, current=current + 1, limit=limit)


class RedisNonceStore(NonceStore):
    """Nonces kept as expiring Redis keys, shared across instances."""

    def __init__(self, client: redis.Redis, prefix: str = "webhook:nonce:"):
        self._redis = client
        self._prefix = prefix

    async def add_if_absent(self, nonce: str, ttl_seconds: float) -> bool:
        created = await self._redis.set(
            f"{self._prefix}{nonce}", "1", nx=True, ex=max(1, math.ceil(ttl_seconds))
        )
        return bool(created)
