"""Fixed-window request limiter keyed by arbitrary strings."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from functools import lru_cache
from typing import Protocol

import structlog
from redis.asyncio.client import Redis
from redis.exceptions import RedisError

from storefront_auth.config import get_settings
from storefront_auth.core.locks import KeyedLocks
from storefront_auth.core.sessions import get_redis_client

logger = structlog.get_logger(__name__)
_SWEEP_INTERVAL_MILLISECONDS = 60_000


class RateLimiter(Protocol):
    """Limiter contract shared by the in-memory and Redis backends."""

    async def is_rate_limited(self, key: str, max_requests: int, window_ms: int) -> bool:
        """Record one hit for key and report whether the ceiling was exceeded."""

    async def reset(self, key: str) -> None:
        """Forget the bucket for key."""


@dataclass
class RateLimitBucket:
    """Counter for one key inside its current window."""

    key: str
    window_start_ms: int
    window_ms: int
    count: int

    def elapsed(self, now_ms: int) -> bool:
        return now_ms - self.window_start_ms >= self.window_ms


class InMemoryRateLimiter:
    """Process-local limiter with per-key serialization.

    Buckets whose window has elapsed are swept at most once per sweep
    interval, so idle keys do not accumulate.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        sweep_interval_ms: int = _SWEEP_INTERVAL_MILLISECONDS,
    ) -> None:
        self._clock = clock
        self._buckets: dict[str, RateLimitBucket] = {}
        self._locks = KeyedLocks()
        self._sweep_interval_ms = sweep_interval_ms
        self._next_sweep_ms = 0

    async def is_rate_limited(self, key: str, max_requests: int, window_ms: int) -> bool:
        """Start or extend the key's window and compare the count to the ceiling."""
        now_ms = int(self._clock() * 1000)
        if now_ms >= self._next_sweep_ms:
            self._next_sweep_ms = now_ms + self._sweep_interval_ms
            self.sweep_expired(now_ms)
        with self._locks.hold(key):
            bucket = self._buckets.get(key)
            if bucket is None or now_ms - bucket.window_start_ms >= window_ms:
                self._buckets[key] = RateLimitBucket(
                    key=key, window_start_ms=now_ms, window_ms=window_ms, count=1
                )
                return False
            bucket.count += 1
            return bucket.count > max_requests

    async def reset(self, key: str) -> None:
        """Drop the key's bucket so the next hit opens a new window."""
        with self._locks.hold(key):
            self._buckets.pop(key, None)

    def sweep_expired(self, now_ms: int | None = None) -> int:
        """Drop every bucket whose window has elapsed and return how many went."""
        if now_ms is None:
            now_ms = int(self._clock() * 1000)
        removed = 0
        for key, bucket in list(self._buckets.items()):
            if not bucket.elapsed(now_ms):
                continue
            with self._locks.hold(key):
                current = self._buckets.get(key)
                if current is not None and current.elapsed(now_ms):
                    del self._buckets[key]
                    removed += 1
        return removed

    def bucket(self, key: str) -> RateLimitBucket | None:
        """Return the live bucket for key, if any."""
        return self._buckets.get(key)

    def __len__(self) -> int:
        return len(self._buckets)


class RedisRateLimiter:
    """Redis limiter; the window opens with SET NX PX and hits are INCR in one transaction."""

    def __init__(self, redis_client: Redis) -> None:
        self._redis = redis_client

    async def is_rate_limited(self, key: str, max_requests: int, window_ms: int) -> bool:
        """Count the hit atomically; fail open when Redis is unreachable."""
        bucket_key = self._bucket_key(key)
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.set(bucket_key, 0, px=window_ms, nx=True)
                pipe.incr(bucket_key)
                _, count = await pipe.execute()
        except RedisError:
            logger.warning("rate_limit_backend_unavailable", rate_limit_key=key)
            return False
        return int(count) > max_requests

    async def reset(self, key: str) -> None:
        """Delete the key's bucket."""
        try:
            await self._redis.delete(self._bucket_key(key))
        except RedisError:
            logger.warning("rate_limit_backend_unavailable", rate_limit_key=key)

    @staticmethod
    def _bucket_key(key: str) -> str:
        """Build Redis key for a limiter bucket."""
        return f"rate_limit:{key}"


@lru_cache
def get_rate_limiter() -> RateLimiter:
    """Create and cache the configured rate limiter backend."""
    settings = get_settings()
    if settings.store.backend == "redis":
        return RedisRateLimiter(redis_client=get_redis_client())
    return InMemoryRateLimiter()
