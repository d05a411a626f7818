"""
services/rate_limiter.py

Fixed-window rate limiter shared by every endpoint class.

One contract everywhere:

    result = await limiter.check(identifier, limit, window_seconds)

Counters are keyed by (identifier, window, bucket) where
bucket = floor(now / window_seconds). A counter lives for one window; the
Redis backend lets the key expire, the in-memory backend evicts stale
buckets lazily on the next increment.

Backends:
- Redis (SET NX EX then INCR in one MULTI) when a connected RedisClient is supplied, so
  every API replica shares one budget.
- In-memory, guarded by an asyncio.Lock. Also used whenever a Redis call
  fails; a failing cache degrades the throttle, never the request.

Counting is at-least-once. Concurrent requests may be slightly over-admitted
under Redis failover; this is a throttle, not a quota.
"""

import asyncio
import logging
import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Tuple

from insightboard.core.errors import RateLimited
from insightboard.integrations.redis_client import RedisClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitBudget:
    limit: int
    window_seconds: int


# Per endpoint class. Identifiers are "<class>:<client ip>".
ENDPOINT_BUDGETS: Dict[str, RateLimitBudget] = {
    "password_reset": RateLimitBudget(limit=3, window_seconds=15 * 60),
    "password_update": RateLimitBudget(limit=5, window_seconds=15 * 60),
    "login": RateLimitBudget(limit=5, window_seconds=15 * 60),
    "register": RateLimitBudget(limit=5, window_seconds=60 * 60),
    "api": RateLimitBudget(limit=100, window_seconds=60),
    "roles": RateLimitBudget(limit=20, window_seconds=60),
    "upload": RateLimitBudget(limit=10, window_seconds=60 * 60),
    "page": RateLimitBudget(limit=120, window_seconds=60),
}


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: datetime
    retry_after: int

    def headers(self) -> Dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(self.reset_at.timestamp())),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after)
        return headers


# =============================================================================
# BACKEND ABSTRACTION
# =============================================================================


class _RateLimitBackend(ABC):
    name = "abstract"

    @abstractmethod
    async def increment(self, key: str, expires_at: float, now: float) -> Optional[int]:
        """Increment counter and return new value, or None if the backend failed."""

    @abstractmethod
    async def reset(self) -> None:
        """Clear all state (for tests)."""


class _InMemoryBackend(_RateLimitBackend):
    """Single-process backend. Safe under concurrent coroutines, not across processes."""

    name = "memory"

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._counters: Dict[str, Tuple[int, float]] = {}

    def _evict(self, now: float) -> None:
        stale = [key for key, (_, expires_at) in self._counters.items() if expires_at <= now]
        for key in stale:
            del self._counters[key]

    async def increment(self, key: str, expires_at: float, now: float) -> Optional[int]:
        async with self._lock:
            self._evict(now)
            count, _ = self._counters.get(key, (0, expires_at))
            count += 1
            self._counters[key] = (count, expires_at)
            return count

    async def reset(self) -> None:
        async with self._lock:
            self._counters.clear()

    def __len__(self) -> int:
        return len(self._counters)


class _RedisBackend(_RateLimitBackend):
    name = "redis"

    def __init__(self, redis_client: RedisClient) -> None:
        self._redis = redis_client

    async def increment(self, key: str, expires_at: float, now: float) -> Optional[int]:
        ttl = max(1, math.ceil(expires_at - now))
        return await self._redis.increment(key, expire=ttl)

    async def reset(self) -> None:
        await self._redis.delete_pattern("rl:*")


# =============================================================================
# LIMITER
# =============================================================================


class RateLimiter:
    def __init__(
        self,
        redis_client: Optional[RedisClient] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._clock = clock
        self._memory = _InMemoryBackend()
        self._redis: Optional[_RedisBackend] = _RedisBackend(redis_client) if redis_client else None
        self._degraded = False

    @property
    def backend_name(self) -> str:
        if self._redis and not self._degraded:
            return self._redis.name
        return self._memory.name

    async def check(self, identifier: str, limit: int, window_seconds: int) -> RateLimitResult:
        """
        Counts one hit for `identifier` in the current window and reports
        whether it fits in `limit`. Never raises for a denial.
        """
        now = self._clock()
        bucket = int(now // window_seconds)
        window_end = float((bucket + 1) * window_seconds)
        key = f"rl:{identifier}:{window_seconds}:{bucket}"

        count = None
        if self._redis is not None:
            count = await self._redis.increment(key, window_end, now)
            if count is None and not self._degraded:
                logger.warning("Rate limiter: Redis unavailable, falling back to in-memory counters.")
            elif count is not None and self._degraded:
                logger.info("Rate limiter: Redis recovered.")
            self._degraded = count is None
        if count is None:
            count = await self._memory.increment(key, window_end, now)

        allowed = count <= limit
        retry_after = 0 if allowed else max(1, math.ceil(window_end - now))
        return RateLimitResult(
            allowed=allowed,
            limit=limit,
            remaining=max(0, limit - count),
            reset_at=datetime.fromtimestamp(window_end, tz=timezone.utc),
            retry_after=retry_after,
        )

    async def hit(self, endpoint_class: str, client_key: str) -> RateLimitResult:
        budget = ENDPOINT_BUDGETS[endpoint_class]
        return await self.check(f"{endpoint_class}:{client_key}", budget.limit, budget.window_seconds)

    async def enforce(self, endpoint_class: str, client_key: str) -> RateLimitResult:
        """`hit` that raises RateLimited on denial."""
        result = await self.hit(endpoint_class, client_key)
        if not result.allowed:
            logger.warning(f"Rate limit exceeded: {endpoint_class} for {client_key} | retry in {result.retry_after}s")
            raise RateLimited(result.retry_after)
        return result

    async def reset(self) -> None:
        await self._memory.reset()
        if self._redis is not None:
            await self._redis.reset()
