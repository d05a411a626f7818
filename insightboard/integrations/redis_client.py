"""
integrations/redis_client.py

Shared counter store for the fixed-window rate limiter when more than one
API replica runs. Every call degrades to None/0 instead of raising, so the
limiter can fall back to in-process counters while Redis is unreachable.
"""

import logging
from typing import Optional

import redis.asyncio as redis

from insightboard.core.config import get_settings

logger = logging.getLogger(__name__)


class RedisClient:
    def __init__(self) -> None:
        settings = get_settings()
        self._client = None
        self._url = f"redis://{settings.redis_host}:{settings.redis_port}/{settings.redis_db}"
        self._password = settings.redis_password or None

    async def connect(self) -> None:
        try:
            self._client = redis.Redis.from_url(
                self._url,
                password=self._password,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
            )
            await self._client.ping()
            logger.info(f"Redis connection established ({self._url})")
        except Exception as e:
            logger.error(f"Failed to connect to Redis at {self._url}: {e}")
            self._client = None

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def is_connected(self) -> bool:
        if not self._client:
            return False
        try:
            await self._client.ping()
            return True
        except Exception:
            return False

    # ─────────────────────────────────────────────
    # Window Counters
    # ─────────────────────────────────────────────

    async def increment(self, key: str, expire: Optional[int] = None) -> Optional[int]:
        """
        Bump a window counter and return its new value.

        The key is created at 0 with `expire` seconds to live before the
        increment, inside one MULTI block, so the TTL is set exactly once
        per window and never refreshed by later hits.

        Returns None when Redis is unavailable or the command fails.
        """
        if not self._client:
            return None

        try:
            pipe = self._client.pipeline(transaction=True)
            if expire:
                pipe.set(key, 0, ex=expire, nx=True)
            pipe.incr(key)
            result = await pipe.execute()
            return int(result[-1])
        except Exception as e:
            logger.error(f"Redis counter {key} unavailable: {e}")
            return None

    async def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching `pattern`; returns how many went."""
        if not self._client:
            return 0

        removed = 0
        try:
            async for key in self._client.scan_iter(match=pattern, count=500):
                removed += await self._client.delete(key)
        except Exception as e:
            logger.error(f"Failed to delete keys matching {pattern}: {e}")
        return removed
