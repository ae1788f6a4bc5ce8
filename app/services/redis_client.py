# app/services/redis_client.py
"""
Shared Redis connection for the login service.

Holds the expired-token tombstones and, with CONFIRM_RATE_LIMIT_BACKEND=redis,
the confirmation attempt counters. Every helper is fail-soft: a Redis outage
is logged and reported as a miss (None/False) so callers decide how to
degrade.
"""

from collections.abc import Awaitable, Callable
from typing import Any

import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool

from app.config import settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

MAX_CONNECTIONS = 20


class RedisUnavailableError(ConnectionError):
    """REDIS_URL is unset or the pool could not be created."""


class FastRedisClient:
    """Lazily initialized pooled client."""

    def __init__(self, url: str | None = None):
        self._url = url
        self.pool: ConnectionPool | None = None
        self.client: redis.Redis | None = None

    @property
    def url(self) -> str | None:
        return self._url or settings.REDIS_URL

    @property
    def available(self) -> bool:
        return self.client is not None

    async def initialize(self) -> None:
        """Create the pool and verify it with a PING. No-op without REDIS_URL."""
        if self.client is not None:
            return
        if not self.url:
            logger.info("REDIS_URL not configured, tombstones and counters stay in process")
            return

        pool = ConnectionPool.from_url(
            self.url,
            max_connections=MAX_CONNECTIONS,
            retry_on_timeout=True,
            socket_connect_timeout=5,
            socket_timeout=5,
            health_check_interval=30,
            decode_responses=True,
        )
        client = redis.Redis(connection_pool=pool)
        try:
            await client.ping()
        except redis.RedisError as e:
            await pool.disconnect()
            logger.error("Redis connection failed", error=str(e))
            raise RedisUnavailableError("Redis initialization failed") from e

        self.pool, self.client = pool, client
        logger.info("Redis client initialized", max_connections=MAX_CONNECTIONS)

    async def close(self) -> None:
        if self.client is not None:
            await self.client.aclose()
        if self.pool is not None:
            await self.pool.disconnect()
        self.pool = self.client = None
        logger.info("Redis client closed")

    async def _call(self, op: str, key: str, fn: Callable[[redis.Redis], Awaitable[Any]], default=None):
        try:
            if self.client is None:
                await self.initialize()
            if self.client is None:
                raise RedisUnavailableError("Redis client not available")
            return await fn(self.client)
        except (redis.RedisError, RedisUnavailableError) as e:
            logger.error("Redis operation failed", op=op, key=key[:40], error=str(e))
            return default

    async def ping(self) -> bool:
        return bool(await self._call("PING", "", lambda c: c.ping(), default=False))

    async def get(self, key: str) -> str | None:
        return await self._call("GET", key, lambda c: c.get(key))

    async def set_with_ttl(self, key: str, value: str, ttl_s: int | None = None) -> bool:
        if ttl_s:
            result = await self._call("SETEX", key, lambda c: c.setex(key, ttl_s, value), default=False)
        else:
            result = await self._call("SET", key, lambda c: c.set(key, value), default=False)
        return bool(result)

    async def delete(self, key: str) -> bool:
        return bool(await self._call("DEL", key, lambda c: c.delete(key), default=0))

    async def incr_with_ttl(self, key: str, ttl_s: int | None = None) -> tuple[int, int] | None:
        """
        INCR plus EXPIRE NX in one transaction, so the window starts at the
        first attempt and later attempts do not extend it.

        Returns:
            (count, seconds_to_expiry) or None when Redis failed
        """

        async def _incr(client: redis.Redis):
            async with client.pipeline(transaction=True) as pipe:
                pipe.incr(key)
                if ttl_s:
                    pipe.expire(key, ttl_s, nx=True)
                pipe.ttl(key)
                results = await pipe.execute()
            return int(results[0]), int(results[-1])

        return await self._call("INCR", key, _incr)


# Global instance
fast_redis = FastRedisClient()
