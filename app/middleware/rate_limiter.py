"""
Rate Limiter - fixed-window attempt counting for login confirmations.

The bot backend calls the confirmation endpoint on behalf of humans, so the
limiter is keyed by (caller IP, Telegram chat id) rather than by user.

Backends:
- memory: per-process dict. Resets on restart and is not shared between
  workers; basic abuse deterrence only.
- redis:  INCR + EXPIRE NX pipeline, shared across workers.

Usage:
    from app.middleware.rate_limiter import confirmation_rate_limiter

    allowed, info = await confirmation_rate_limiter.check_rate_limit(
        key=confirmation_key(ip_address, chat_id)
    )
    if not allowed:
        raise RateLimitedError(retry_after=info["retry_after"])
"""

import asyncio
import time
from collections.abc import Callable

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.services.redis_client import fast_redis

logger = get_logger(__name__)


def confirmation_key(ip_address: str | None, chat_id: int) -> str:
    return f"confirm:{ip_address or 'unknown'}:{chat_id}"


class ConfirmationRateLimiter:
    """
    Fixed-window rate limiter.

    A window opens on the first attempt for a key and lasts window_seconds;
    at most ``limit`` attempts are allowed inside it.
    """

    def __init__(
        self,
        limit: int = 10,
        window_seconds: int = 3600,
        backend: str = "memory",
        fail_open: bool = True,
        redis=None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if backend not in ("memory", "redis"):
            raise ValueError(f"Unknown rate limit backend: {backend}")
        self.limit = limit
        self.window_seconds = window_seconds
        self.backend = backend
        self.fail_open = fail_open
        self.redis = redis or fast_redis
        self._clock = clock
        self._windows: dict[str, tuple[float, int]] = {}
        self._lock = asyncio.Lock()

    async def check_rate_limit(self, key: str) -> tuple[bool, dict]:
        """
        Count one attempt against ``key``.

        Returns:
            Tuple of (allowed, info) with limit/remaining/retry_after
        """
        if self.backend == "redis":
            return await self._check_redis(key)
        return await self._check_memory(key)

    async def _check_memory(self, key: str) -> tuple[bool, dict]:
        async with self._lock:
            now = self._clock()
            window_start, count = self._windows.get(key, (now, 0))
            if now - window_start >= self.window_seconds:
                window_start, count = now, 0

            retry_after = max(1, int(window_start + self.window_seconds - now))
            if count >= self.limit:
                return False, self._create_info_dict(False, 0, retry_after)

            count += 1
            self._windows[key] = (window_start, count)
            self._prune(now)
            return True, self._create_info_dict(True, self.limit - count, retry_after)

    def _prune(self, now: float) -> None:
        expired = [k for k, (start, _) in self._windows.items() if now - start >= self.window_seconds]
        for k in expired:
            del self._windows[k]

    async def _check_redis(self, key: str) -> tuple[bool, dict]:
        result = await self.redis.incr_with_ttl(f"ratelimit:{key}", self.window_seconds)

        if result is None:
            logger.error("Rate limiter Redis error", key=key, fail_open=self.fail_open)
            if self.fail_open:
                return True, self._create_info_dict(
                    True, self.limit, None, error="rate_limiter_error"
                )
            return False, self._create_info_dict(
                False, 0, self.window_seconds, error="rate_limiter_error"
            )

        count, ttl = result
        retry_after = ttl if ttl and ttl > 0 else self.window_seconds
        if count > self.limit:
            return False, self._create_info_dict(False, 0, retry_after)
        return True, self._create_info_dict(True, self.limit - count, retry_after)

    def reset(self) -> None:
        self._windows.clear()

    def _create_info_dict(
        self,
        allowed: bool,
        remaining: int,
        retry_after: int | None,
        error: str | None = None,
    ) -> dict:
        info = {
            "allowed": allowed,
            "limit": self.limit,
            "remaining": remaining,
            "retry_after": retry_after,
            "window_seconds": self.window_seconds,
        }
        if error:
            info["error"] = error
        return info


# Global singleton
confirmation_rate_limiter = ConfirmationRateLimiter(
    limit=settings.CONFIRM_RATE_LIMIT_ATTEMPTS,
    window_seconds=settings.CONFIRM_RATE_LIMIT_WINDOW_SECONDS,
    backend=settings.CONFIRM_RATE_LIMIT_BACKEND,
    fail_open=settings.RATE_LIMIT_FAIL_OPEN,
)
