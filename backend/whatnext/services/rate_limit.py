"""
rate_limit.py

Redis-backed fixed-window limiter for outbound provider calls.

Invocations can't sleep, so a window that is used up declines further work
for the rest of the invocation instead of waiting; the caller stops and a
later request or scheduled run picks the work up again.

The counter for a window lives under `rate_limit:{service}:{window_start_ms}`.
It is created with SET NX PX (so it always carries a TTL) and bumped with
INCR, which keeps the count exact across concurrent invocations.
"""
import time
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from whatnext.core.config import settings
from whatnext.core.redis_client import get_redis

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RateLimitConfig:
    requests_per_window: int
    window_ms: int = 1000


RATE_LIMITS: Dict[str, RateLimitConfig] = {
    "tmdb": RateLimitConfig(requests_per_window=settings.tmdb_rate_limit_per_second, window_ms=1000),
    "embeddings": RateLimitConfig(requests_per_window=settings.embedding_rate_limit_per_second, window_ms=1000),
}


class RateLimitExceeded(Exception):
    """Raised when the limiter declines a call."""

    def __init__(self, message: str, service: str = None, status: Dict = None):
        super().__init__(message)
        self.service = service
        self.status = status or {}


class RateLimiter:
    """Fixed-window request budget for one external service."""

    def __init__(
        self,
        service: str,
        config: Optional[RateLimitConfig] = None,
        redis=None,
        clock: Callable[[], float] = time.time,
    ):
        self.service = service
        self.config = config or RATE_LIMITS.get(service, RateLimitConfig(requests_per_window=10))
        self._redis = redis
        self._clock = clock

    @property
    def redis(self):
        if self._redis is None:
            self._redis = get_redis()
        return self._redis

    def _window(self) -> tuple:
        now_ms = int(self._clock() * 1000)
        window_start = now_ms - (now_ms % self.config.window_ms)
        return f"rate_limit:{self.service}:{window_start}", window_start + self.config.window_ms

    async def acquire(self) -> bool:
        """Take one slot in the current window. Returns False (without waiting) when the window is full."""
        key, _ = self._window()
        # Keep the key a little past its window so late readers still see the count
        await self.redis.set(key, 0, px=self.config.window_ms * 2, nx=True)
        count = await self.redis.incr(key)
        if count > self.config.requests_per_window:
            logger.warning(
                f"[RateLimit] {self.service} window exhausted: {count}/{self.config.requests_per_window}, declining"
            )
            return False
        return True

    async def execute(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Run `fn` if a slot is available, otherwise raise RateLimitExceeded."""
        if not await self.acquire():
            status = await self.get_status()
            raise RateLimitExceeded(
                f"Rate limit exceeded for {self.service}",
                service=self.service,
                status=status,
            )
        return await fn()

    async def get_remaining_capacity(self) -> int:
        key, _ = self._window()
        current = await self.redis.get(key)
        return max(0, self.config.requests_per_window - int(current or 0))

    async def get_status(self) -> Dict[str, Any]:
        key, reset_at_ms = self._window()
        current_count = int(await self.redis.get(key) or 0)
        return {
            "service": self.service,
            "limit": self.config.requests_per_window,
            "window_ms": self.config.window_ms,
            "remaining": max(0, self.config.requests_per_window - current_count),
            "reset_time": reset_at_ms / 1000.0,
            "current_count": current_count,
        }

