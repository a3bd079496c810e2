from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from canvasgate.logging import get_logger
from canvasgate.service.errors import RateLimitedError
from canvasgate.storage.redis_cache import RedisCache

logger = get_logger(__name__)

DEFAULT_WINDOW_SECONDS = 60


@dataclass(frozen=True)
class RateDecision:
    """Outcome of a single rate-limit check."""

    allowed: bool
    count: int
    limit: int
    retry_after: int

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)


class RateLimiter:
    """Fixed-window request counter per ``(namespace, client)``.

    The window is anchored to the first request: that request creates the
    counter with a TTL equal to the window length and later requests only
    increment it, so it expires naturally and the next request starts a new
    window.

    Stores exposing ``increment_window`` (Redis) are incremented atomically.
    Other stores go through read-modify-write under a per-limiter lock, so
    racing requests in one process are still counted exactly once each.
    """

    def __init__(
        self,
        cache: Any,
        limits: Mapping[str, int],
        *,
        window_seconds: int = DEFAULT_WINDOW_SECONDS,
        default_limit: int = 30,
    ) -> None:
        self.cache = cache
        self.limits = dict(limits)
        self.default_limit = default_limit
        if window_seconds <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                window_seconds=window_seconds,
                message="Invalid rate limit window_seconds; defaulting to 60 seconds",
            )
            window_seconds = DEFAULT_WINDOW_SECONDS
        self.window_seconds = window_seconds
        self._fallback_lock = asyncio.Lock()

    def limit_for(self, namespace: str) -> int:
        return self.limits.get(namespace, self.default_limit)

    async def check(self, client_key: str, namespace: str) -> RateDecision:
        limit = self.limit_for(namespace)
        if limit <= 0:
            return RateDecision(allowed=True, count=0, limit=limit, retry_after=0)

        key = RedisCache.normalize_rate_key(client_key, namespace)
        increment = getattr(self.cache, "increment_window", None)
        if increment is not None:
            count, ttl = await increment(key, self.window_seconds)
        else:
            async with self._fallback_lock:
                count, ttl = await self._read_modify_write(key)

        allowed = count <= limit
        return RateDecision(
            allowed=allowed,
            count=count,
            limit=limit,
            retry_after=0 if allowed else max(1, ttl),
        )

    async def _read_modify_write(self, key: str) -> tuple[int, int]:
        current: Optional[str] = await self.cache.get(key)
        if current is None:
            count = 1
            await self.cache.set(key, str(count), ex=self.window_seconds)
        else:
            count = int(current) + 1
            # Keep the original expiry so the window is never extended
            await self.cache.set(key, str(count), keepttl=True)
        ttl = await self.cache.ttl(key)
        return count, ttl if ttl >= 0 else self.window_seconds

    async def enforce(self, client_key: str, namespace: str) -> RateDecision:
        """Check and raise ``RateLimitedError`` when the window is exhausted."""
        decision = await self.check(client_key, namespace)
        if not decision.allowed:
            logger.warning(
                "rate_limit_exceeded",
                namespace=namespace,
                client=client_key,
                count=decision.count,
                limit=decision.limit,
                window_seconds=self.window_seconds,
            )
            raise RateLimitedError(
                f"Rate limit exceeded. Please try again in {decision.retry_after} seconds.",
                detail={"retry_after": decision.retry_after, "limit": decision.limit},
            )
        return decision
