from __future__ import annotations

import hashlib
from typing import Optional

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for the shared rate-limit counters."""

    # Default operation timeout for Redis commands
    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic fixed-window counter: INCR, and set the TTL only when this call
    # created the key, so later increments never extend the window.
    _WINDOW_COUNTER_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('EXPIRE', KEYS[1], tonumber(ARGV[1]))
end
local ttl = redis.call('TTL', KEYS[1])
if ttl < 0 then
  redis.call('EXPIRE', KEYS[1], tonumber(ARGV[1]))
  ttl = tonumber(ARGV[1])
end
return {count, ttl}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._window_counter = self.client.register_script(self._WINDOW_COUNTER_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def normalize_rate_key(key: str, namespace: Optional[str] = None) -> str:
        """Generate collision-resistant rate keys.

        The client component is hashed to avoid delimiter injection while
        still providing stable keys per logical rate limit subject.
        """

        digest = hashlib.sha256(key.encode()).hexdigest()
        prefix = f"{namespace}:" if namespace else ""
        return f"rate:{prefix}{digest}"

    async def increment_window(self, key: str, window_seconds: int) -> tuple[int, int]:
        """Atomically increment a windowed counter.

        Returns:
            Tuple of (count after increment, seconds until the window expires)
        """
        count, ttl = await self._window_counter(keys=[key], args=[int(window_seconds)])
        return int(count), max(0, int(ttl))

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
