from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Optional, Tuple


class MemoryCache:
    """Process-local key/value store with per-key expiry.

    Used when Redis is unavailable (tests, local development). It offers only
    plain ``get``/``set``; there is no atomic increment, so callers that
    count with it must serialize their own read-modify-write.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = threading.Lock()

    def _live_entry(self, key: str) -> Optional[Tuple[str, Optional[float]]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            self._data.pop(key, None)
            return None
        return entry

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live_entry(key)
        return entry[0] if entry else None

    async def set(
        self,
        key: str,
        value: str,
        *,
        ex: Optional[int] = None,
        keepttl: bool = False,
    ) -> None:
        """Store ``value``; ``keepttl`` preserves the expiry of an existing key."""
        with self._lock:
            expires_at: Optional[float] = None
            existing = self._live_entry(key)
            if keepttl and existing is not None:
                expires_at = existing[1]
            elif ex is not None:
                expires_at = self._clock() + ex
            self._data[key] = (str(value), expires_at)

    async def ttl(self, key: str) -> int:
        """Seconds until ``key`` expires, -1 without expiry, -2 when missing."""
        with self._lock:
            entry = self._live_entry(key)
        if entry is None:
            return -2
        if entry[1] is None:
            return -1
        return max(0, int(round(entry[1] - self._clock())))

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        with self._lock:
            self._data.clear()
