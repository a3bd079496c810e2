from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from canvasgate.config import Settings, get_settings, reset_settings_cache
from canvasgate.logging import get_logger
from canvasgate.service.artifact_store import LocalArtifactStore
from canvasgate.service.artifact_validation import ArtifactValidator
from canvasgate.service.gateway import RequestGateway
from canvasgate.service.models import ModelCatalog
from canvasgate.service.providers import ProviderRegistry
from canvasgate.service.rate_limit import RateLimiter
from canvasgate.service.remote_fetch import RemoteFetchGuard
from canvasgate.service.streaming import StreamingRelay, StreamLimits
from canvasgate.storage.memory import MemoryCache
from canvasgate.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of ``url`` with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info("runtime_init_started", test_mode=self.settings.test_mode)

        self.cache = self._init_cache()
        self.rate_limiter = RateLimiter(
            self.cache,
            self.settings.rate_limits(),
            window_seconds=self.settings.rate_limit_window_seconds,
        )
        self.catalog = ModelCatalog(self.settings)
        self.providers = ProviderRegistry.from_settings(self.settings)
        self.validator = ArtifactValidator(self.settings.max_upload_bytes)
        self.fetch_guard = RemoteFetchGuard(
            allowlist=self.settings.image_host_allowlist,
            enforce_allowlist=self.settings.image_host_allowlist_enforce,
            max_bytes=self.settings.max_download_bytes,
            timeout_seconds=self.settings.fetch_timeout_seconds,
            connect_timeout_seconds=self.settings.provider_connect_timeout_seconds,
        )
        self.artifact_store = LocalArtifactStore(
            self.settings.shared_fs_root,
            url_prefix=self.settings.media_url_prefix,
        )
        self.relay = StreamingRelay(
            StreamLimits(
                total_timeout=self.settings.stream_timeout_seconds,
                idle_timeout=self.settings.stream_idle_timeout_seconds,
                max_bytes=self.settings.max_response_bytes,
            )
        )
        self.gateway = RequestGateway(
            self.settings,
            rate_limiter=self.rate_limiter,
            catalog=self.catalog,
            providers=self.providers,
            validator=self.validator,
            fetch_guard=self.fetch_guard,
            artifact_store=self.artifact_store,
            relay=self.relay,
        )
        logger.info(
            "runtime_init_complete",
            providers=self.providers.names,
            cache="redis" if isinstance(self.cache, RedisCache) else "memory",
        )

    def _init_cache(self):
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for shared rate limits; start Redis or set "
                "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; rate limits are "
                "per-process and not shared between workers."
            ),
            mode=fallback_mode,
        )
        return MemoryCache()

    async def close(self) -> None:
        """Release provider and cache clients."""
        await self.providers.close()
        await self.cache.close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: the fast path skips the lock once the
    runtime exists.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, RedisCache):
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.cache.close())
            except RuntimeError:
                asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
