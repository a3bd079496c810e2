from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from canvasgate.api.error_handling import register_exception_handlers
from canvasgate.api.routes import router
from canvasgate.config import Settings, is_configured
from canvasgate.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    yield

    from canvasgate.service import runtime as runtime_module

    current = runtime_module.runtime
    if current is None:
        return
    try:
        await current.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Canvasgate AI Gateway", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Default to common local dev hosts; avoid wildcard when credentials are enabled.
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "X-Request-ID", "X-CSRF-Token"],
    expose_headers=["X-Request-ID", "Retry-After"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with a correlation id for structured logs.

    The id comes from the client's X-Request-ID header when present and is
    echoed back in the response header of the same name.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    # Streaming responses set their own no-cache policy first
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    response.headers.setdefault("API-Version", __version__)
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Liveness plus counter-store reachability."""
    from canvasgate.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    try:
        cache_ok = bool(await asyncio.wait_for(runtime.cache.ping(), HEALTH_CHECK_TIMEOUT_SECONDS))
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="cache", timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        cache_ok = False
    except Exception as exc:
        logger.error("health_check_cache_failed", error=str(exc))
        cache_ok = False
    checks["cache"] = {
        "status": "healthy" if cache_ok else "unhealthy",
        "type": type(runtime.cache).__name__,
    }
    checks["providers"] = {
        "status": "configured" if is_configured(runtime.settings) else "not_configured",
        "names": runtime.providers.names,
    }

    return {
        "status": "healthy" if cache_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    return app
