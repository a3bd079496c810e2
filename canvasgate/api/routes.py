from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse

from canvasgate.api.schemas import (
    ChatRequest,
    ImageRequest,
    ImageResponse,
    ModelsResponse,
    ScreenshotRequest,
    ScreenshotResponse,
    StatusResponse,
)
from canvasgate.config import Capability, Settings
from canvasgate.logging import get_logger
from canvasgate.service.gateway import RequestContext
from canvasgate.service.runtime import get_runtime
from canvasgate.service.streaming import SSE_HEADERS

logger = get_logger(__name__)

router = APIRouter(prefix="/v1/ai", tags=["ai"])


def _client_key(request: Request, settings: Settings) -> str:
    if settings.trust_forwarded_for:
        forwarded = request.headers.get("X-Forwarded-For", "")
        first = forwarded.split(",", 1)[0].strip()
        if first:
            return first
    return request.client.host if request.client else "unknown"


def request_context(request: Request, settings: Settings) -> RequestContext:
    """Describe the transport of ``request`` for origin and rate-limit checks."""
    scheme = request.url.scheme
    if settings.trust_forwarded_for:
        scheme = request.headers.get("X-Forwarded-Proto", scheme).split(",", 1)[0].strip() or scheme
    return RequestContext(
        client_key=_client_key(request, settings),
        origin=request.headers.get("Origin"),
        scheme=scheme,
        host=request.url.hostname or "",
        port=request.url.port,
    )


@router.post("/chat")
async def chat(body: ChatRequest, request: Request):
    """Stream generated HTML as ``chunk`` events, ending in ``done`` or ``error``.

    Raises:
        503: If no provider credentials are configured
        403: If text generation is disabled or the Origin is foreign
        429: If the client exceeded its chat quota
        422: If the prompt is empty
    """
    runtime = get_runtime()
    frames = await runtime.gateway.handle(
        request_context(request, runtime.settings),
        Capability.TEXT,
        body.model_dump(),
    )
    return StreamingResponse(frames, media_type="text/event-stream", headers=SSE_HEADERS)


@router.post("/image", response_model=ImageResponse)
async def image(body: ImageRequest, request: Request):
    """Generate an image, store it, and return its media record."""
    runtime = get_runtime()
    return await runtime.gateway.handle(
        request_context(request, runtime.settings),
        Capability.IMAGE,
        body.model_dump(),
    )


@router.post("/screenshot_to_code", response_model=ScreenshotResponse)
async def screenshot_to_code(body: ScreenshotRequest, request: Request):
    """Convert an uploaded screenshot to an HTML fragment."""
    runtime = get_runtime()
    return await runtime.gateway.handle(
        request_context(request, runtime.settings),
        Capability.SCREENSHOT,
        body.model_dump(),
    )


@router.get("/models", response_model=ModelsResponse)
async def models():
    return get_runtime().gateway.models()


@router.get("/status", response_model=StatusResponse)
async def status():
    return get_runtime().gateway.status()
