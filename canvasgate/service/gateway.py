"""Entry point for AI generation requests.

Every request passes the same checks in order before any provider is
contacted: credentials configured (503), capability enabled (403), origin
for streaming requests (403), rate limit (429), input validation (400/422).
"""

from __future__ import annotations

import asyncio
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Mapping, Optional, Union

from canvasgate.config import (
    Capability,
    EditMode,
    Settings,
    capability_enabled,
    configured_providers,
    is_configured,
    rate_limit_namespace,
)
from canvasgate.logging import get_logger
from canvasgate.service.artifact_store import ArtifactStore
from canvasgate.service.artifact_validation import (
    ArtifactValidator,
    ValidatedArtifact,
)
from canvasgate.service.errors import (
    ArtifactValidationError,
    BadRequestError,
    ConfigurationError,
    FeatureDisabledError,
    OriginRejectedError,
    ProviderError,
    ValidationError,
)
from canvasgate.service.fs import scratch_file_async
from canvasgate.service.models import ModelCatalog
from canvasgate.service.prompts import (
    build_context,
    build_screenshot_prompt,
    build_system_prompt,
    extract_html,
)
from canvasgate.service.providers import ProviderRegistry
from canvasgate.service.rate_limit import RateLimiter
from canvasgate.service.remote_fetch import RemoteFetchGuard
from canvasgate.service.streaming import StreamingRelay

logger = get_logger(__name__)

AI_PROMPT_METADATA_LIMIT = 500

_DISABLED_MESSAGES = {
    Capability.TEXT: "Text generation is disabled",
    Capability.IMAGE: "Image generation is disabled",
    Capability.SCREENSHOT: "Screenshot to code is disabled",
}

_DEFAULT_PORTS = {"http": 80, "https": 443}

# Upper bound for free-text fields; image payloads are bounded by the validator.
MAX_TEXT_LENGTH = 65536
MAX_MODEL_ID_LENGTH = 200

_FIELD_LIMITS = {
    "prompt": MAX_TEXT_LENGTH,
    "additional_prompt": MAX_TEXT_LENGTH,
    "current_html": MAX_TEXT_LENGTH,
    "model": MAX_MODEL_ID_LENGTH,
    "mode": 32,
    "screenshot_type": 32,
}


def truncate(text: str, limit: int, omission: str = "...") -> str:
    if len(text) <= limit:
        return text
    return text[: max(0, limit - len(omission))] + omission


@dataclass(frozen=True)
class RequestContext:
    """Transport details of one inbound request."""

    client_key: str
    origin: Optional[str]
    scheme: str
    host: str
    port: Optional[int] = None

    def allowed_origins(self) -> list[str]:
        """Same-origin values a browser may send for this server."""
        scheme = self.scheme.lower()
        host = self.host.lower()
        origins = [f"{scheme}://{host}"]
        if self.port is not None and self.port != _DEFAULT_PORTS.get(scheme):
            origins.append(f"{scheme}://{host}:{self.port}")
        return origins


@dataclass(frozen=True)
class GenerationRequest:
    capability: Capability
    prompt: str
    model_id: str
    mode: EditMode = EditMode.PAGE
    context_html: Optional[str] = None
    image: Optional[ValidatedArtifact] = field(default=None, repr=False)


GatewayResult = Union[AsyncIterator[str], dict]


class RequestGateway:
    """Check, rate-limit and dispatch generation requests."""

    def __init__(
        self,
        settings: Settings,
        *,
        rate_limiter: RateLimiter,
        catalog: ModelCatalog,
        providers: ProviderRegistry,
        validator: ArtifactValidator,
        fetch_guard: RemoteFetchGuard,
        artifact_store: ArtifactStore,
        relay: StreamingRelay,
        inline_validator: Optional[ArtifactValidator] = None,
    ) -> None:
        self.settings = settings
        self.rate_limiter = rate_limiter
        self.catalog = catalog
        self.providers = providers
        self.validator = validator
        self.fetch_guard = fetch_guard
        self.artifact_store = artifact_store
        self.relay = relay
        self.inline_validator = inline_validator or ArtifactValidator(settings.max_download_bytes)

    # -- checks -----------------------------------------------------------

    def ensure_configured(self) -> None:
        if not is_configured(self.settings):
            raise ConfigurationError("AI not configured. Add provider API keys to enable AI features.")

    def ensure_enabled(self, capability: Capability) -> None:
        if not capability_enabled(self.settings, capability):
            raise FeatureDisabledError(
                _DISABLED_MESSAGES[capability],
                detail={"capability": capability.value},
            )

    def verify_origin(self, ctx: RequestContext) -> None:
        # Same-origin browser requests may omit the header entirely
        if not ctx.origin:
            return
        allowed = ctx.allowed_origins()
        if ctx.origin.rstrip("/") not in allowed:
            logger.warning("origin_rejected", origin=ctx.origin, allowed=allowed, client=ctx.client_key)
            raise OriginRejectedError("Invalid request origin")

    @staticmethod
    def check_lengths(body: Mapping[str, Any]) -> None:
        for name, limit in _FIELD_LIMITS.items():
            value = body.get(name)
            if isinstance(value, str) and len(value) > limit:
                raise ValidationError(
                    f"{name} is too long (maximum {limit} characters)",
                    detail={"field": name, "max_length": limit},
                )

    def build_request(self, capability: Capability, body: Mapping[str, Any]) -> GenerationRequest:
        self.check_lengths(body)
        prompt = str(body.get("prompt") or "").strip()
        raw_mode = body.get("mode") or EditMode.PAGE.value
        try:
            mode = EditMode(raw_mode)
        except ValueError as exc:
            raise ValidationError(
                f"Invalid mode: {raw_mode}",
                detail={"allowed": [m.value for m in EditMode]},
            ) from exc

        image: Optional[ValidatedArtifact] = None
        if capability is Capability.SCREENSHOT:
            screenshot = body.get("screenshot")
            if not screenshot:
                raise BadRequestError("No screenshot provided")
            prompt = str(body.get("additional_prompt") or "").strip()
            try:
                image = self.validator.decode(screenshot, body.get("screenshot_type"))
            except ArtifactValidationError as exc:
                logger.warning("artifact_rejected", error_code=exc.error_code, reason=exc.message)
                raise
        elif not prompt:
            raise ValidationError("Prompt is required", detail={"field": "prompt"})

        defaults = {
            Capability.TEXT: self.catalog.default_text_model,
            Capability.IMAGE: self.catalog.default_image_model,
            Capability.SCREENSHOT: self.catalog.default_vision_model,
        }
        model_id = str(body.get("model") or "").strip() or defaults[capability]

        return GenerationRequest(
            capability=capability,
            prompt=prompt,
            model_id=model_id,
            mode=mode,
            context_html=body.get("current_html") or None,
            image=image,
        )

    # -- dispatch ---------------------------------------------------------

    async def handle(
        self,
        ctx: RequestContext,
        capability: Capability,
        body: Mapping[str, Any],
    ) -> GatewayResult:
        """Run every check, then dispatch to the capability's backend.

        Text requests return an async iterator of SSE frames; the other
        capabilities return a JSON-ready dict.
        """
        self.ensure_configured()
        self.ensure_enabled(capability)
        if capability is Capability.TEXT:
            self.verify_origin(ctx)
        await self.rate_limiter.enforce(ctx.client_key, rate_limit_namespace(capability))

        request = self.build_request(capability, body)
        if capability is Capability.TEXT:
            return self.stream_chat(request)
        if capability is Capability.IMAGE:
            return await self.generate_image(request)
        return await self.screenshot_to_code(request)

    def stream_chat(self, request: GenerationRequest) -> AsyncIterator[str]:
        descriptor = self.catalog.resolve(request.model_id)
        provider = self.providers.for_model(descriptor)
        system_prompt = build_system_prompt(
            self.settings.css_framework,
            build_context(request.mode, request.context_html),
        )
        logger.info(
            "chat_stream_started",
            model=descriptor.id,
            provider=provider.name,
            mode=request.mode.value,
        )
        return self.relay.open_stream(
            provider,
            self.providers.upstream_model_id(descriptor),
            request.prompt,
            system_prompt,
        )

    async def generate_image(self, request: GenerationRequest) -> dict:
        descriptor = self.catalog.resolve(request.model_id)
        provider = self.providers.for_model(descriptor)
        result = await provider.generate_image(
            request.prompt, self.providers.upstream_model_id(descriptor)
        )

        if result.startswith("data:"):
            try:
                artifact = self.inline_validator.decode(result)
            except ArtifactValidationError as exc:
                logger.error("provider_image_invalid", model=descriptor.id, error_code=exc.error_code)
                raise ProviderError("AI provider returned an invalid image") from exc
        else:
            artifact = await self.fetch_guard.fetch(result)

        filename = f"ai_generated_{int(time.time())}_{secrets.token_hex(4)}.{artifact.extension}"
        metadata = {
            "ai_generated": True,
            "ai_prompt": truncate(request.prompt, AI_PROMPT_METADATA_LIMIT),
            "ai_model": descriptor.id,
        }
        stored = await asyncio.to_thread(
            self.artifact_store.persist,
            artifact.data,
            filename,
            artifact.content_type,
            metadata,
        )
        logger.info("image_generated", model=descriptor.id, artifact_id=stored.id, size_bytes=stored.size_bytes)
        return {
            "success": True,
            "image": {
                "id": stored.id,
                "url": stored.url,
                "filename": stored.filename,
                "content_type": stored.content_type,
                "size_bytes": stored.size_bytes,
                "alt": truncate(request.prompt, 120),
            },
            "url": stored.url,
        }

    async def screenshot_to_code(self, request: GenerationRequest) -> dict:
        if request.image is None:
            raise BadRequestError("No screenshot provided")
        descriptor = self.catalog.resolve(request.model_id)
        if not descriptor.supports_vision:
            raise ValidationError(
                f"Model {descriptor.id} does not accept image input",
                detail={"model": descriptor.id},
            )
        provider = self.providers.for_model(descriptor)
        prompt = build_screenshot_prompt(self.settings.css_framework, request.prompt)

        async with scratch_file_async(
            request.image.data, suffix=request.image.extension, prefix="screenshot_"
        ) as path:
            content = await provider.complete_chat(
                prompt,
                self.providers.upstream_model_id(descriptor),
                image_path=path,
            )

        html = extract_html(content)
        if not html:
            raise ProviderError("AI provider returned no HTML", detail={"model": descriptor.id})
        logger.info("screenshot_converted", model=descriptor.id, html_chars=len(html))
        return {"success": True, "html": html}

    # -- reporting --------------------------------------------------------

    def models(self) -> dict:
        return {
            "text": [m.as_json() for m in self.catalog.text_models()],
            "image": [m.as_json() for m in self.catalog.image_models()],
            "vision": [m.as_json() for m in self.catalog.vision_models()],
            "default_text": self.catalog.default_text_model,
            "default_image": self.catalog.default_image_model,
            "default_vision": self.catalog.default_vision_model,
        }

    def status(self) -> dict:
        return {
            "configured": is_configured(self.settings),
            "providers": configured_providers(self.settings),
            "text_enabled": capability_enabled(self.settings, Capability.TEXT),
            "image_enabled": capability_enabled(self.settings, Capability.IMAGE),
            "screenshot_enabled": capability_enabled(self.settings, Capability.SCREENSHOT),
        }
