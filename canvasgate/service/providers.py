from __future__ import annotations

import asyncio
import base64
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncContextManager, AsyncIterator, Dict, Mapping, Optional, Protocol

import anthropic
import openai
from openai import AsyncOpenAI

from canvasgate.config import ProviderName, Settings
from canvasgate.logging import get_logger, sanitize_error_message
from canvasgate.service.artifact_validation import sniff_image_type
from canvasgate.service.errors import ConfigurationError, ProviderError
from canvasgate.service.models import ModelDescriptor

logger = get_logger(__name__)

DEFAULT_MAX_TOKENS = 4096
DEFAULT_IMAGE_SIZE = "1024x1024"
DEFAULT_OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"


class ModelProvider(Protocol):
    """Upstream model API consumed by the gateway."""

    name: str

    def stream_chat(
        self, prompt: str, model: str, system_context: Optional[str] = None
    ) -> AsyncContextManager[AsyncIterator[str]]:
        """Open a streaming completion; leaving the context releases the connection."""

    async def complete_chat(
        self,
        prompt: str,
        model: str,
        system_context: Optional[str] = None,
        image_path: Optional[Path] = None,
    ) -> str: ...

    async def generate_image(self, prompt: str, model: str) -> str:
        """Return a remote URL, or a ``data:`` URI for inline results."""

    async def close(self) -> None: ...


def _image_part(image_path: Path) -> tuple[str, str]:
    """Read an image file and return ``(media_type, base64_data)``."""
    data = Path(image_path).read_bytes()
    kind = sniff_image_type(data) or "png"
    return f"image/{kind}", base64.b64encode(data).decode("ascii")


def _provider_error(provider: str, exc: Exception, operation: str) -> ProviderError:
    message = sanitize_error_message(str(exc)) or exc.__class__.__name__
    logger.error(
        "provider_request_failed",
        provider=provider,
        operation=operation,
        error_type=exc.__class__.__name__,
        error=message,
    )
    return ProviderError(
        f"AI provider request failed: {message}",
        detail={"provider": provider},
    )


class OpenAIProvider:
    """Chat, vision and image generation over the OpenAI API.

    Also serves OpenRouter, which speaks the same protocol at another base URL.
    """

    def __init__(
        self,
        api_key: str,
        *,
        base_url: Optional[str] = None,
        name: str = ProviderName.OPENAI.value,
        timeout_seconds: float = 120.0,
        connect_timeout_seconds: float = 10.0,
        client: Any = None,
    ) -> None:
        self.name = name
        self.client = client or AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=openai.Timeout(timeout_seconds, connect=connect_timeout_seconds),
            max_retries=0,
        )

    @staticmethod
    def _messages(prompt: str, system_context: Optional[str]) -> list[dict]:
        messages: list[dict] = []
        if system_context:
            messages.append({"role": "system", "content": system_context})
        messages.append({"role": "user", "content": prompt})
        return messages

    @asynccontextmanager
    async def stream_chat(
        self, prompt: str, model: str, system_context: Optional[str] = None
    ) -> AsyncIterator[AsyncIterator[str]]:
        try:
            stream = await self.client.chat.completions.create(
                model=model,
                messages=self._messages(prompt, system_context),
                stream=True,
            )
        except openai.OpenAIError as exc:
            raise _provider_error(self.name, exc, "stream_chat") from exc

        chunks = self._iter_chunks(stream)
        try:
            yield chunks
        finally:
            await chunks.aclose()
            await stream.close()

    async def _iter_chunks(self, stream: Any) -> AsyncIterator[str]:
        try:
            async for event in stream:
                for choice in getattr(event, "choices", None) or []:
                    delta = getattr(choice, "delta", None)
                    content = getattr(delta, "content", None) if delta else None
                    if content:
                        yield content
        except openai.OpenAIError as exc:
            raise _provider_error(self.name, exc, "stream_chat") from exc

    async def complete_chat(
        self,
        prompt: str,
        model: str,
        system_context: Optional[str] = None,
        image_path: Optional[Path] = None,
    ) -> str:
        messages = self._messages(prompt, system_context)
        if image_path is not None:
            media_type, encoded = await asyncio.to_thread(_image_part, image_path)
            messages[-1] = {
                "role": "user",
                "content": [
                    {"type": "text", "text": prompt},
                    {
                        "type": "image_url",
                        "image_url": {"url": f"data:{media_type};base64,{encoded}"},
                    },
                ],
            }
        try:
            completion = await self.client.chat.completions.create(model=model, messages=messages)
        except openai.OpenAIError as exc:
            raise _provider_error(self.name, exc, "complete_chat") from exc

        choices = getattr(completion, "choices", None) or []
        first_choice = next(iter(choices), None)
        if not first_choice:
            logger.warning("provider_completion_empty", provider=self.name, model=model)
            return ""
        return first_choice.message.content or ""

    async def generate_image(self, prompt: str, model: str) -> str:
        try:
            response = await self.client.images.generate(
                model=model,
                prompt=prompt,
                n=1,
                size=DEFAULT_IMAGE_SIZE,
            )
        except openai.OpenAIError as exc:
            raise _provider_error(self.name, exc, "generate_image") from exc

        data = getattr(response, "data", None) or []
        item = next(iter(data), None)
        if item is not None and getattr(item, "url", None):
            return item.url
        if item is not None and getattr(item, "b64_json", None):
            return f"data:image/png;base64,{item.b64_json}"
        raise ProviderError("AI provider returned no image", detail={"provider": self.name})

    async def close(self) -> None:
        await self.client.close()


class AnthropicProvider:
    """Chat and vision over the Anthropic Messages API; no image generation."""

    def __init__(
        self,
        api_key: str,
        *,
        timeout_seconds: float = 120.0,
        connect_timeout_seconds: float = 10.0,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        client: Any = None,
    ) -> None:
        self.name = ProviderName.ANTHROPIC.value
        self.max_tokens = max_tokens
        self.client = client or anthropic.AsyncAnthropic(
            api_key=api_key,
            timeout=anthropic.Timeout(timeout_seconds, connect=connect_timeout_seconds),
            max_retries=0,
        )

    def _request(self, content: Any, model: str, system_context: Optional[str]) -> dict:
        kwargs: dict = {
            "model": model,
            "max_tokens": self.max_tokens,
            "messages": [{"role": "user", "content": content}],
        }
        if system_context:
            kwargs["system"] = system_context
        return kwargs

    @asynccontextmanager
    async def stream_chat(
        self, prompt: str, model: str, system_context: Optional[str] = None
    ) -> AsyncIterator[AsyncIterator[str]]:
        try:
            async with self.client.messages.stream(
                **self._request(prompt, model, system_context)
            ) as stream:
                chunks = self._iter_text(stream)
                try:
                    yield chunks
                finally:
                    await chunks.aclose()
        except anthropic.AnthropicError as exc:
            raise _provider_error(self.name, exc, "stream_chat") from exc

    async def _iter_text(self, stream: Any) -> AsyncIterator[str]:
        try:
            async for text in stream.text_stream:
                if text:
                    yield text
        except anthropic.AnthropicError as exc:
            raise _provider_error(self.name, exc, "stream_chat") from exc

    async def complete_chat(
        self,
        prompt: str,
        model: str,
        system_context: Optional[str] = None,
        image_path: Optional[Path] = None,
    ) -> str:
        content: Any = prompt
        if image_path is not None:
            media_type, encoded = await asyncio.to_thread(_image_part, image_path)
            content = [
                {
                    "type": "image",
                    "source": {"type": "base64", "media_type": media_type, "data": encoded},
                },
                {"type": "text", "text": prompt},
            ]
        try:
            response = await self.client.messages.create(
                **self._request(content, model, system_context)
            )
        except anthropic.AnthropicError as exc:
            raise _provider_error(self.name, exc, "complete_chat") from exc

        return "".join(
            getattr(block, "text", "")
            for block in getattr(response, "content", None) or []
            if getattr(block, "type", None) == "text"
        )

    async def generate_image(self, prompt: str, model: str) -> str:
        raise ProviderError(
            "Image generation is not supported by the Anthropic provider",
            detail={"provider": self.name, "model": model},
        )

    async def close(self) -> None:
        await self.client.close()


class ProviderRegistry:
    """One provider client per configured credential."""

    def __init__(self, providers: Mapping[str, ModelProvider]) -> None:
        self._providers: Dict[str, ModelProvider] = dict(providers)

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProviderRegistry":
        timeouts = {
            "timeout_seconds": settings.provider_request_timeout_seconds,
            "connect_timeout_seconds": settings.provider_connect_timeout_seconds,
        }
        providers: Dict[str, ModelProvider] = {}
        if settings.openai_api_key:
            providers[ProviderName.OPENAI.value] = OpenAIProvider(
                settings.openai_api_key,
                base_url=settings.openai_base_url,
                **timeouts,
            )
        if settings.anthropic_api_key:
            providers[ProviderName.ANTHROPIC.value] = AnthropicProvider(
                settings.anthropic_api_key, **timeouts
            )
        if settings.openrouter_api_key:
            providers[ProviderName.OPENROUTER.value] = OpenAIProvider(
                settings.openrouter_api_key,
                base_url=settings.openrouter_base_url or DEFAULT_OPENROUTER_BASE_URL,
                name=ProviderName.OPENROUTER.value,
                **timeouts,
            )
        return cls(providers)

    @property
    def names(self) -> list[str]:
        return list(self._providers)

    def _provider_name_for(self, descriptor: ModelDescriptor) -> str:
        if descriptor.provider in self._providers:
            return descriptor.provider
        # OpenRouter can serve models whose native provider has no key
        if ProviderName.OPENROUTER.value in self._providers:
            return ProviderName.OPENROUTER.value
        raise ConfigurationError(
            f"No credentials configured for provider '{descriptor.provider}'",
            detail={"model": descriptor.id, "provider": descriptor.provider},
        )

    def for_model(self, descriptor: ModelDescriptor) -> ModelProvider:
        return self._providers[self._provider_name_for(descriptor)]

    def upstream_model_id(self, descriptor: ModelDescriptor) -> str:
        """Model id as the serving provider expects it."""
        name = self._provider_name_for(descriptor)
        if name == ProviderName.OPENROUTER.value and "/" not in descriptor.id:
            return f"{descriptor.provider}/{descriptor.id}"
        return descriptor.id

    async def close(self) -> None:
        for provider in self._providers.values():
            await provider.close()
