"""Provider adapters against mocked SDK clients."""
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import anthropic
import openai
import pytest

from canvasgate.config import Settings
from canvasgate.service.errors import ConfigurationError, ProviderError
from canvasgate.service.models import ModelCatalog
from canvasgate.service.providers import (
    AnthropicProvider,
    OpenAIProvider,
    ProviderRegistry,
    _image_part,
)

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16


class FakeOpenAIStream:
    def __init__(self, contents, error=None):
        self.contents = contents
        self.error = error
        self.closed = False

    def __aiter__(self):
        return self._events()

    async def _events(self):
        for content in self.contents:
            delta = SimpleNamespace(content=content)
            yield SimpleNamespace(choices=[SimpleNamespace(delta=delta)])
        if self.error is not None:
            raise self.error

    async def close(self):
        self.closed = True


class FakeAnthropicStream:
    def __init__(self, texts):
        self.texts = texts
        self.exited = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.exited = True
        return False

    @property
    def text_stream(self):
        async def gen():
            for text in self.texts:
                yield text

        return gen()


def _openai(client):
    return OpenAIProvider("sk-test", client=client)


class TestOpenAIProvider:
    async def test_stream_chat_yields_deltas_and_closes(self):
        stream = FakeOpenAIStream(["<p>", None, "hi", "</p>"])
        client = MagicMock()
        client.chat.completions.create = AsyncMock(return_value=stream)
        provider = _openai(client)

        async with provider.stream_chat("hello", "gpt-4o", "be terse") as chunks:
            received = [chunk async for chunk in chunks]

        assert received == ["<p>", "hi", "</p>"]
        assert stream.closed
        kwargs = client.chat.completions.create.await_args.kwargs
        assert kwargs["stream"] is True
        assert kwargs["messages"] == [
            {"role": "system", "content": "be terse"},
            {"role": "user", "content": "hello"},
        ]

    async def test_stream_closed_when_consumer_stops_early(self):
        stream = FakeOpenAIStream(["a", "b", "c"])
        client = MagicMock()
        client.chat.completions.create = AsyncMock(return_value=stream)

        async with _openai(client).stream_chat("hello", "gpt-4o") as chunks:
            async for _ in chunks:
                break

        assert stream.closed

    async def test_stream_open_failure_wrapped(self):
        client = MagicMock()
        client.chat.completions.create = AsyncMock(side_effect=openai.OpenAIError("upstream down"))

        with patch("canvasgate.service.providers.logger") as mock_logger:
            with pytest.raises(ProviderError) as excinfo:
                async with _openai(client).stream_chat("hello", "gpt-4o"):
                    pass

        assert excinfo.value.message == "AI provider request failed: upstream down"
        assert excinfo.value.status_code == 502
        assert mock_logger.error.call_args[0][0] == "provider_request_failed"

    async def test_mid_stream_failure_wrapped(self):
        stream = FakeOpenAIStream(["a"], error=openai.OpenAIError("connection reset"))
        client = MagicMock()
        client.chat.completions.create = AsyncMock(return_value=stream)

        received = []
        with pytest.raises(ProviderError):
            async with _openai(client).stream_chat("hello", "gpt-4o") as chunks:
                async for chunk in chunks:
                    received.append(chunk)

        assert received == ["a"]
        assert stream.closed

    async def test_complete_chat_with_image(self, tmp_path):
        image = tmp_path / "shot.png"
        image.write_bytes(PNG_BYTES)
        message = SimpleNamespace(content="<section></section>")
        client = MagicMock()
        client.chat.completions.create = AsyncMock(
            return_value=SimpleNamespace(choices=[SimpleNamespace(message=message)])
        )

        result = await _openai(client).complete_chat("convert", "gpt-4o", image_path=image)

        assert result == "<section></section>"
        content = client.chat.completions.create.await_args.kwargs["messages"][-1]["content"]
        assert content[0] == {"type": "text", "text": "convert"}
        assert content[1]["image_url"]["url"].startswith("data:image/png;base64,")

    async def test_complete_chat_without_choices(self):
        client = MagicMock()
        client.chat.completions.create = AsyncMock(return_value=SimpleNamespace(choices=[]))

        assert await _openai(client).complete_chat("convert", "gpt-4o") == ""

    async def test_generate_image_url(self):
        client = MagicMock()
        client.images.generate = AsyncMock(
            return_value=SimpleNamespace(data=[SimpleNamespace(url="https://cdn.example/i.png", b64_json=None)])
        )

        assert await _openai(client).generate_image("a cat", "dall-e-3") == "https://cdn.example/i.png"

    async def test_generate_image_inline(self):
        client = MagicMock()
        client.images.generate = AsyncMock(
            return_value=SimpleNamespace(data=[SimpleNamespace(url=None, b64_json="iVBORw0KGgo=")])
        )

        result = await _openai(client).generate_image("a cat", "gpt-image-1")

        assert result == "data:image/png;base64,iVBORw0KGgo="

    async def test_generate_image_empty_response(self):
        client = MagicMock()
        client.images.generate = AsyncMock(return_value=SimpleNamespace(data=[]))

        with pytest.raises(ProviderError):
            await _openai(client).generate_image("a cat", "dall-e-3")

    async def test_error_message_is_sanitized(self):
        client = MagicMock()
        client.images.generate = AsyncMock(
            side_effect=openai.OpenAIError("bad key sk-abcdefghijklmnopqrstuvwx")
        )

        with pytest.raises(ProviderError) as excinfo:
            await _openai(client).generate_image("a cat", "dall-e-3")

        assert "sk-abcdefghijklmnopqrstuvwx" not in excinfo.value.message


class TestAnthropicProvider:
    async def test_stream_chat(self):
        stream = FakeAnthropicStream(["<p>", "", "hi"])
        client = MagicMock()
        client.messages.stream = MagicMock(return_value=stream)
        provider = AnthropicProvider("key", client=client)

        async with provider.stream_chat("hello", "claude-sonnet-4-20250514", "be terse") as chunks:
            received = [chunk async for chunk in chunks]

        assert received == ["<p>", "hi"]
        assert stream.exited
        kwargs = client.messages.stream.call_args.kwargs
        assert kwargs["system"] == "be terse"
        assert kwargs["max_tokens"] == 4096

    async def test_stream_open_failure_wrapped(self):
        client = MagicMock()
        client.messages.stream = MagicMock(side_effect=anthropic.AnthropicError("overloaded"))

        with pytest.raises(ProviderError) as excinfo:
            async with AnthropicProvider("key", client=client).stream_chat("hello", "claude-3-5-haiku-20241022"):
                pass

        assert "overloaded" in excinfo.value.message

    async def test_complete_chat_sends_image_block(self, tmp_path):
        image = tmp_path / "shot.png"
        image.write_bytes(PNG_BYTES)
        client = MagicMock()
        client.messages.create = AsyncMock(
            return_value=SimpleNamespace(
                content=[
                    SimpleNamespace(type="text", text="<div>"),
                    SimpleNamespace(type="tool_use"),
                    SimpleNamespace(type="text", text="</div>"),
                ]
            )
        )

        result = await AnthropicProvider("key", client=client).complete_chat(
            "convert", "claude-sonnet-4-20250514", image_path=image
        )

        assert result == "<div></div>"
        content = client.messages.create.await_args.kwargs["messages"][0]["content"]
        assert content[0]["source"]["media_type"] == "image/png"
        assert content[1] == {"type": "text", "text": "convert"}

    async def test_generate_image_unsupported(self):
        with pytest.raises(ProviderError):
            await AnthropicProvider("key", client=MagicMock()).generate_image("a cat", "claude")


class TestProviderRegistry:
    def _catalog(self, **keys):
        return ModelCatalog(Settings(**keys))

    def test_from_settings_builds_configured_providers(self):
        settings = Settings(openai_api_key="sk-a", anthropic_api_key="sk-b", openrouter_api_key=None)

        registry = ProviderRegistry.from_settings(settings)

        assert registry.names == ["openai", "anthropic"]

    def test_routes_by_model_provider(self):
        openai_provider = MagicMock(name="openai")
        anthropic_provider = MagicMock(name="anthropic")
        registry = ProviderRegistry({"openai": openai_provider, "anthropic": anthropic_provider})
        catalog = self._catalog(openai_api_key="x", anthropic_api_key="y")

        assert registry.for_model(catalog.resolve("gpt-4o")) is openai_provider
        assert registry.for_model(catalog.resolve("claude-sonnet-4-20250514")) is anthropic_provider

    def test_openrouter_fallback_prefixes_model(self):
        router = MagicMock(name="openrouter")
        registry = ProviderRegistry({"openrouter": router})
        descriptor = self._catalog(openrouter_api_key="z").resolve("claude-sonnet-4-20250514")

        assert registry.for_model(descriptor) is router
        assert registry.upstream_model_id(descriptor) == "anthropic/claude-sonnet-4-20250514"

    def test_missing_credentials(self):
        registry = ProviderRegistry({"openai": MagicMock()})
        descriptor = self._catalog(openai_api_key="x").resolve("claude-3-5-haiku-20241022")

        with pytest.raises(ConfigurationError) as excinfo:
            registry.for_model(descriptor)
        assert excinfo.value.status_code == 503


class TestClientConstruction:
    def test_sdk_timeout_types(self):
        openai_provider = OpenAIProvider("sk-test", timeout_seconds=30, connect_timeout_seconds=5)
        anthropic_provider = AnthropicProvider("key", timeout_seconds=30, connect_timeout_seconds=5)

        assert isinstance(openai_provider.client.timeout, openai.Timeout)
        assert isinstance(anthropic_provider.client.timeout, anthropic.Timeout)
        assert anthropic_provider.client.timeout.connect == 5

    def test_anthropic_registry_builds_with_key(self):
        registry = ProviderRegistry.from_settings(Settings(openai_api_key=None, anthropic_api_key="k", openrouter_api_key=None))

        assert registry.names == ["anthropic"]


class TestImageEncodingOffLoop:
    async def test_image_read_runs_in_worker_thread(self, tmp_path):
        image = tmp_path / "shot.png"
        image.write_bytes(PNG_BYTES)
        client = MagicMock()
        client.messages.create = AsyncMock(return_value=SimpleNamespace(content=[]))
        to_thread = AsyncMock(return_value=("image/png", "AAAA"))

        with patch("canvasgate.service.providers.asyncio.to_thread", to_thread):
            await AnthropicProvider("key", client=client).complete_chat(
                "convert", "claude-sonnet-4-20250514", image_path=image
            )

        assert to_thread.await_args.args == (_image_part, image)
        content = client.messages.create.await_args.kwargs["messages"][0]["content"]
        assert content[0]["source"]["data"] == "AAAA"
