from __future__ import annotations

from dataclasses import dataclass, field
from typing import FrozenSet, List, Optional

from canvasgate.config import ProviderName, Settings, configured_providers


@dataclass(frozen=True)
class ModelDescriptor:
    """Read-only description of a model the editor can pick."""

    id: str
    provider: str
    name: str
    input_modalities: FrozenSet[str] = field(default_factory=lambda: frozenset({"text"}))
    output_modalities: FrozenSet[str] = field(default_factory=lambda: frozenset({"text"}))

    @property
    def supports_vision(self) -> bool:
        return "image" in self.input_modalities

    @property
    def kind(self) -> str:
        return "image" if "image" in self.output_modalities else "text"

    def as_json(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "provider": self.provider,
            "input_modalities": sorted(self.input_modalities),
            "output_modalities": sorted(self.output_modalities),
            "supports_vision": self.supports_vision,
        }


_TEXT_AND_IMAGE_IN = frozenset({"text", "image"})
_TEXT = frozenset({"text"})
_IMAGE = frozenset({"image"})

DEFAULT_TEXT_MODELS = (
    ModelDescriptor("gpt-4o", ProviderName.OPENAI.value, "GPT-4o", _TEXT_AND_IMAGE_IN, _TEXT),
    ModelDescriptor("gpt-4o-mini", ProviderName.OPENAI.value, "GPT-4o Mini", _TEXT_AND_IMAGE_IN, _TEXT),
    ModelDescriptor(
        "claude-sonnet-4-20250514",
        ProviderName.ANTHROPIC.value,
        "Claude Sonnet 4",
        _TEXT_AND_IMAGE_IN,
        _TEXT,
    ),
    ModelDescriptor(
        "claude-3-5-haiku-20241022",
        ProviderName.ANTHROPIC.value,
        "Claude 3.5 Haiku",
        _TEXT_AND_IMAGE_IN,
        _TEXT,
    ),
)

DEFAULT_IMAGE_MODELS = (
    ModelDescriptor("dall-e-3", ProviderName.OPENAI.value, "DALL-E 3", _TEXT, _IMAGE),
    ModelDescriptor("gpt-image-1", ProviderName.OPENAI.value, "GPT Image 1", _TEXT, _IMAGE),
)


def infer_provider(model_id: str) -> str:
    lowered = model_id.lower()
    if lowered.startswith("claude"):
        return ProviderName.ANTHROPIC.value
    if "/" in lowered:
        return ProviderName.OPENROUTER.value
    return ProviderName.OPENAI.value


class ModelCatalog:
    """Models available to the editor, filtered to configured providers."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._known = {m.id: m for m in DEFAULT_TEXT_MODELS + DEFAULT_IMAGE_MODELS}

    def _available(self, models) -> List[ModelDescriptor]:
        providers = set(configured_providers(self.settings))
        # OpenRouter proxies every listed model through one key
        if ProviderName.OPENROUTER.value in providers:
            return list(models)
        return [m for m in models if m.provider in providers]

    def text_models(self) -> List[ModelDescriptor]:
        return self._available(DEFAULT_TEXT_MODELS)

    def image_models(self) -> List[ModelDescriptor]:
        return self._available(DEFAULT_IMAGE_MODELS)

    def vision_models(self) -> List[ModelDescriptor]:
        return [m for m in self.text_models() if m.supports_vision]

    @property
    def default_text_model(self) -> str:
        return self.settings.default_text_model

    @property
    def default_image_model(self) -> str:
        return self.settings.default_image_model

    @property
    def default_vision_model(self) -> str:
        return self.settings.default_vision_model

    def resolve(self, model_id: Optional[str], *, default: Optional[str] = None) -> ModelDescriptor:
        """Look up ``model_id`` (or ``default``); unknown ids are inferred."""
        chosen = (model_id or "").strip() or (default or "").strip()
        if not chosen:
            chosen = self.default_text_model
        known = self._known.get(chosen)
        if known is not None:
            return known
        return ModelDescriptor(
            id=chosen,
            provider=infer_provider(chosen),
            name=chosen,
            input_modalities=_TEXT_AND_IMAGE_IN,
            output_modalities=_TEXT,
        )
