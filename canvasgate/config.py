from __future__ import annotations

import os
from enum import Enum
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator


class Capability(str, Enum):
    """Independently feature-flagged generation capabilities."""

    TEXT = "text"
    IMAGE = "image"
    SCREENSHOT = "screenshot"


class EditMode(str, Enum):
    """Whether the editor asks for a whole page section or edits one element."""

    PAGE = "page"
    ELEMENT = "element"


class ProviderName(str, Enum):
    """Model providers the gateway can hold credentials for."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    OPENROUTER = "openrouter"


class CssFramework(str, Enum):
    TAILWIND = "tailwind"
    BOOTSTRAP5 = "bootstrap5"
    NONE = "none"


# Hosts the OpenAI image endpoints hand out result URLs from.
DEFAULT_IMAGE_HOST_ALLOWLIST = [
    "oaidalleapiprodscus.blob.core.windows.net",
    "*.blob.core.windows.net",
    "*.openai.com",
    "*.oaiusercontent.com",
]


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the generation gateway."""

    # Provider credentials
    openai_api_key: str | None = env_field(None, "OPENAI_API_KEY")
    openai_base_url: str | None = env_field(None, "OPENAI_BASE_URL")
    anthropic_api_key: str | None = env_field(None, "ANTHROPIC_API_KEY")
    openrouter_api_key: str | None = env_field(None, "OPENROUTER_API_KEY")
    openrouter_base_url: str = env_field(
        "https://openrouter.ai/api/v1", "OPENROUTER_BASE_URL"
    )

    # Capability flags
    text_enabled: bool = env_field(True, "AI_TEXT_ENABLED")
    image_enabled: bool = env_field(True, "AI_IMAGE_ENABLED")
    screenshot_enabled: bool = env_field(True, "AI_SCREENSHOT_ENABLED")

    # Defaults
    default_text_model: str = env_field("gpt-4o-mini", "AI_DEFAULT_TEXT_MODEL")
    default_image_model: str = env_field("dall-e-3", "AI_DEFAULT_IMAGE_MODEL")
    default_vision_model: str = env_field("gpt-4o", "AI_DEFAULT_VISION_MODEL")
    css_framework: str = env_field(
        CssFramework.TAILWIND.value,
        "CSS_FRAMEWORK",
        description="tailwind, bootstrap5, or anything else for vanilla CSS",
    )

    # Streaming budget
    stream_timeout_seconds: float = env_field(300.0, "STREAM_TIMEOUT_SECONDS")
    stream_idle_timeout_seconds: float = env_field(60.0, "STREAM_IDLE_TIMEOUT_SECONDS")
    max_response_bytes: int = env_field(1024 * 1024, "MAX_RESPONSE_BYTES")

    # Upload / download bounds
    max_upload_bytes: int = env_field(10 * 1024 * 1024, "MAX_UPLOAD_BYTES")
    max_download_bytes: int = env_field(20 * 1024 * 1024, "MAX_DOWNLOAD_BYTES")
    fetch_timeout_seconds: float = env_field(30.0, "FETCH_TIMEOUT_SECONDS")
    image_host_allowlist: List[str] = env_field(
        DEFAULT_IMAGE_HOST_ALLOWLIST, "IMAGE_HOST_ALLOWLIST"
    )
    image_host_allowlist_enforce: bool = env_field(
        False,
        "IMAGE_HOST_ALLOWLIST_ENFORCE",
        description="Fail downloads from hosts outside the allowlist instead of only warning",
    )

    # Provider client timeouts
    provider_request_timeout_seconds: float = env_field(
        120.0, "PROVIDER_REQUEST_TIMEOUT_SECONDS"
    )
    provider_connect_timeout_seconds: float = env_field(
        10.0, "PROVIDER_CONNECT_TIMEOUT_SECONDS"
    )

    # Rate limits
    rate_limit_window_seconds: int = env_field(60, "RATE_LIMIT_WINDOW_SECONDS")
    chat_rate_limit_per_minute: int = env_field(30, "AI_CHAT_RATE_LIMIT_PER_MINUTE")
    image_rate_limit_per_minute: int = env_field(10, "AI_IMAGE_RATE_LIMIT_PER_MINUTE")
    screenshot_rate_limit_per_minute: int = env_field(
        10, "AI_SCREENSHOT_RATE_LIMIT_PER_MINUTE"
    )

    # Infrastructure
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(False, "TEST_MODE")
    shared_fs_root: str = env_field("/srv/canvasgate", "SHARED_FS_ROOT")
    media_url_prefix: str = env_field("/media", "MEDIA_URL_PREFIX")
    trust_forwarded_for: bool = env_field(False, "TRUST_FORWARDED_FOR")
    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("image_host_allowlist", "cors_allow_origins", mode="before")
    @classmethod
    def _split_csv(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator(
        "openai_api_key", "anthropic_api_key", "openrouter_api_key", mode="before"
    )
    @classmethod
    def _blank_key_is_missing(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("css_framework")
    @classmethod
    def _normalize_framework(cls, value: str) -> str:
        return (value or "").strip().lower()

    @field_validator("max_response_bytes", "max_upload_bytes", "max_download_bytes")
    @classmethod
    def _positive_size(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("size limits must be positive")
        return value

    def rate_limits(self) -> dict[str, int]:
        """Per-namespace request quota for one rate-limit window."""
        return {
            rate_limit_namespace(Capability.TEXT): self.chat_rate_limit_per_minute,
            rate_limit_namespace(Capability.IMAGE): self.image_rate_limit_per_minute,
            rate_limit_namespace(Capability.SCREENSHOT): self.screenshot_rate_limit_per_minute,
        }


def rate_limit_namespace(capability: Capability) -> str:
    return {
        Capability.TEXT: "ai_chat",
        Capability.IMAGE: "ai_image",
        Capability.SCREENSHOT: "ai_screenshot",
    }[capability]


def configured_providers(settings: Settings) -> list[str]:
    """Providers with credentials present, in a stable order."""
    providers = []
    if settings.openai_api_key:
        providers.append(ProviderName.OPENAI.value)
    if settings.anthropic_api_key:
        providers.append(ProviderName.ANTHROPIC.value)
    if settings.openrouter_api_key:
        providers.append(ProviderName.OPENROUTER.value)
    return providers


def is_configured(settings: Settings) -> bool:
    return bool(configured_providers(settings))


def capability_enabled(settings: Settings, capability: Capability) -> bool:
    """A capability is usable only when credentials exist and its flag is on."""
    if not is_configured(settings):
        return False
    flags = {
        Capability.TEXT: settings.text_enabled,
        Capability.IMAGE: settings.image_enabled,
        Capability.SCREENSHOT: settings.screenshot_enabled,
    }
    return bool(flags[capability])


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
