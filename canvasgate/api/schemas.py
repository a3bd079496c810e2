from __future__ import annotations

from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field

# Bodies are type-checked here; length caps are enforced by the gateway after
# the configuration, feature-flag and rate-limit checks.


class ErrorBody(BaseModel):
    error: str
    code: str
    request_id: Optional[str] = None
    details: Optional[Any] = None


class ChatRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    prompt: Optional[str] = None
    model: Optional[str] = None
    mode: Optional[str] = None
    current_html: Optional[str] = None


class ImageRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    prompt: Optional[str] = None
    model: Optional[str] = None


class ScreenshotRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    screenshot: Optional[str] = Field(
        None, description="data:image/<type>;base64,... URI or raw base64"
    )
    screenshot_type: Optional[str] = Field(
        None, description="Declared type for raw base64 payloads"
    )
    model: Optional[str] = None
    additional_prompt: Optional[str] = None


class StoredImage(BaseModel):
    id: str
    url: str
    filename: str
    content_type: str
    size_bytes: int
    alt: str = ""


class ImageResponse(BaseModel):
    success: bool = True
    image: StoredImage
    url: str


class ScreenshotResponse(BaseModel):
    success: bool = True
    html: str


class ModelInfo(BaseModel):
    id: str
    name: str
    provider: str
    input_modalities: List[str]
    output_modalities: List[str]
    supports_vision: bool


class ModelsResponse(BaseModel):
    text: List[ModelInfo]
    image: List[ModelInfo]
    vision: List[ModelInfo]
    default_text: str
    default_image: str
    default_vision: str


class StatusResponse(BaseModel):
    configured: bool
    providers: List[str]
    text_enabled: bool
    image_enabled: bool
    screenshot_enabled: bool
