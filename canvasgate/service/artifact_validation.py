from __future__ import annotations

import base64
import binascii
import re
from dataclasses import dataclass
from typing import Optional

from canvasgate.logging import get_logger
from canvasgate.service.errors import (
    InvalidEncodingError,
    PayloadTooLargeError,
    TypeMismatchError,
    UnsupportedTypeError,
)

logger = get_logger(__name__)

# Declared types accepted from clients. Anything else is rejected before decoding.
ALLOWED_IMAGE_TYPES = frozenset({"png", "jpeg", "jpg", "webp", "gif"})

# base64 inflates payloads by 4/3; the pre-check leaves room for padding and headers.
BASE64_EXPANSION_FACTOR = 1.4

DEFAULT_DECLARED_TYPE = "png"

_DATA_URI_RE = re.compile(r"^data:(?P<mime>[^;,]*)(?P<params>(?:;[^;,]*)*),(?P<data>.*)$", re.DOTALL)

_CANONICAL_TYPES = {"jpg": "jpeg"}


def _canonical(kind: str) -> str:
    return _CANONICAL_TYPES.get(kind, kind)


def matches_signature(data: bytes, kind: str) -> bool:
    """Return True when ``data`` starts with the magic bytes of ``kind``."""
    kind = _canonical(kind)
    if kind == "png":
        return data[:4] == b"\x89PNG"
    if kind == "jpeg":
        return data[:3] == b"\xff\xd8\xff"
    if kind == "gif":
        return data[:4] == b"GIF8"
    if kind == "webp":
        return len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WEBP"
    return False


def sniff_image_type(data: bytes) -> Optional[str]:
    """Identify an image format from its leading bytes alone."""
    for kind in ("png", "jpeg", "gif", "webp"):
        if matches_signature(data, kind):
            return kind
    return None


def normalize_declared_type(value: Optional[str]) -> str:
    """Reduce ``image/png``, ``PNG`` or ``.png`` to ``png``."""
    kind = (value or "").strip().lower()
    if kind.startswith("image/"):
        kind = kind[len("image/"):]
    return kind.lstrip(".")


@dataclass(frozen=True)
class ValidatedArtifact:
    """Binary payload whose content has been checked against its declared type."""

    data: bytes
    sniffed_type: str
    declared_type: str
    size_bytes: int

    @property
    def content_type(self) -> str:
        return f"image/{_canonical(self.sniffed_type)}"

    @property
    def extension(self) -> str:
        kind = _canonical(self.sniffed_type)
        return "jpg" if kind == "jpeg" else kind


class ArtifactValidator:
    """Decode and authenticate base64 image uploads.

    The declared type (from the ``data:`` URI or the caller's hint) must be
    in a closed set, and the decoded bytes must carry that type's magic-byte
    signature. A client cannot get arbitrary content accepted by labelling it
    as an image.
    """

    def __init__(self, max_size: int) -> None:
        self.max_size = max_size

    def decode(self, payload: str, declared_kind_hint: Optional[str] = None) -> ValidatedArtifact:
        if not isinstance(payload, str) or not payload.strip():
            raise InvalidEncodingError("No image data provided")

        payload = payload.strip()
        if len(payload) > self.max_size * BASE64_EXPANSION_FACTOR:
            raise PayloadTooLargeError(
                "Image is too large",
                detail={"max_bytes": self.max_size},
            )

        declared, encoded = self._split_payload(payload, declared_kind_hint)
        if declared not in ALLOWED_IMAGE_TYPES:
            raise UnsupportedTypeError(
                f"Unsupported image type: {declared or 'unknown'}",
                detail={"allowed": sorted(ALLOWED_IMAGE_TYPES)},
            )

        data = self._b64decode(encoded)
        if len(data) > self.max_size:
            raise PayloadTooLargeError(
                "Image is too large",
                detail={"max_bytes": self.max_size, "size_bytes": len(data)},
            )

        if not matches_signature(data, declared):
            sniffed = sniff_image_type(data)
            logger.warning(
                "artifact_type_mismatch",
                declared_type=declared,
                sniffed_type=sniffed,
                size_bytes=len(data),
            )
            raise TypeMismatchError(
                f"Image content does not match declared type {declared}",
                detail={"declared_type": declared, "detected_type": sniffed},
            )

        return ValidatedArtifact(
            data=data,
            sniffed_type=_canonical(declared),
            declared_type=declared,
            size_bytes=len(data),
        )

    @staticmethod
    def _split_payload(payload: str, hint: Optional[str]) -> tuple[str, str]:
        if not payload.startswith("data:"):
            return normalize_declared_type(hint) or DEFAULT_DECLARED_TYPE, payload

        match = _DATA_URI_RE.match(payload)
        if not match:
            raise InvalidEncodingError("Invalid image data URL format")
        params = [p.strip().lower() for p in match.group("params").split(";") if p.strip()]
        if "base64" not in params:
            raise InvalidEncodingError("Image data URL must be base64 encoded")

        mime = match.group("mime").strip().lower()
        if not mime.startswith("image/"):
            raise UnsupportedTypeError(
                f"Unsupported image type: {mime or 'unknown'}",
                detail={"allowed": sorted(ALLOWED_IMAGE_TYPES)},
            )
        return normalize_declared_type(mime), match.group("data")

    @staticmethod
    def _b64decode(encoded: str) -> bytes:
        compact = "".join(encoded.split())
        if not compact:
            raise InvalidEncodingError("Image data is empty")
        missing_padding = -len(compact) % 4
        if missing_padding:
            compact += "=" * missing_padding
        try:
            return base64.b64decode(compact, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise InvalidEncodingError("Image data is not valid base64") from exc
