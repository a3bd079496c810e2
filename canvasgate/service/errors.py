from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for gateway exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code that clients can branch on:
    - bad_request (400)
    - validation_error and its artifact variants (422)
    - forbidden, feature_disabled, origin_rejected (403)
    - rate_limited (429)
    - provider_error and fetch failures (502)
    - not_configured (503)
    """

    status_code: int = 400
    error_code: str = "bad_request"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class BadRequestError(ServiceError):
    """Request is malformed (400)."""
    status_code = 400
    error_code = "bad_request"


class ValidationError(ServiceError):
    """Request was well-formed but failed validation (422)."""
    status_code = 422
    error_code = "validation_error"


class ArtifactValidationError(ValidationError):
    """An uploaded or downloaded binary payload was rejected."""


class InvalidEncodingError(ArtifactValidationError):
    error_code = "invalid_encoding"


class UnsupportedTypeError(ArtifactValidationError):
    error_code = "unsupported_type"


class PayloadTooLargeError(ArtifactValidationError):
    error_code = "too_large"


class TypeMismatchError(ArtifactValidationError):
    error_code = "type_mismatch"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class FeatureDisabledError(ForbiddenError):
    """The requested capability is administratively disabled (403)."""
    error_code = "feature_disabled"


class OriginRejectedError(ForbiddenError):
    """Cross-origin request to a streaming endpoint (403)."""
    error_code = "origin_rejected"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ConfigurationError(ServiceError):
    """No provider credentials available for the request (503)."""
    status_code = 503
    error_code = "not_configured"


class ProviderError(ServiceError):
    """Upstream model provider failed (502)."""
    status_code = 502
    error_code = "provider_error"


class RemoteFetchError(ServiceError):
    """Downloading a provider-generated asset failed (502)."""
    status_code = 502
    error_code = "fetch_failed"


class InvalidSchemeError(RemoteFetchError):
    error_code = "invalid_scheme"


class DownloadTooLargeError(RemoteFetchError):
    error_code = "download_too_large"


class InvalidContentTypeError(RemoteFetchError):
    error_code = "invalid_content_type"


__all__ = [
    "ServiceError",
    "BadRequestError",
    "ValidationError",
    "ArtifactValidationError",
    "InvalidEncodingError",
    "UnsupportedTypeError",
    "PayloadTooLargeError",
    "TypeMismatchError",
    "ForbiddenError",
    "FeatureDisabledError",
    "OriginRejectedError",
    "RateLimitedError",
    "ConfigurationError",
    "ProviderError",
    "RemoteFetchError",
    "InvalidSchemeError",
    "DownloadTooLargeError",
    "InvalidContentTypeError",
]
