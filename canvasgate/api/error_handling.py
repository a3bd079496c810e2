from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from canvasgate.api.schemas import ErrorBody
from canvasgate.logging import get_correlation_id, get_logger
from canvasgate.service.errors import RateLimitedError, ServiceError
from canvasgate.service.fs import PathTraversalError

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "bad_request",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    422: "validation_error",
    429: "rate_limited",
    502: "provider_error",
    503: "not_configured",
    500: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    headers: dict | None = None,
) -> JSONResponse:
    """Render the JSON error body shared by every endpoint."""
    body = ErrorBody(
        error=message,
        code=code or _error_code_for_status(status_code),
        request_id=get_correlation_id(),
        details=details or None,
    )
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(exclude_none=True),
        headers=headers,
    )


def _validation_details(exc: RequestValidationError) -> list:
    details = []
    for error in exc.errors():
        details.append(
            {
                "loc": [str(part) for part in error.get("loc", ())],
                "msg": error.get("msg"),
                "type": error.get("type"),
            }
        )
    return details


def register_exception_handlers(app: FastAPI) -> None:
    """Install consistent JSON error handlers for the gateway."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 and exc.status_code != 503 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
            detail=exc.detail,
        )
        headers = None
        if isinstance(exc, RateLimitedError) and exc.detail.get("retry_after"):
            headers = {"Retry-After": str(exc.detail["retry_after"])}
        return _error_response(
            exc.status_code, exc.message, exc.detail, code=exc.error_code, headers=headers
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        details = _validation_details(exc)
        logger.warning(
            "request_malformed",
            path=request.url.path,
            method=request.method,
            validation_errors=details,
        )
        return _error_response(400, "Malformed request", details, code="bad_request")

    @app.exception_handler(PathTraversalError)
    async def handle_path_traversal_error(request: Request, exc: PathTraversalError):
        logger.warning(
            "path_traversal_attempt",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            client_ip=request.client.host if request.client else None,
        )
        return _error_response(400, str(exc), code="bad_request")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        details = exc.detail if isinstance(exc.detail, (dict, list)) else None
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(exc.status_code, message, details, headers=exc.headers)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(500, "internal server error", code="server_error")
