"""Global exception handlers for the control-plane API.

Every error leaves the API as ``{"error": {"code", "message", "details"?,
"request_id"?}}`` with the HTTP status carried by the exception.
"""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from pier.core.exceptions import PierError
from pier.core.logging import get_logger, sanitize_error

logger = get_logger(__name__)


def get_request_id(request: Request) -> str | None:
    if hasattr(request.state, "request_id"):
        request_id: str = request.state.request_id
        return request_id
    return request.headers.get("X-Request-ID")


def build_error_response(
    error_code: str,
    message: str,
    status_code: int,
    request: Request | None = None,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    error_body: dict[str, Any] = {
        "code": error_code,
        "message": message,
    }
    if details:
        error_body["details"] = details
    if request:
        request_id = get_request_id(request)
        if request_id:
            error_body["request_id"] = request_id
    return JSONResponse(status_code=status_code, content={"error": error_body})


async def pier_exception_handler(request: Request, exc: PierError) -> JSONResponse:
    """Convert a PierError into its standard error response."""
    log_context: dict[str, Any] = {
        "error_code": exc.error_code,
        "status_code": exc.status_code,
        "path": str(request.url.path),
        "method": request.method,
    }
    if exc.details:
        log_context["details"] = exc.details

    if exc.status_code >= 500:
        logger.error(f"Request failed: {sanitize_error(exc.message)}", extra=log_context)
    else:
        logger.info(f"Client error: {exc.message}", extra=log_context)

    return build_error_response(
        error_code=exc.error_code,
        message=exc.message,
        status_code=exc.status_code,
        request=request,
        details=exc.details or None,
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return build_error_response(
        error_code="HTTP_ERROR",
        message=str(exc.detail),
        status_code=exc.status_code,
        request=request,
    )


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Report request body problems with one entry per field."""
    errors = [
        {
            "field": ".".join(str(part) for part in error.get("loc", ())) or "unknown",
            "message": error.get("msg", "Validation error"),
        }
        for error in exc.errors()
    ]
    logger.info(
        "Request validation failed",
        extra={"path": str(request.url.path), "error_count": len(errors)},
    )
    return build_error_response(
        error_code="VALIDATION_ERROR",
        message="Request validation failed",
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        request=request,
        details={"errors": errors},
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        f"Unhandled exception: {sanitize_error(exc)}",
        extra={
            "path": str(request.url.path),
            "method": request.method,
            "exception_type": type(exc).__name__,
        },
        exc_info=True,
    )
    return build_error_response(
        error_code="INTERNAL_ERROR",
        message=sanitize_error(exc),
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        request=request,
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(PierError, pier_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, validation_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, generic_exception_handler)
