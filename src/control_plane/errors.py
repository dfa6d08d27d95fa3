"""Application error taxonomy and FastAPI exception handlers.

Every error renders as ``{"error": {"code", "message", "details"}}``.
"""

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from control_plane.config import get_settings

logger = logging.getLogger("control-plane.errors")


# =============================================================================
# Error Classes
# =============================================================================


class AppError(Exception):
    """Base class for errors that map onto an HTTP response."""

    def __init__(
        self,
        message: str,
        code: str = "INTERNAL_ERROR",
        status_code: int = 500,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return {"error": body}


class ValidationError(AppError):
    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, "VALIDATION_ERROR", 400, details)


class AuthenticationError(AppError):
    def __init__(self, message: str = "Authentication required"):
        super().__init__(message, "AUTHENTICATION_ERROR", 401)


class AuthorizationError(AppError):
    def __init__(self, message: str = "Permission denied"):
        super().__init__(message, "AUTHORIZATION_ERROR", 403)


class NotFoundError(AppError):
    def __init__(self, resource: str = "Resource"):
        super().__init__(f"{resource} not found", "NOT_FOUND", 404)


class ConflictError(AppError):
    def __init__(self, message: str):
        super().__init__(message, "CONFLICT", 409)


class InsufficientCreditsError(AppError):
    """Raised when a prepaid balance cannot cover a charge."""

    def __init__(self, required_cents: int, available_cents: int):
        super().__init__(
            f"Insufficient credits: {required_cents} cents required, "
            f"{available_cents} cents available",
            "INSUFFICIENT_CREDITS",
            402,
            {"required_cents": required_cents, "available_cents": available_cents},
        )


class RateLimitError(AppError):
    def __init__(self, retry_after_seconds: int | None = None):
        super().__init__(
            "Too many requests",
            "RATE_LIMIT_EXCEEDED",
            429,
            {"retry_after_seconds": retry_after_seconds}
            if retry_after_seconds is not None
            else None,
        )
        self.retry_after_seconds = retry_after_seconds


class ExternalServiceError(AppError):
    """Failure talking to Stripe, VAPI, Retell or another upstream."""

    def __init__(
        self,
        service: str,
        message: str,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(f"{service} error: {message}", "EXTERNAL_SERVICE_ERROR", 502, details)
        self.service = service
        # Upstream status, used by the retry helper
        self.upstream_status = status_code


# =============================================================================
# Handlers
# =============================================================================


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Render an AppError."""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code} {exc.message}")
    headers = None
    if isinstance(exc, RateLimitError) and exc.retry_after_seconds is not None:
        headers = {"Retry-After": str(exc.retry_after_seconds)}
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Render anything else as a generic 500, logging the traceback."""
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    message = "An unexpected error occurred"
    if not get_settings().is_production:
        message = str(exc) or message
    return JSONResponse(
        status_code=500,
        content={"error": {"code": "INTERNAL_ERROR", "message": message}},
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
