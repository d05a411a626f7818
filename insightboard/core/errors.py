"""
core/errors.py

Typed error taxonomy for the authorization pipeline plus the FastAPI
handlers that render it.

Every error leaves the service as the same envelope:
    {"error": "<MACHINE_CODE>", "message": "<human text>", "details": {...}?}

Usage:
    # In main.py
    from insightboard.core.errors import register_exception_handlers
    register_exception_handlers(app)
"""

import logging
import traceback
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from insightboard.core.config import get_settings

logger = logging.getLogger(__name__)


class AppError(Exception):
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_code: str = "INTERNAL_ERROR"
    default_message: str = "An unexpected error occurred."

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        details: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        error_code: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> None:
        self.message = message or self.default_message
        self.details = details
        self.headers = headers
        if error_code:
            self.error_code = error_code
        if status_code:
            self.status_code = status_code
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.error_code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class Unauthenticated(AppError):
    status_code = status.HTTP_401_UNAUTHORIZED
    error_code = "UNAUTHORIZED"
    default_message = "Authentication required."


class UserInactive(AppError):
    status_code = status.HTTP_403_FORBIDDEN
    error_code = "ACCOUNT_INACTIVE"
    default_message = "This account has been deactivated."


class Forbidden(AppError):
    status_code = status.HTTP_403_FORBIDDEN
    error_code = "FORBIDDEN"
    default_message = "Forbidden"


class RateLimited(AppError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    error_code = "RATE_LIMITED"
    default_message = "Too many requests. Please try again later."

    def __init__(self, retry_after: int, message: Optional[str] = None) -> None:
        self.retry_after = max(1, int(retry_after))
        super().__init__(
            message,
            details={"retry_after": self.retry_after},
            headers={"Retry-After": str(self.retry_after)},
        )


class IPBlocked(AppError):
    status_code = status.HTTP_403_FORBIDDEN
    error_code = "IP_BLOCKED"
    default_message = "Access Denied"


class AlreadyBlacklisted(AppError):
    status_code = status.HTTP_409_CONFLICT
    error_code = "ALREADY_BLACKLISTED"
    default_message = "IP address is already blacklisted."


class ValidationFailed(AppError):
    status_code = status.HTTP_400_BAD_REQUEST
    error_code = "VALIDATION_ERROR"
    default_message = "Request validation failed."


class NotFound(AppError):
    status_code = status.HTTP_404_NOT_FOUND
    error_code = "NOT_FOUND"
    default_message = "Resource not found."


class Conflict(AppError):
    status_code = status.HTTP_409_CONFLICT
    error_code = "CONFLICT"
    default_message = "Resource conflict."


class TransientError(AppError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    error_code = "SERVICE_UNAVAILABLE"
    default_message = "A backing service is temporarily unavailable."


def error_response(exc: AppError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=exc.headers)


def _field_errors(exc: RequestValidationError) -> Dict[str, str]:
    fields: Dict[str, str] = {}
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path")]
        fields[".".join(loc) or "request"] = err.get("msg", "invalid")
    return fields


def register_exception_handlers(app: FastAPI) -> None:
    """Register the application's exception handlers on the FastAPI app."""
    settings = get_settings()

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        if exc.status_code >= 500:
            logger.error(f"{exc.error_code} on {request.method} {request.url.path}: {exc.message}")
        return error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return error_response(ValidationFailed(details={"fields": _field_errors(exc)}))

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """
        Catch-all handler for unhandled exceptions.
        Stack traces stay server-side; the client sees detail only in debug.
        """
        logger.error(
            f"Unhandled exception on {request.method} {request.url.path}:\n"
            f"{traceback.format_exc()}"
        )
        content = {"error": "INTERNAL_ERROR", "message": "An unexpected error occurred."}
        if settings.debug:
            content["details"] = {"error_type": type(exc).__name__, "detail": str(exc)}
        return JSONResponse(status_code=500, content=content)
