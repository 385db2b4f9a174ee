"""Error taxonomy shared by the services and the HTTP boundary.

Services raise the typed errors below; ``register_exception_handlers``
turns them (and FastAPI's own errors) into the response envelope
``{"success": false, "message": ...}``.
"""
import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from library_api.core.config import settings

logger = logging.getLogger(__name__)


class LibraryError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None, **extra: Any):
        self.message = message or self.default_message
        self.extra = extra
        super().__init__(self.message)


class ValidationFailed(LibraryError):
    status_code = 400
    default_message = "Invalid request"


class InvalidState(LibraryError):
    status_code = 400
    default_message = "Operation not allowed in the current state"


class AuthenticationFailed(LibraryError):
    status_code = 401
    default_message = "Authentication required"


class Forbidden(LibraryError):
    status_code = 403
    default_message = "Access denied"


class NotFound(LibraryError):
    status_code = 404
    default_message = "Resource not found"


class Conflict(LibraryError):
    status_code = 409
    default_message = "Request conflicts with the current state"


class RateLimited(LibraryError):
    status_code = 429
    default_message = "Rate limit exceeded"

    def __init__(self, message: Optional[str] = None, headers: Optional[Dict[str, str]] = None, **extra: Any):
        super().__init__(message, **extra)
        self.headers = headers or {}


def envelope(message: str, success: bool = True, **fields: Any) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": success, "message": message}
    body.update({k: v for k, v in fields.items() if v is not None})
    return body


def _error_response(status_code: int, message: str, headers=None, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code,
                        content=envelope(message, success=False, **extra),
                        headers=headers)


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(LibraryError)
    async def handle_library_error(request: Request, exc: LibraryError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        headers = getattr(exc, "headers", None)
        return _error_response(exc.status_code, exc.message, headers=headers, **exc.extra)

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        return _error_response(exc.status_code, str(exc.detail), headers=getattr(exc, "headers", None))

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        errors = [
            {"field": ".".join(str(p) for p in err.get("loc", ()) if p != "body"), "error": err.get("msg")}
            for err in exc.errors()
        ]
        return _error_response(400, "Validation failed", errors=errors)

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        if settings.debug:
            return _error_response(500, "Internal server error", error=str(exc))
        return _error_response(500, "Internal server error")
