"""Application error taxonomy and the JSON error envelope.

Every error leaving the API is serialised as::

    {"error": {"message": "...", "status": 400, ...}}

Route handlers and services raise the ``AppError`` subclasses below;
``register_exception_handlers()`` installs the FastAPI handlers that turn
them (and framework / unexpected errors) into that envelope.
"""
from __future__ import annotations

import logging
import traceback
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from delisio.config import get_settings

logger = logging.getLogger(__name__)


class AppError(Exception):
    """Base class for errors that map to an HTTP status."""

    status_code: int = 500
    default_message: str = "Internal server error"

    def __init__(self, message: str | None = None, **extra: Any):
        self.message = message or self.default_message
        self.extra = extra
        super().__init__(self.message)


class ValidationError(AppError):
    status_code = 400
    default_message = "Invalid request"


class AuthError(AppError):
    status_code = 401
    default_message = "Authentication required"


class PaymentRequiredError(AppError):
    status_code = 402
    default_message = "Subscription limit reached"


class ForbiddenError(AppError):
    status_code = 403
    default_message = "You do not have permission to perform this action"


class NotFoundError(AppError):
    status_code = 404
    default_message = "Resource not found"


class GenerationTimeoutError(AppError):
    status_code = 408
    default_message = "The request took too long to process. Please try again."


class RateLimitedError(AppError):
    status_code = 429
    default_message = "Too many requests, please try again later"

    def __init__(self, retry_after: int, message: str | None = None):
        super().__init__(message, retryAfter=retry_after)
        self.retry_after = retry_after


class UpstreamFailure(AppError):
    """An external platform (LLM, image API, storage) failed."""
    status_code = 502
    default_message = "An upstream service failed"


class InternalError(AppError):
    status_code = 500


# ── Envelope ───────────────────────────────────────────────────────────

def error_body(message: str, status: int, **extra: Any) -> dict[str, Any]:
    body: dict[str, Any] = {"message": message, "status": status}
    body.update(extra)
    return {"error": body}


def _debug_fields(exc: BaseException) -> dict[str, Any]:
    if get_settings().is_production:
        return {}
    return {
        "type": type(exc).__name__,
        "stack": "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
    }


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        headers = None
        if isinstance(exc, RateLimitedError):
            headers = {"Retry-After": str(exc.retry_after)}
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(exc.message, exc.status_code, **exc.extra),
            headers=headers,
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "Request failed"
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(message, exc.status_code),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        details = [
            {"field": ".".join(str(p) for p in err.get("loc", ())[1:]), "message": err.get("msg", "")}
            for err in exc.errors()
        ]
        return JSONResponse(
            status_code=400,
            content=error_body("Invalid request", 400, details=details),
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error: %s", exc)
        return JSONResponse(
            status_code=500,
            content=error_body("Internal server error", 500, **_debug_fields(exc)),
        )
