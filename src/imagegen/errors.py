"""Exception hierarchy shared by services and API routers.

Every error carries the HTTP status it maps to and a short machine-readable
``code``.  ``register_exception_handlers`` renders them as
``{"error": code, "detail": message, **extra}``.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

log = structlog.get_logger()


class ImageGenError(Exception):
    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str = "", **extra: Any) -> None:
        super().__init__(message)
        self.message = message or self.code
        self.extra = extra

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "detail": self.message, **self.extra}


class ValidationError(ImageGenError):
    status_code = 400
    code = "validation_error"


class AuthenticationError(ImageGenError):
    status_code = 401
    code = "unauthorized"


class InsufficientCreditsError(ImageGenError):
    """Balance too low for a debit. Carries ``required`` and ``available``."""

    status_code = 402
    code = "insufficient_credits"

    def __init__(self, required: int, available: int) -> None:
        super().__init__(
            "Insufficient credits", required=required, available=available
        )
        self.required = required
        self.available = available


class NotFoundError(ImageGenError):
    status_code = 404
    code = "not_found"


class ConflictError(ImageGenError):
    status_code = 409
    code = "conflict"


class RetryableProviderError(ImageGenError):
    """Transient provider failure: connection refused, 429 or 5xx."""

    status_code = 503
    code = "provider_unavailable"


class ProviderTimeoutError(RetryableProviderError):
    """The request may have reached the provider; only safe to retry with an idempotency key."""

    code = "provider_timeout"


class TerminalProviderError(ImageGenError):
    status_code = 502
    code = "provider_error"


class StorageError(ImageGenError):
    status_code = 502
    code = "storage_error"


class UnknownTaskError(NotFoundError):
    code = "unknown_task"


class PaymentVerificationError(ImageGenError):
    status_code = 400
    code = "payment_verification_failed"


async def _imagegen_error_handler(request: Request, exc: ImageGenError) -> JSONResponse:
    if exc.status_code >= 500:
        log.warning(
            "request_failed",
            path=request.url.path,
            error_code=exc.code,
            error=exc.message,
        )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ImageGenError, _imagegen_error_handler)
