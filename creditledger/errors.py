"""Ledger error taxonomy and structured error handlers.

Insufficient balance and idempotent replays are *not* errors; they come back
as a ``LedgerResult``. Everything here is either retryable infrastructure
trouble, a programming bug upstream, or a rejected webhook.

Every error response includes a consistent envelope:
    {
        "code": "error_code",
        "message": "Human-readable message",
        "details": null | object,
        "request_id": "uuid"
    }
"""
from __future__ import annotations

import logging

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    code = "ledger_error"
    status_code = 500


class LedgerUnavailableError(LedgerError):
    """The transactional store could not complete the unit of work.

    Safe to retry with the same idempotency key.
    """

    code = "ledger_unavailable"
    status_code = 503


class IdempotencyConflictError(LedgerError):
    """An idempotency key was reused for a different operation."""

    code = "idempotency_conflict"
    status_code = 409

    def __init__(self, idempotency_key: str, expected: dict, recorded: dict) -> None:
        self.idempotency_key = idempotency_key
        self.expected = expected
        self.recorded = recorded
        super().__init__(
            f"Idempotency key {idempotency_key!r} already recorded for a different "
            f"operation: requested {expected}, recorded {recorded}"
        )


class LedgerEntryNotFoundError(LedgerError):
    code = "entry_not_found"
    status_code = 404


class ProviderUnavailableError(LedgerError):
    """Billing provider timed out or answered with a retryable status."""

    code = "provider_unavailable"
    status_code = 503


class ProviderError(LedgerError):
    """Billing provider rejected the request."""

    code = "provider_error"
    status_code = 502


class WebhookSignatureError(LedgerError):
    code = "invalid_signature"
    status_code = 400


def _get_request_id(request: Request) -> str:
    """Extract request_id set by ObservabilityMiddleware."""
    return getattr(request.state, "request_id", "unknown")


def _error_payload(
    code: str, message: str, details: object, request_id: str
) -> dict:
    return {
        "code": code,
        "message": message,
        "details": details,
        "request_id": request_id,
    }


def register_error_handlers(app: object) -> None:
    @app.exception_handler(HTTPException)  # type: ignore[arg-type]
    async def http_exception_handler(
        request: Request, exc: HTTPException
    ) -> JSONResponse:
        request_id = _get_request_id(request)
        detail = exc.detail
        code = f"http_{exc.status_code}"
        message = "Request failed"
        details = None
        if isinstance(detail, dict):
            code = detail.get("code", code)
            message = detail.get("message", message)
            details = detail.get("details")
        elif isinstance(detail, str):
            message = detail
        else:
            details = detail
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_payload(code, message, details, request_id),
        )

    @app.exception_handler(LedgerError)  # type: ignore[arg-type]
    async def ledger_exception_handler(
        request: Request, exc: LedgerError
    ) -> JSONResponse:
        request_id = _get_request_id(request)
        details = None
        if isinstance(exc, IdempotencyConflictError):
            logger.error(
                "Idempotency conflict on %s %s: %s",
                request.method,
                request.url.path,
                exc,
                extra={
                    "request_id": request_id,
                    "idempotency_key": exc.idempotency_key,
                },
            )
            details = {"expected": exc.expected, "recorded": exc.recorded}
        elif exc.status_code >= 500:
            logger.warning(
                "%s on %s %s: %s",
                exc.code,
                request.method,
                request.url.path,
                exc,
                extra={"request_id": request_id},
            )
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_payload(exc.code, str(exc), details, request_id),
        )

    @app.exception_handler(RequestValidationError)  # type: ignore[arg-type]
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        request_id = _get_request_id(request)
        logger.warning(
            "Validation error on %s %s: %s",
            request.method,
            request.url.path,
            exc.errors(),
            extra={"request_id": request_id},
        )
        return JSONResponse(
            status_code=422,
            content=_error_payload(
                "validation_error",
                "Validation error",
                exc.errors(),
                request_id,
            ),
        )

    @app.exception_handler(Exception)  # type: ignore[arg-type]
    async def unhandled_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        request_id = _get_request_id(request)
        logger.exception(
            "Unhandled exception on %s %s",
            request.method,
            request.url.path,
            extra={"request_id": request_id},
        )
        return JSONResponse(
            status_code=500,
            content=_error_payload(
                "internal_error",
                "Internal server error",
                None,
                request_id,
            ),
        )
