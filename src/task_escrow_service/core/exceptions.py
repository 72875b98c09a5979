"""Service error taxonomy and FastAPI exception handlers."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, cast

from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from task_escrow_service.logging import get_logger

if TYPE_CHECKING:
    from fastapi import FastAPI, Request
    from starlette.types import ExceptionHandler

__all__ = [
    "BlockchainError",
    "DependencyError",
    "ForbiddenError",
    "InvalidOperationError",
    "InvalidStateError",
    "NotFoundError",
    "ServiceError",
    "ValidationError",
    "register_exception_handlers",
]


class ServiceError(Exception):
    """
    Error carried to the HTTP layer as ``{"error", "message", "details"}``.

    ``error`` is a stable machine-readable code, ``status_code`` the HTTP
    status the exception handler responds with.
    """

    def __init__(
        self,
        error: str,
        message: str,
        status_code: int,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.error = error
        self.message = message
        self.status_code = status_code
        self.details: dict[str, Any] = details if details is not None else {}


class _FixedStatusError(ServiceError):
    """ServiceError whose status code is fixed by its class."""

    default_status_code = 500

    def __init__(self, error: str, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(error, message, self.default_status_code, details)


class ValidationError(_FixedStatusError):
    """Bad input. Never retried."""

    default_status_code = 400


class InvalidOperationError(_FixedStatusError):
    """Operation that is never allowed for this caller, e.g. self-evaluation."""

    default_status_code = 400


class ForbiddenError(_FixedStatusError):
    """Caller is not authorized for the resource."""

    default_status_code = 403


class NotFoundError(_FixedStatusError):
    """Referenced resource does not exist."""

    default_status_code = 404


class InvalidStateError(_FixedStatusError):
    """State-machine violation or lost optimistic-concurrency race; re-fetch and retry."""

    default_status_code = 409


class BlockchainError(_FixedStatusError):
    """Ledger call failed, reverted, timed out, or left an unexpected on-chain status."""

    default_status_code = 502


class DependencyError(_FixedStatusError):
    """Data store, identity provider, or split-processing failure."""

    default_status_code = 502


async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    """Handle ServiceError exceptions."""
    logger = get_logger(__name__)
    logger.warning(
        "Service error",
        extra={
            "error_code": exc.error,
            "status_code": exc.status_code,
            "path": str(request.url.path),
        },
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.error, "message": exc.message, "details": exc.details},
    )


async def unhandled_exception_handler(request: Request, _exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    logger = get_logger(__name__)
    logger.exception("Unhandled exception", extra={"path": str(request.url.path)})
    return JSONResponse(
        status_code=500,
        content={
            "error": "INTERNAL_ERROR",
            "message": "An unexpected error occurred",
            "details": {},
        },
    )


async def http_exception_handler(
    _request: Request,
    exc: StarletteHTTPException,
) -> JSONResponse:
    """Handle Starlette HTTP exceptions (e.g., 404/405 from the router)."""
    if exc.status_code == 405:
        return JSONResponse(
            status_code=405,
            content={
                "error": "METHOD_NOT_ALLOWED",
                "message": "Method not allowed",
                "details": {},
            },
        )
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": "HTTP_ERROR",
            "message": str(exc.detail),
            "details": {},
        },
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers on the app."""
    app.add_exception_handler(ServiceError, cast("ExceptionHandler", service_error_handler))
    app.add_exception_handler(Exception, unhandled_exception_handler)
    app.add_exception_handler(
        StarletteHTTPException,
        cast("ExceptionHandler", http_exception_handler),
    )
