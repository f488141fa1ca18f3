"""Error envelope rendering for the ledger API."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, cast

from fastapi.responses import JSONResponse
from service_commons.exceptions import ServiceError
from service_commons.exceptions import (
    register_exception_handlers as register_common_exception_handlers,
)
from starlette.exceptions import HTTPException as StarletteHTTPException

from escrow_ledger_service.logging import get_logger

if TYPE_CHECKING:
    from fastapi import FastAPI, Request
    from starlette.types import ExceptionHandler

__all__ = ["ServiceError", "error_response", "register_exception_handlers"]

logger = get_logger(__name__)

# Codes raised by the router itself, outside any ledger operation.
_ROUTING_ERRORS: dict[int, tuple[str, str]] = {
    404: ("NOT_FOUND", "Resource not found"),
    405: ("METHOD_NOT_ALLOWED", "Method not allowed"),
}

# Errors that point at money in an unexpected place rather than a bad request.
_ALARMING_ERRORS = frozenset({"ESCROW_INTEGRITY_VIOLATION", "GATEWAY_FAILURE"})


def error_response(
    status_code: int,
    error: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    """Build the ``{"error", "message", "details"}`` body every failure uses."""
    return JSONResponse(
        status_code=status_code,
        content={"error": error, "message": message, "details": details or {}},
    )


async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    level = logging.ERROR if exc.error in _ALARMING_ERRORS else logging.INFO
    logger.log(
        level,
        "Request rejected",
        extra={
            "error_code": exc.error,
            "status_code": exc.status_code,
            "method": request.method,
            "path": request.url.path,
        },
    )
    return error_response(exc.status_code, exc.error, exc.message, exc.details)


async def unhandled_exception_handler(request: Request, _exc: Exception) -> JSONResponse:
    logger.exception(
        "Unhandled exception",
        extra={"method": request.method, "path": request.url.path},
    )
    return error_response(500, "INTERNAL_ERROR", "An unexpected error occurred")


async def routing_error_handler(
    _request: Request,
    exc: StarletteHTTPException,
) -> JSONResponse:
    error, message = _ROUTING_ERRORS.get(exc.status_code, ("HTTP_ERROR", str(exc.detail)))
    return error_response(exc.status_code, error, message)


def register_exception_handlers(app: FastAPI) -> None:
    register_common_exception_handlers(
        app,
        ServiceError,
        service_error_handler,
        unhandled_exception_handler,
    )
    app.add_exception_handler(
        StarletteHTTPException,
        cast("ExceptionHandler", routing_error_handler),
    )
