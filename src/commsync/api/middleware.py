"""API error handling: consistent ``{"error": {"code", "message"}}`` responses.

Status code mapping:
- ``DatabaseUnavailableError`` → 503 Service Unavailable
- ``CommunicationsSyncError`` → 502 Bad Gateway (provider could not be read)
- ``ValueError`` → 400 Bad Request
- Any other ``Exception`` → 500 Internal Server Error
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.middleware.base import BaseHTTPMiddleware

from commsync.db import DatabaseUnavailableError
from commsync.sync.errors import CommunicationsSyncError

logger = logging.getLogger(__name__)


class ErrorDetail(BaseModel):
    code: str
    message: str


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    error: ErrorDetail


def error_response(status_code: int, code: str, message: str) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message))
    return JSONResponse(status_code=status_code, content=body.model_dump())


async def _handle_database_unavailable(
    request: Request,
    exc: DatabaseUnavailableError,
) -> JSONResponse:
    logger.error("Database unavailable on %s %s: %s", request.method, request.url.path, exc)
    return error_response(503, "DATABASE_UNAVAILABLE", str(exc))


async def _handle_sync_error(
    request: Request,
    exc: CommunicationsSyncError,
) -> JSONResponse:
    logger.warning("Sync failed on %s: %s", request.url.path, exc)
    return error_response(502, "SYNC_FAILED", str(exc))


async def _handle_value_error(
    request: Request,
    exc: ValueError,
) -> JSONResponse:
    """Return 400 for validation / value errors."""
    logger.info("Validation error: %s", exc)
    return error_response(400, "VALIDATION_ERROR", str(exc))


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """Convert any unhandled exception into the standard 500 envelope."""

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception:
            logger.error(
                "Unhandled exception on %s %s",
                request.method,
                request.url.path,
                exc_info=True,
            )
            return error_response(500, "INTERNAL_ERROR", "Internal server error")


def register_error_handlers(app: FastAPI) -> None:
    """Attach all exception handlers to the FastAPI application."""
    app.add_exception_handler(DatabaseUnavailableError, _handle_database_unavailable)  # type: ignore[arg-type]
    app.add_exception_handler(CommunicationsSyncError, _handle_sync_error)  # type: ignore[arg-type]
    app.add_exception_handler(ValueError, _handle_value_error)  # type: ignore[arg-type]
    app.add_middleware(CatchAllErrorMiddleware)
