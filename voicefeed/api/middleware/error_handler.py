"""
Global error handling for the FastAPI application.

Catches VoiceFeedError subclasses, Pydantic validation errors, and
unhandled exceptions, converting them into one JSON envelope:
``{"detail": ..., "code": ..., "timestamp": ...}``.
"""

import logging
from datetime import UTC, datetime

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from voicefeed.core.exceptions import VoiceFeedError

logger = logging.getLogger(__name__)


def _envelope(status_code: int, detail: str, code: str, timestamp: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "detail": detail,
            "code": code,
            "timestamp": timestamp or datetime.now(UTC).isoformat(),
        },
    )


def register_error_handlers(app: FastAPI) -> None:
    """Attach exception handlers to the FastAPI application.

    1. ``VoiceFeedError`` maps domain errors to their status and code.
    2. ``RequestValidationError`` reports malformed bodies / params (422).
    3. ``Exception`` is the catch-all for unexpected server errors (500).
    """

    @app.exception_handler(VoiceFeedError)
    async def voicefeed_error_handler(_request: Request, exc: VoiceFeedError) -> JSONResponse:
        return _envelope(exc.status_code, exc.detail, exc.code, exc.timestamp)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        _request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        errors = exc.errors()
        detail = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
        return _envelope(422, detail, "VALIDATION_ERROR")

    @app.exception_handler(Exception)
    async def generic_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
        return _envelope(500, "Internal server error", "INTERNAL_ERROR")
