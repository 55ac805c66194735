"""Middleware and error mapping — CORS, request logging, error handling."""

from __future__ import annotations

import time
from typing import Callable

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from wearable_telemetry.config import get_settings
from wearable_telemetry.errors import (
    ConnectionFailed,
    NotInitialized,
    PersistenceFailed,
    TelemetryError,
    UnknownDevice,
)

logger = structlog.get_logger(__name__)

# Most specific first; the first matching class wins.
_STATUS_BY_ERROR: list[tuple[type[TelemetryError], int]] = [
    (UnknownDevice, 404),
    (ConnectionFailed, 502),
    (PersistenceFailed, 503),
    (NotInitialized, 503),
]


# ── CORS ──────────────────────────────────────────────────────


def add_cors(app: FastAPI) -> None:
    """Configure CORS from ``settings.cors_origins`` (comma-separated or ``"*"``)."""
    origins_raw = get_settings().cors_origins.strip()
    if origins_raw == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in origins_raw.split(",") if o.strip()]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )


# ── Request logging ───────────────────────────────────────────


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log request method, path, status, and duration."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start = time.monotonic()
        response = await call_next(request)
        duration_ms = round((time.monotonic() - start) * 1000, 1)

        # Skip noisy health checks
        if request.url.path != "/health":
            logger.info(
                "http.request",
                method=request.method,
                path=request.url.path,
                status=response.status_code,
                duration_ms=duration_ms,
            )
        return response


# ── Error handling ───────────────────────────────────────────


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Catch unhandled exceptions and return a clean 500 response."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)
        except Exception as exc:
            logger.exception("http.unhandled_error", path=request.url.path, error=str(exc))
            return JSONResponse(
                status_code=500,
                content={"detail": "Internal server error."},
            )


async def telemetry_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Map pipeline errors to HTTP statuses."""
    status = next((code for cls, code in _STATUS_BY_ERROR if isinstance(exc, cls)), 500)
    logger.warning("http.telemetry_error", path=request.url.path, status=status, error=str(exc))
    return JSONResponse(
        status_code=status,
        content={"detail": str(exc), "error": type(exc).__name__},
    )


# ── Setup helper ──────────────────────────────────────────────


def setup_middleware(app: FastAPI) -> None:
    """Wire middleware and exception handlers into the application.

    Outermost first: error handler, request logging, CORS.
    """
    # Add from innermost → outermost (FastAPI reverses the stack)
    add_cors(app)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(ErrorHandlerMiddleware)
    app.add_exception_handler(TelemetryError, telemetry_error_handler)
