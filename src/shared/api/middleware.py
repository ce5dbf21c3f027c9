"""
Shared API Middleware
======================

Request tracing and error mapping for the operational API.
"""

import time
import uuid
from datetime import datetime, timezone
from typing import Callable

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from core import ApplicationException, NotFoundError, ValidationException
from shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


class CorrelationIDMiddleware(BaseHTTPMiddleware):
    """
    Tags each request with a correlation ID.

    Reuses an incoming ``X-Correlation-ID`` header, otherwise generates one,
    and echoes it on the response.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = request.headers.get("X-Correlation-ID", str(uuid.uuid4()))
        request.state.correlation_id = correlation_id

        response = await call_next(request)
        response.headers["X-Correlation-ID"] = correlation_id
        return response


class LoggingMiddleware(BaseHTTPMiddleware):
    """Logs every request with its status and latency."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = getattr(request.state, "correlation_id", "unknown")
        start_time = time.perf_counter()

        response = await call_next(request)

        logger.info(
            "Request completed",
            extra={
                "correlation_id": correlation_id,
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "response_time_ms": int((time.perf_counter() - start_time) * 1000)
            }
        )
        return response


def _error_body(request: Request, detail: str, **extra) -> dict:
    return {
        "detail": detail,
        "correlation_id": getattr(request.state, "correlation_id", "unknown"),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        **extra,
    }


async def application_exception_handler(request: Request, exc: ApplicationException) -> JSONResponse:
    """Map engine exceptions to 404 / 422 / 400 responses."""
    if isinstance(exc, NotFoundError):
        status_code = 404
    elif isinstance(exc, ValidationException):
        status_code = 422
    else:
        status_code = 400

    logger.warning(
        "Request rejected",
        extra={
            "path": request.url.path,
            "status_code": status_code,
            "error_type": type(exc).__name__,
            "error_message": exc.message
        }
    )
    return JSONResponse(
        status_code=status_code,
        content=_error_body(request, exc.message, details=exc.details)
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Handler for unhandled exceptions.

    Internal details are only exposed in development.
    """
    logger.error(
        "Unhandled exception",
        extra={
            "path": request.url.path,
            "method": request.method,
            "error_type": type(exc).__name__,
            "error_message": str(exc)
        }
    )

    engine = getattr(request.app.state, "engine", None)
    is_dev = engine is not None and engine.settings.environment == "development"

    return JSONResponse(
        status_code=500,
        content=_error_body(request, "Internal server error", debug_info=str(exc) if is_dev else None)
    )
