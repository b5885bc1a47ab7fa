"""
Shared API Middleware
======================

Request tracing and error mapping for the automation API.
"""

import time
import uuid
from datetime import datetime, timezone
from typing import Callable

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from src.core import (
    ApplicationException, ExternalServiceException, RepositoryException,
    ResourceNotFoundException, ValidationException,
)
from src.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"

# Probes hit these constantly; log them at debug only
_QUIET_PATHS = frozenset({"/health", "/"})


class CorrelationIDMiddleware(BaseHTTPMiddleware):
    """
    Tags every request with a correlation ID.

    An incoming X-Correlation-ID (e.g. from the ticket service webhook that
    submitted an event) is reused so one ticket mutation can be followed
    across services.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        request.state.correlation_id = correlation_id

        response = await call_next(request)
        response.headers[CORRELATION_HEADER] = correlation_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs each request with its status and latency."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start = time.perf_counter()
        context = {
            "correlation_id": getattr(request.state, "correlation_id", "unknown"),
            "method": request.method,
            "path": request.url.path,
        }

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                "Request failed",
                extra={**context, "error": str(e), "latency_ms": _elapsed_ms(start)}
            )
            raise

        latency_ms = _elapsed_ms(start)
        response.headers["X-Response-Time"] = f"{latency_ms:.1f}ms"

        log = logger.debug if request.url.path in _QUIET_PATHS else logger.info
        log(
            "Request completed",
            extra={**context, "status_code": response.status_code, "latency_ms": latency_ms}
        )
        return response


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 2)


def _status_for(exc: ApplicationException) -> int:
    if isinstance(exc, ValidationException):
        return 422
    if isinstance(exc, ResourceNotFoundException):
        return 404
    if isinstance(exc, RepositoryException):
        return 503
    if isinstance(exc, ExternalServiceException):
        return 502
    return 400


async def application_exception_handler(
    request: Request,
    exc: ApplicationException
) -> JSONResponse:
    """
    Maps application exceptions to HTTP responses.

    - ValidationException (incl. rule definition errors) -> 422
    - ResourceNotFoundException -> 404
    - RepositoryException (rule store unreachable) -> 503
    - ExternalServiceException -> 502
    """
    correlation_id = getattr(request.state, "correlation_id", "unknown")
    status_code = _status_for(exc)

    log = logger.error if status_code >= 500 else logger.info
    log(
        "Request rejected",
        extra={
            "correlation_id": correlation_id,
            "path": request.url.path,
            "status_code": status_code,
            "error_type": type(exc).__name__,
            "error_message": exc.message
        }
    )

    return JSONResponse(
        status_code=status_code,
        content={
            "detail": exc.message,
            "errors": exc.details.get("errors", []),
            "correlation_id": correlation_id,
        }
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last-resort handler; internals are only echoed in development."""
    correlation_id = getattr(request.state, "correlation_id", "unknown")

    logger.exception(
        "Unhandled exception",
        extra={
            "correlation_id": correlation_id,
            "path": request.url.path,
            "error_type": type(exc).__name__,
        }
    )

    app_settings = getattr(request.app.state, "settings", None)
    is_dev = getattr(app_settings, "environment", None) == "development"

    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error",
            "correlation_id": correlation_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "debug_info": str(exc) if is_dev else None
        }
    )
