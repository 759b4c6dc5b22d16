"""Structured request logging middleware.

Logs every request with:
- method, path, status_code, duration_ms
- actor_id (from the X-Actor-ID header set by the upstream gateway)
- request_id (taken from an incoming X-Request-ID or generated per request,
  and echoed back on the response)

Uses structlog for structured JSON logging in production and
human-readable console output in development.
"""

from __future__ import annotations

import logging
import time
import uuid

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.dealsmart.config import Environment, get_settings

logger = structlog.get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
ACTOR_HEADER = "X-Actor-ID"


def configure_structlog() -> None:
    """Configure structlog processors based on environment."""
    settings = get_settings()
    logging.basicConfig(format="%(message)s", level=settings.LOG_LEVEL.upper())

    shared_processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if settings.ENVIRONMENT == Environment.production:
        shared_processors.append(structlog.processors.JSONRenderer())
    else:
        shared_processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=shared_processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


_QUIET_PATHS = frozenset({"/health", "/health/ready", "/metrics"})


class LoggingMiddleware(BaseHTTPMiddleware):
    """Middleware that logs every request with actor context and timing.

    ``request_id`` and ``actor_id`` are bound to structlog's context
    variables while the request is handled, so entries written by services
    (and Sentry events) carry them. Probe and scrape paths log at debug.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        actor_id = (request.headers.get(ACTOR_HEADER) or "").strip() or None
        path = request.url.path
        start_time = time.monotonic()

        structlog.contextvars.bind_contextvars(request_id=request_id, actor_id=actor_id)
        try:
            response = await call_next(request)
        except Exception:
            logger.error(
                "request.error",
                method=request.method,
                path=path,
                status_code=500,
                duration_ms=_elapsed_ms(start_time),
            )
            raise
        else:
            response.headers[REQUEST_ID_HEADER] = request_id
            _log_for(path, response.status_code)(
                "request.completed",
                method=request.method,
                path=path,
                status_code=response.status_code,
                duration_ms=_elapsed_ms(start_time),
            )
            return response
        finally:
            structlog.contextvars.unbind_contextvars("request_id", "actor_id")


def _elapsed_ms(start_time: float) -> float:
    return round((time.monotonic() - start_time) * 1000, 2)


def _log_for(path: str, status_code: int):
    if status_code >= 500:
        return logger.error
    if status_code >= 400:
        return logger.warning
    if path in _QUIET_PATHS:
        return logger.debug
    return logger.info
