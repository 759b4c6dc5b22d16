"""Prometheus metrics and Sentry integration.

Provides:
- MetricsMiddleware: HTTP request count and latency per route pattern
- Outcome counters for the retry executor, CRM sync journal, billing
  webhooks, AI suggestions and the event consumer
- track_llm_call(): latency, status and token usage of one provider call
- get_metrics_response(): Prometheus exposition for the /metrics route
- init_sentry(): Sentry with request id / actor tags from the log context
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Histogram,
    generate_latest,
)
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# ── HTTP Metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Outbound Call Metrics ────────────────────────────────────────────────────

retry_attempts_total = Counter(
    "retry_attempts_total",
    "Outbound call attempts made by the retry executor",
    ["operation", "outcome"],
)

sync_attempts_total = Counter(
    "sync_attempts_total",
    "Recorded sync attempts by external system, kind and outcome",
    ["system", "kind", "outcome"],
)

webhook_events_total = Counter(
    "webhook_events_total",
    "Billing webhook deliveries by result",
    ["result"],
)

suggestions_total = Counter(
    "suggestions_total",
    "AI suggestion requests by result",
    ["result"],
)

events_consumed_total = Counter(
    "events_consumed_total",
    "Domain events read from the stream by consumer outcome",
    ["event_type", "outcome"],
)

# ── LLM Metrics ──────────────────────────────────────────────────────────────

llm_requests_total = Counter(
    "llm_requests_total",
    "Suggestion provider calls",
    ["model", "status"],
)

llm_request_duration_seconds = Histogram(
    "llm_request_duration_seconds",
    "Suggestion provider call duration in seconds",
    ["model"],
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

llm_tokens_used_total = Counter(
    "llm_tokens_used_total",
    "Tokens consumed by suggestion provider calls",
    ["model", "token_type"],
)


# ── Metrics Middleware ───────────────────────────────────────────────────────


class MetricsMiddleware(BaseHTTPMiddleware):
    """Records request count and duration for every HTTP request.

    Requests are labelled with the matched route pattern
    (``/api/v1/conversations/{conversation_id}``) rather than the raw path,
    and /metrics itself is not counted.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        start_time = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start_time

        route = request.scope.get("route")
        endpoint = getattr(route, "path", "unmatched")

        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=str(response.status_code),
        ).inc()
        http_request_duration_seconds.labels(
            method=request.method,
            endpoint=endpoint,
        ).observe(duration)

        return response


def get_metrics_response() -> Response:
    """Render the default registry in Prometheus text format."""
    return Response(content=generate_latest(REGISTRY), media_type=CONTENT_TYPE_LATEST)


# ── LLM Call Tracking ────────────────────────────────────────────────────────


@asynccontextmanager
async def track_llm_call(model: str) -> AsyncGenerator[dict[str, Any], None]:
    """Record one provider call.

    Usage:
        async with track_llm_call("suggestions") as tracker:
            response = await router.acompletion(...)
            tracker["model"] = response.model
            tracker["prompt_tokens"] = response.usage.prompt_tokens

    The model label can be narrowed inside the block once the router has
    picked a deployment; token counts are recorded only when set.
    """
    tracker: dict[str, Any] = {"model": model, "prompt_tokens": 0, "completion_tokens": 0}
    start_time = time.perf_counter()
    status = "success"
    try:
        yield tracker
    except Exception:
        status = "error"
        raise
    finally:
        label = tracker.get("model") or model
        llm_requests_total.labels(model=label, status=status).inc()
        llm_request_duration_seconds.labels(model=label).observe(
            time.perf_counter() - start_time
        )
        for token_type in ("prompt", "completion"):
            count = tracker.get(f"{token_type}_tokens")
            if count:
                llm_tokens_used_total.labels(model=label, token_type=token_type).inc(count)


# ── Sentry Integration ───────────────────────────────────────────────────────


def _tag_request_context(event: dict, hint: dict) -> dict:
    """Copy request_id / actor_id from the structlog context onto the event."""
    context = structlog.contextvars.get_contextvars()
    tags = event.setdefault("tags", {})
    for key in ("request_id", "actor_id"):
        if context.get(key):
            tags[key] = context[key]
    return event


def init_sentry(dsn: str, environment: str) -> None:
    """Initialize Sentry SDK with FastAPI/Starlette integrations.

    Args:
        dsn: Sentry DSN string.
        environment: Deployment environment (development, staging, production).
    """
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.starlette import StarletteIntegration

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        traces_sample_rate=0.1 if environment == "production" else 1.0,
        integrations=[
            StarletteIntegration(),
            FastApiIntegration(),
        ],
        before_send=_tag_request_context,
        send_default_pii=False,
    )
