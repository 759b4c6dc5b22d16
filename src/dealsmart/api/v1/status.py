"""API index and component status."""

from __future__ import annotations

import redis.asyncio as aioredis
from fastapi import APIRouter, Request

from src.dealsmart.config import get_settings
from src.dealsmart.events.bus import DOMAIN_STREAM
from src.dealsmart.events.consumer import CONSUMER_GROUP

router = APIRouter(tags=["status"])

API_VERSION = "v1"


@router.get("/api")
async def api_index():
    """List API versions and the main entry points."""
    return {
        "versions": [API_VERSION],
        "endpoints": {
            "status": "/api/v1/status",
            "conversations": "/api/v1/conversations",
            "suggestions": "/api/v1/suggestions",
            "billing_webhook": "/api/v1/webhooks/billing",
            "events": "/api/v1/events",
            "health": "/health",
            "metrics": "/metrics",
        },
    }


async def _event_stream_status(state) -> dict | None:
    """Pending and dead-lettered counts for the domain stream, when Redis is in use."""
    bus = getattr(state, "event_bus", None)
    dead_letters = getattr(state, "dead_letters", None)
    if bus is None or dead_letters is None:
        return None
    try:
        pending = await bus.pending_summary(DOMAIN_STREAM, CONSUMER_GROUP)
        parked = await dead_letters.depth(DOMAIN_STREAM)
    except aioredis.RedisError as exc:
        return {"error": str(exc)}
    return {"pending": pending.get("pending", 0), "dead_lettered": parked}


@router.get("/api/v1/status")
async def component_status(request: Request):
    """Report which components are wired and the sync attempt totals."""
    state = request.app.state
    settings = get_settings()

    components = {
        "conversations": getattr(state, "conversation_service", None) is not None,
        "assistance": getattr(state, "assistance_service", None) is not None,
        "llm_provider": getattr(state, "suggestion_provider", None) is not None,
        "crm_sync": getattr(state, "crm_sync", None) is not None,
        "billing_webhooks": getattr(state, "billing_processor", None) is not None,
        "orchestrator": getattr(state, "orchestrator", None) is not None,
        "event_bus": getattr(state, "event_bus", None) is not None,
    }

    sync_attempts: dict[str, int] = {}
    attempts = getattr(state, "sync_attempts", None)
    if attempts is not None:
        sync_attempts = await attempts.count_by_outcome()

    runner = getattr(state, "task_runner", None)
    return {
        "version": API_VERSION,
        "environment": settings.ENVIRONMENT.value,
        "components": components,
        "sync_attempts": sync_attempts,
        "background_tasks": len(runner) if runner is not None else 0,
        "event_stream": await _event_stream_status(state),
    }
