"""Health check endpoints.

Provides liveness (/health) and readiness (/health/ready) checks. The
readiness check pings the database and, when configured, Redis; the CRM and
LLM provider are reported but never fail readiness because both degrade
gracefully.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from src.dealsmart.config import get_settings

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic liveness check.

    No external dependencies are checked -- just that the server is running.
    """
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


async def _check_dependencies(request: Request) -> dict:
    """Check database and Redis connectivity plus optional integrations."""
    state = request.app.state
    checks: dict = {"database": "ok", "redis": "ok", "crm": "ok", "llm": "ok"}

    session_factory = getattr(state, "session_factory", None)
    if session_factory is None:
        checks["database"] = "error"
        checks["database_error"] = "not initialized"
    else:
        try:
            async for session in session_factory():
                await session.execute(text("SELECT 1"))
        except Exception as e:
            checks["database"] = "error"
            checks["database_error"] = str(e)

    redis = getattr(state, "redis", None)
    if redis is None:
        checks["redis"] = "disabled"
    else:
        try:
            pong = await redis.ping()
            if not pong:
                checks["redis"] = "error"
                checks["redis_error"] = "PING did not return PONG"
        except Exception as e:
            checks["redis"] = "error"
            checks["redis_error"] = str(e)

    if getattr(state, "crm_sync", None) is None:
        checks["crm"] = "disabled"
    if getattr(state, "suggestion_provider", None) is None:
        checks["llm"] = "no_keys"

    return checks


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Readiness check: returns 200 if the database and Redis are reachable, 503 otherwise."""
    checks = await _check_dependencies(request)
    all_healthy = checks.get("database") == "ok" and checks.get("redis") in ("ok", "disabled")

    return JSONResponse(
        status_code=status.HTTP_200_OK if all_healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if all_healthy else "degraded",
            "checks": checks,
        },
    )
