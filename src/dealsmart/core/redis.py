"""Shared async Redis client for the event streams and the Redis ledger.

Redis is optional: when it does not answer at startup the hub runs with
in-process event dispatch and the SQL ledger only.
"""

from __future__ import annotations

import redis.asyncio as aioredis
import structlog

from src.dealsmart.config import get_settings

logger = structlog.get_logger(__name__)

# ── Module-level client (lazy init) ─────────────────────────────────────────

_client: aioredis.Redis | None = None


def get_redis_pool() -> aioredis.Redis:
    """Get or create the shared client (string responses)."""
    global _client
    if _client is None:
        settings = get_settings()
        _client = aioredis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=5,
            health_check_interval=30,
        )
    return _client


async def connect_redis() -> aioredis.Redis | None:
    """Return the shared client if it answers PING, else close it and return None."""
    client = get_redis_pool()
    try:
        await client.ping()
    except (aioredis.RedisError, OSError) as exc:
        logger.warning("redis.unavailable", error=str(exc))
        await close_redis()
        return None
    return client


async def close_redis() -> None:
    """Close the shared client."""
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None
