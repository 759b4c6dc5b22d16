"""Redis-backed idempotency ledger.

Each key uses two Redis entries:

- ``idem:{key}:lease`` -- the reservation, created with ``SET NX EX`` so
  only one caller acquires it and it expires on its own if the holder dies.
- ``idem:{key}:done`` -- the committed outcome, kept for the retention
  window via its TTL (``prune`` is therefore a no-op).

Commit writes ``done`` before deleting ``lease``. A caller that acquires a
lease re-checks ``done`` afterwards, so a commit racing with a reserve is
never processed twice.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

import redis.asyncio as aioredis
import structlog

from src.dealsmart.core.clock import utcnow
from src.dealsmart.idempotency.ledger import (
    IdempotencyLedger,
    Reservation,
    ReservationStatus,
)

logger = structlog.get_logger(__name__)


class RedisIdempotencyLedger(IdempotencyLedger):
    """Idempotency ledger on Redis.

    Args:
        redis: Async Redis client (``decode_responses=True``).
        lease_seconds: TTL of an uncommitted reservation.
        retention_seconds: TTL of a committed outcome.
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        lease_seconds: int = 120,
        retention_seconds: int = 30 * 24 * 3600,
    ) -> None:
        self._redis = redis
        self._lease_seconds = lease_seconds
        self._retention_seconds = retention_seconds

    @staticmethod
    def _lease_key(key: str) -> str:
        return f"idem:{key}:lease"

    @staticmethod
    def _done_key(key: str) -> str:
        return f"idem:{key}:done"

    async def _read_done(self, key: str) -> Reservation | None:
        raw = await self._redis.get(self._done_key(key))
        if raw is None:
            return None
        record = json.loads(raw)
        return Reservation(
            key=key,
            status=ReservationStatus.COMPLETED,
            outcome=record.get("outcome") or {},
            committed_at=datetime.fromisoformat(record["committed_at"]),
        )

    async def reserve(self, key: str, scope: str = "default") -> Reservation:
        done = await self._read_done(key)
        if done is not None:
            return done

        acquired = await self._redis.set(
            self._lease_key(key),
            json.dumps({"scope": scope, "reserved_at": utcnow().isoformat()}),
            nx=True,
            ex=self._lease_seconds,
        )
        if not acquired:
            return Reservation(key=key, status=ReservationStatus.IN_PROGRESS)

        done = await self._read_done(key)
        if done is not None:
            await self._redis.delete(self._lease_key(key))
            return done

        logger.debug("ledger.reserved", key=key, scope=scope)
        return Reservation(key=key, status=ReservationStatus.ACQUIRED)

    async def commit(self, key: str, outcome: dict[str, Any]) -> None:
        record = {"outcome": outcome, "committed_at": utcnow().isoformat()}
        await self._redis.set(
            self._done_key(key), json.dumps(record), ex=self._retention_seconds,
        )
        await self._redis.delete(self._lease_key(key))
        logger.debug("ledger.committed", key=key)

    async def release(self, key: str) -> None:
        await self._redis.delete(self._lease_key(key))
        logger.debug("ledger.released", key=key)

    async def forget(self, key: str) -> None:
        await self._redis.delete(self._lease_key(key), self._done_key(key))

    async def get(self, key: str) -> Reservation | None:
        done = await self._read_done(key)
        if done is not None:
            return done
        if await self._redis.exists(self._lease_key(key)):
            return Reservation(key=key, status=ReservationStatus.IN_PROGRESS)
        return None

    async def prune(self, older_than: datetime) -> int:
        # Entries expire through their TTLs
        return 0
