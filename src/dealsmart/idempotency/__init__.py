"""Idempotency ledger -- dedupes inbound events and outbound sync attempts by key.

Exports:
    IdempotencyLedger: Abstract reserve/commit interface.
    Reservation / ReservationStatus: Result of ``reserve()``.
    SqlIdempotencyLedger: Durable ledger on the primary database.
    RedisIdempotencyLedger: Ledger on Redis SET NX with TTL-based retention.
    wait_for_completion: Poll a key held by a concurrent caller.
"""

from __future__ import annotations

from src.dealsmart.idempotency.ledger import (
    IdempotencyLedger,
    Reservation,
    ReservationStatus,
    wait_for_completion,
)
from src.dealsmart.idempotency.redis_ledger import RedisIdempotencyLedger
from src.dealsmart.idempotency.sql import SqlIdempotencyLedger

__all__ = [
    "IdempotencyLedger",
    "RedisIdempotencyLedger",
    "Reservation",
    "ReservationStatus",
    "SqlIdempotencyLedger",
    "wait_for_completion",
]
