"""Idempotency ledger interface.

A key moves through two states: reserved (``in_progress``, held under a
lease) and committed (carrying the outcome of the work). ``reserve()`` is
atomic: among concurrent callers for the same key exactly one acquires it.
The others observe either the committed outcome or a live reservation.

Work that fails or is cancelled before ``commit()`` must ``release()`` the
key so a later delivery (or a restart) retries it instead of skipping it.
A reservation whose holder crashed is reclaimable once its lease expires.
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel


class ReservationStatus(str, Enum):
    """Outcome of a reserve() call."""

    ACQUIRED = "acquired"
    COMPLETED = "completed"
    IN_PROGRESS = "in_progress"


class Reservation(BaseModel):
    """Result of reserving an idempotency key.

    Attributes:
        key: The idempotency key.
        status: ACQUIRED (caller owns the work), COMPLETED (already
            processed, ``outcome`` holds the committed result) or IN_PROGRESS
            (another caller holds a live reservation).
        outcome: Committed outcome when status is COMPLETED.
        committed_at: Commit time when status is COMPLETED.
    """

    key: str
    status: ReservationStatus
    outcome: dict[str, Any] | None = None
    committed_at: datetime | None = None

    @property
    def acquired(self) -> bool:
        return self.status == ReservationStatus.ACQUIRED

    @property
    def completed(self) -> bool:
        return self.status == ReservationStatus.COMPLETED


class IdempotencyLedger(ABC):
    """Abstract reserve/commit ledger keyed by idempotency key."""

    @abstractmethod
    async def reserve(self, key: str, scope: str = "default") -> Reservation:
        """Atomically claim ``key`` or report its current state."""
        ...

    @abstractmethod
    async def commit(self, key: str, outcome: dict[str, Any]) -> None:
        """Mark ``key`` processed and store its outcome."""
        ...

    @abstractmethod
    async def release(self, key: str) -> None:
        """Drop an uncommitted reservation so the work can be retried."""
        ...

    @abstractmethod
    async def forget(self, key: str) -> None:
        """Remove ``key`` entirely, committed or not."""
        ...

    @abstractmethod
    async def get(self, key: str) -> Reservation | None:
        """Return the current state of ``key`` without reserving it."""
        ...

    @abstractmethod
    async def prune(self, older_than: datetime) -> int:
        """Delete entries reserved before ``older_than``. Returns the count removed."""
        ...


async def wait_for_completion(
    ledger: IdempotencyLedger,
    key: str,
    timeout: float,
    poll_interval: float = 0.05,
) -> Reservation | None:
    """Poll ``key`` until a concurrent holder commits it.

    Returns:
        The COMPLETED reservation, or None when the holder released the key
        or did not commit within ``timeout`` seconds.
    """
    deadline = time.monotonic() + timeout
    while True:
        current = await ledger.get(key)
        if current is None:
            return None
        if current.completed:
            return current
        if time.monotonic() >= deadline:
            return None
        await asyncio.sleep(poll_interval)
