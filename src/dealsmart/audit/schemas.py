"""Sync attempt audit schemas."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class SyncOutcome(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class SyncAttemptCreate(BaseModel):
    """One finished attempt to push state to an external system.

    Attributes:
        system: External system name ("hubspot", "event_bus").
        kind: Sync kind within the system ("contact", "deal", "activity",
            or a domain event type for event_bus).
        entity_type: Kind of domain entity synced.
        entity_id: Domain entity identifier.
        idempotency_key: Ledger key the attempt ran under.
        outcome: success, failed or skipped.
        attempts: Executor attempts made (0 when skipped).
        last_error: Last error text for failed attempts.
        payload: What was sent, kept so a reconciliation sweep can resend it.
        external_id: Identifier returned by the external system.
    """

    system: str
    kind: str
    entity_type: str
    entity_id: str
    idempotency_key: str
    outcome: SyncOutcome
    attempts: int = 0
    last_error: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    external_id: str | None = None
    started_at: datetime | None = None


class SyncAttemptRead(SyncAttemptCreate):
    id: int
    recorded_at: datetime
