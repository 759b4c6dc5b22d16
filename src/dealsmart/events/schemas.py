"""Domain event schemas.

Domain events are the plain structs the orchestration core exchanges; no
transport-layer type crosses this boundary. Events serialize to flat string
dicts for Redis Streams and deserialize back losslessly.

Stream key pattern: dealsmart:events:{stream_name}
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


class DomainEventType(str, Enum):
    """Business events that drive CRM sync and AI suggestion workflows."""

    USER_REGISTERED = "user.registered"
    USER_UPDATED = "user.updated"
    CONVERSATION_CREATED = "conversation.created"
    CONVERSATION_STATUS_CHANGED = "conversation.status_changed"
    CONVERSATION_ASSIGNED = "conversation.assigned"
    MESSAGE_RECEIVED = "message.received"
    MESSAGE_SENT = "message.sent"
    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_UPDATED = "subscription.updated"
    SUBSCRIPTION_CANCELLED = "subscription.cancelled"
    PAYMENT_SUCCEEDED = "payment.succeeded"
    PAYMENT_FAILED = "payment.failed"


class DomainEvent(BaseModel):
    """A business-state change emitted after the primary write committed.

    Attributes:
        event_id: Unique identifier (auto-generated UUID4).
        version: Schema version for forward compatibility.
        event_type: The kind of change.
        occurred_at: UTC time of the change.
        entity_type: Kind of entity changed (conversation, user, subscription).
        entity_id: Identifier of the changed entity.
        actor: Staff member, customer or system that caused the change.
        data: Inline payload (entity snapshot relevant to consumers).
        correlation_id: Groups events caused by the same request or webhook.
    """

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    version: str = "1.0"
    event_type: DomainEventType
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    entity_type: str
    entity_id: str
    actor: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    correlation_id: str | None = None

    @field_validator("entity_id")
    @classmethod
    def _entity_id_not_blank(cls, value: str) -> str:
        if not value.strip():
            msg = "entity_id must not be blank"
            raise ValueError(msg)
        return value

    def to_stream_dict(self) -> dict[str, str]:
        """Serialize all fields to a flat dict of strings for Redis Streams."""
        return {
            "event_id": self.event_id,
            "version": self.version,
            "event_type": self.event_type.value,
            "occurred_at": self.occurred_at.isoformat(),
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "actor": self.actor or "",
            "data": json.dumps(self.data, default=str),
            "correlation_id": self.correlation_id or "",
        }

    @classmethod
    def from_stream_dict(cls, raw: dict[str, str]) -> DomainEvent:
        """Deserialize from a Redis Streams flat dict back to DomainEvent."""
        return cls(
            event_id=raw["event_id"],
            version=raw.get("version", "1.0"),
            event_type=DomainEventType(raw["event_type"]),
            occurred_at=datetime.fromisoformat(raw["occurred_at"]),
            entity_type=raw["entity_type"],
            entity_id=raw["entity_id"],
            actor=raw.get("actor") or None,
            data=json.loads(raw["data"]) if raw.get("data") else {},
            correlation_id=raw.get("correlation_id") or None,
        )
