"""Inbound domain events from the external authentication service.

User registration and profile updates happen outside this service; the
auth service posts them here and they are handed to the orchestrator,
which syncs the CRM contact in the background.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from src.dealsmart.api.deps import get_orchestrator
from src.dealsmart.core.errors import ValidationError
from src.dealsmart.events.schemas import DomainEvent, DomainEventType
from src.dealsmart.orchestration.orchestrator import SyncOrchestrator, profile_from_event

router = APIRouter(prefix="/api/v1/events", tags=["events"])

ACCEPTED_EVENT_TYPES = frozenset({
    DomainEventType.USER_REGISTERED,
    DomainEventType.USER_UPDATED,
})


class InboundEvent(BaseModel):
    """A user event posted by the auth service; ``entity_id`` is the user id."""

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: DomainEventType
    entity_id: str = Field(min_length=1)
    occurred_at: datetime | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    correlation_id: str | None = None

    @field_validator("event_type")
    @classmethod
    def _user_events_only(cls, value: DomainEventType) -> DomainEventType:
        if value not in ACCEPTED_EVENT_TYPES:
            msg = f"Unsupported event type '{value.value}'"
            raise ValueError(msg)
        return value


class EventAccepted(BaseModel):
    event_id: str
    event_type: DomainEventType
    targets: list[str]


@router.post("", response_model=EventAccepted, status_code=status.HTTP_202_ACCEPTED)
async def receive_event(
    body: InboundEvent,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> EventAccepted:
    """Schedule the fan-out for a user event and return without waiting for it.

    A profile that cannot be synced (for instance an invalid email) is
    rejected with 422 before anything is scheduled.
    """
    event = DomainEvent(
        event_id=body.event_id,
        event_type=body.event_type,
        occurred_at=body.occurred_at or datetime.now(timezone.utc),
        entity_type="user",
        entity_id=body.entity_id,
        actor="auth_service",
        data=body.data,
        correlation_id=body.correlation_id,
    )
    if event.data.get("email"):
        try:
            profile_from_event(event)
        except PydanticValidationError as exc:
            msg = f"Malformed user profile: {exc.error_count()} invalid field(s)"
            raise ValidationError(msg) from exc
    targets = [name for name, _call in orchestrator.targets_for(event)]
    orchestrator.dispatch(event)
    return EventAccepted(event_id=event.event_id, event_type=event.event_type, targets=targets)
