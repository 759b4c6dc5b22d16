"""CRM sync schemas -- domain inputs, provider payloads and sync results.

Domain inputs (what callers hand the adapter):
- CustomerProfile: A registered dealership user
- SubscriptionSnapshot: Current subscription state
- ActivityRecord: A timeline-worthy domain event

Provider payloads (output of the pure field mapping):
- ContactPayload, DealPayload, ActivityPayload

Result:
- SyncResult: Outcome of one sync call, mirrored in the SyncAttempt journal
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from src.dealsmart.audit.schemas import SyncOutcome
from src.dealsmart.billing.schemas import SubscriptionStatus


class SyncKind(str, Enum):
    CONTACT = "contact"
    DEAL = "deal"
    ACTIVITY = "activity"


# ── Domain inputs ───────────────────────────────────────────────────────────


class CustomerProfile(BaseModel):
    user_id: str = Field(min_length=1)
    email: str = Field(min_length=3)
    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = None
    dealership_name: str | None = None
    role: str | None = None


class SubscriptionSnapshot(BaseModel):
    subscription_id: str = Field(min_length=1)
    status: SubscriptionStatus
    customer_id: str | None = None
    customer_email: str | None = None
    dealership_name: str | None = None
    tier: str | None = None
    renews: bool = True
    amount_cents: int | None = None
    currency: str | None = None


class ActivityRecord(BaseModel):
    """A domain event worth a note on the customer's CRM timeline."""

    customer_id: str = Field(min_length=1)
    event_id: str = Field(min_length=1)
    event_type: str
    summary: str
    occurred_at: datetime
    customer_email: str | None = None


# ── Provider payloads ───────────────────────────────────────────────────────


class ContactPayload(BaseModel):
    """Contact upsert keyed by email."""

    email: str
    properties: dict[str, str]


class DealPayload(BaseModel):
    """Deal upsert keyed by subscription id."""

    subscription_id: str
    properties: dict[str, str]
    contact_email: str | None = None


class ActivityPayload(BaseModel):
    """Timeline note keyed by (customer id, event id)."""

    activity_key: str
    body: str
    timestamp: datetime
    contact_email: str | None = None


# ── Result ──────────────────────────────────────────────────────────────────


class SyncResult(BaseModel):
    system: str
    kind: SyncKind
    entity_id: str
    idempotency_key: str | None = None
    outcome: SyncOutcome
    attempts: int = 0
    external_id: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.outcome is not SyncOutcome.FAILED
