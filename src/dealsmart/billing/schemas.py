"""Billing webhook schemas -- provider envelope, subscription state, results.

Defines:
- BillingEventKind: Provider event types the processor applies
- SubscriptionStatus: Derived subscription lifecycle status
- BillingEvent / BillingEventData: Parsed webhook payload
- SubscriptionChange: Field changes one event applies to SubscriptionState
- SubscriptionStateRead: Current projection of a subscription
- WebhookDecision / WebhookResult: Processor outcome returned to the HTTP layer

Expected payload shape::

    {
      "id": "evt_123",
      "type": "payment.succeeded",
      "created": 1700000000,
      "data": {
        "subscription_id": "sub_1",
        "customer_id": "cus_1",
        "customer_email": "buyer@example.com",
        "tier": "pro",
        "status": "active",
        "renews": true,
        "amount_cents": 4900,
        "currency": "usd"
      }
    }
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

from src.dealsmart.events.schemas import DomainEventType


# ── Enums ───────────────────────────────────────────────────────────────────


class BillingEventKind(str, Enum):
    PAYMENT_SUCCEEDED = "payment.succeeded"
    PAYMENT_FAILED = "payment.failed"
    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_UPDATED = "subscription.updated"
    SUBSCRIPTION_CANCELLED = "subscription.cancelled"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    PAST_DUE = "past_due"


DOMAIN_EVENT_BY_KIND: dict[BillingEventKind, DomainEventType] = {
    BillingEventKind.PAYMENT_SUCCEEDED: DomainEventType.PAYMENT_SUCCEEDED,
    BillingEventKind.PAYMENT_FAILED: DomainEventType.PAYMENT_FAILED,
    BillingEventKind.SUBSCRIPTION_CREATED: DomainEventType.SUBSCRIPTION_CREATED,
    BillingEventKind.SUBSCRIPTION_UPDATED: DomainEventType.SUBSCRIPTION_UPDATED,
    BillingEventKind.SUBSCRIPTION_CANCELLED: DomainEventType.SUBSCRIPTION_CANCELLED,
}


# ── Webhook payload ─────────────────────────────────────────────────────────


class BillingEventData(BaseModel):
    subscription_id: str = Field(min_length=1, max_length=100)
    customer_id: str | None = None
    customer_email: str | None = None
    tier: str | None = None
    status: SubscriptionStatus | None = None
    renews: bool | None = None
    amount_cents: int | None = None
    currency: str | None = None


class BillingEvent(BaseModel):
    """A verified provider event.

    ``type`` stays a plain string so unknown event types parse and can be
    acknowledged without being applied.
    """

    id: str = Field(min_length=1, max_length=200)
    type: str
    created: datetime
    data: BillingEventData

    @field_validator("created", mode="before")
    @classmethod
    def _parse_created(cls, value: Any) -> Any:
        # Providers send unix seconds
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            try:
                return datetime.fromtimestamp(value, tz=timezone.utc)
            except (OverflowError, OSError, ValueError) as exc:
                msg = f"created timestamp out of range: {value}"
                raise ValueError(msg) from exc
        return value

    @field_validator("created")
    @classmethod
    def _created_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @property
    def kind(self) -> BillingEventKind | None:
        try:
            return BillingEventKind(self.type)
        except ValueError:
            return None


# ── Subscription state ──────────────────────────────────────────────────────


class SubscriptionChange(BaseModel):
    """What one event writes to SubscriptionState.

    None fields leave the stored value untouched.
    """

    subscription_id: str
    event_id: str
    event_at: datetime
    status: SubscriptionStatus | None = None
    customer_id: str | None = None
    customer_email: str | None = None
    tier: str | None = None
    renews: bool | None = None
    amount_cents: int | None = None
    currency: str | None = None


class SubscriptionStateRead(BaseModel):
    subscription_id: str
    customer_id: str | None = None
    customer_email: str | None = None
    status: SubscriptionStatus
    tier: str | None = None
    renews: bool = True
    amount_cents: int | None = None
    currency: str | None = None
    last_event_id: str
    last_event_at: datetime
    updated_at: datetime


class ApplyOutcome(BaseModel):
    """Result of a conditional SubscriptionState write.

    ``applied`` is False when a newer event already owns the row.
    """

    applied: bool
    state: SubscriptionStateRead | None = None


# ── Processor result ────────────────────────────────────────────────────────


class WebhookDecision(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class WebhookResult(BaseModel):
    """Outcome of one webhook delivery.

    Attributes:
        decision: Accepted (2xx) or Rejected (non-2xx).
        reason: Short machine-readable reason.
        event_id: Provider event id when the payload parsed.
        duplicate: True when the event had already been processed.
        retryable: True when the provider should redeliver.
        state: Subscription state after the event, when applied.
    """

    decision: WebhookDecision
    reason: str
    event_id: str | None = None
    duplicate: bool = False
    retryable: bool = False
    state: SubscriptionStateRead | None = None

    @property
    def accepted(self) -> bool:
        return self.decision is WebhookDecision.ACCEPTED
