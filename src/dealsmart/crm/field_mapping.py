"""Pure field mappings from domain entities to HubSpot payloads.

Defines:
- DEAL_STAGE_BY_STATUS: SubscriptionState.status -> HubSpot deal stage
- user_to_contact(): CustomerProfile -> ContactPayload
- subscription_to_deal(): SubscriptionSnapshot -> DealPayload
- event_to_activity(): ActivityRecord -> ActivityPayload
- content_hash() / sync_key(): Idempotency key of (entity, kind, content)

No function here performs I/O.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any

from src.dealsmart.billing.schemas import SubscriptionStatus
from src.dealsmart.crm.schemas import (
    ActivityPayload,
    ActivityRecord,
    ContactPayload,
    CustomerProfile,
    DealPayload,
    SubscriptionSnapshot,
    SyncKind,
)

# ── Stage Mapping ──────────────────────────────────────────────────────────

DEAL_PIPELINE = "default"

DEAL_STAGE_BY_STATUS: dict[SubscriptionStatus, str] = {
    SubscriptionStatus.ACTIVE: "closedwon",
    SubscriptionStatus.PAST_DUE: "payment_past_due",
    SubscriptionStatus.CANCELLED: "closedlost",
    SubscriptionStatus.EXPIRED: "subscription_expired",
}

# Custom HubSpot properties (created once per portal)
PROP_USER_ID = "dealsmart_user_id"
PROP_SUBSCRIPTION_ID = "dealsmart_subscription_id"
PROP_TIER = "dealsmart_tier"
PROP_RENEWS = "dealsmart_renews"
PROP_ACTIVITY_KEY = "dealsmart_activity_key"


def _drop_empty(properties: dict[str, Any]) -> dict[str, str]:
    return {k: str(v) for k, v in properties.items() if v is not None and v != ""}


# ── Mappings ───────────────────────────────────────────────────────────────


def user_to_contact(profile: CustomerProfile) -> ContactPayload:
    """Map a registered user to a HubSpot contact upsert."""
    email = profile.email.strip().lower()
    return ContactPayload(
        email=email,
        properties=_drop_empty(
            {
                "email": email,
                "firstname": profile.first_name,
                "lastname": profile.last_name,
                "phone": profile.phone,
                "company": profile.dealership_name,
                "jobtitle": profile.role,
                PROP_USER_ID: profile.user_id,
            }
        ),
    )


def deal_stage_for(status: SubscriptionStatus) -> str:
    return DEAL_STAGE_BY_STATUS[status]


def subscription_to_deal(snapshot: SubscriptionSnapshot) -> DealPayload:
    """Map a subscription to a HubSpot deal upsert; stage follows status."""
    owner = snapshot.dealership_name or snapshot.customer_email or snapshot.customer_id
    tier = snapshot.tier or "standard"
    amount = None
    if snapshot.amount_cents is not None:
        amount = f"{snapshot.amount_cents / 100:.2f}"
    return DealPayload(
        subscription_id=snapshot.subscription_id,
        contact_email=snapshot.customer_email.strip().lower() if snapshot.customer_email else None,
        properties=_drop_empty(
            {
                "dealname": f"{owner or snapshot.subscription_id} - {tier} subscription",
                "pipeline": DEAL_PIPELINE,
                "dealstage": deal_stage_for(snapshot.status),
                "amount": amount,
                "deal_currency_code": snapshot.currency.upper() if snapshot.currency else None,
                PROP_SUBSCRIPTION_ID: snapshot.subscription_id,
                PROP_TIER: tier,
                PROP_RENEWS: "true" if snapshot.renews else "false",
            }
        ),
    )


def activity_key(customer_id: str, event_id: str) -> str:
    return f"{customer_id}:{event_id}"


def event_to_activity(record: ActivityRecord) -> ActivityPayload:
    """Map a domain event to a timeline note."""
    return ActivityPayload(
        activity_key=activity_key(record.customer_id, record.event_id),
        body=f"[{record.event_type}] {record.summary}",
        timestamp=record.occurred_at,
        contact_email=record.customer_email.strip().lower() if record.customer_email else None,
    )


# ── Idempotency Keys ───────────────────────────────────────────────────────


def content_hash(payload: dict[str, Any]) -> str:
    """SHA-256 over canonical JSON (sorted keys, no whitespace)."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def sync_key(kind: SyncKind, entity_id: str, payload: dict[str, Any]) -> str:
    """Ledger key for syncing ``payload`` as ``kind`` of ``entity_id``."""
    return f"crm:{kind.value}:{entity_id}:{content_hash(payload)}"
