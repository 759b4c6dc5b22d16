"""Billing provider webhooks and the SubscriptionState projection.

Exports:
    BillingWebhookProcessor: Verify, dedupe, apply, commit, emit.
    SubscriptionStateRepository: Last-event-wins conditional writes.
    WebhookResult, WebhookDecision: Processor outcome.
    SubscriptionStatus: active / cancelled / expired / past_due.
"""

from __future__ import annotations

from src.dealsmart.billing.processor import BillingWebhookProcessor
from src.dealsmart.billing.repository import SubscriptionStateRepository
from src.dealsmart.billing.schemas import (
    SubscriptionStateRead,
    SubscriptionStatus,
    WebhookDecision,
    WebhookResult,
)

__all__ = [
    "BillingWebhookProcessor",
    "SubscriptionStateRead",
    "SubscriptionStateRepository",
    "SubscriptionStatus",
    "WebhookDecision",
    "WebhookResult",
]
