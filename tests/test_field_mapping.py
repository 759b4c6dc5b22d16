"""Tests for the pure CRM field mappings and sync keys."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from src.dealsmart.billing.schemas import SubscriptionStatus
from src.dealsmart.crm.field_mapping import (
    DEAL_STAGE_BY_STATUS,
    PROP_SUBSCRIPTION_ID,
    PROP_USER_ID,
    content_hash,
    event_to_activity,
    subscription_to_deal,
    sync_key,
    user_to_contact,
)
from src.dealsmart.crm.schemas import (
    ActivityRecord,
    CustomerProfile,
    SubscriptionSnapshot,
    SyncKind,
)


def _make_profile(**overrides) -> CustomerProfile:
    defaults = {
        "user_id": "user-1",
        "email": "  Owner@Dealer.COM ",
        "first_name": "Sam",
        "last_name": "Lee",
        "dealership_name": "Lee Motors",
    }
    defaults.update(overrides)
    return CustomerProfile(**defaults)


def _make_snapshot(**overrides) -> SubscriptionSnapshot:
    defaults = {
        "subscription_id": "sub_1",
        "status": SubscriptionStatus.ACTIVE,
        "customer_id": "cus_1",
        "customer_email": "owner@dealer.com",
        "tier": "pro",
        "amount_cents": 49900,
        "currency": "usd",
    }
    defaults.update(overrides)
    return SubscriptionSnapshot(**defaults)


class TestUserToContact:
    """Contact mapping."""

    def test_email_normalised_and_empty_fields_dropped(self):
        contact = user_to_contact(_make_profile(phone=None))

        assert contact.email == "owner@dealer.com"
        assert contact.properties["email"] == "owner@dealer.com"
        assert contact.properties["company"] == "Lee Motors"
        assert contact.properties[PROP_USER_ID] == "user-1"
        assert "phone" not in contact.properties


class TestSubscriptionToDeal:
    """Deal mapping follows subscription status."""

    @pytest.mark.parametrize(
        ("status", "stage"),
        [
            (SubscriptionStatus.ACTIVE, "closedwon"),
            (SubscriptionStatus.PAST_DUE, "payment_past_due"),
            (SubscriptionStatus.CANCELLED, "closedlost"),
            (SubscriptionStatus.EXPIRED, "subscription_expired"),
        ],
    )
    def test_stage_by_status(self, status, stage):
        deal = subscription_to_deal(_make_snapshot(status=status))
        assert deal.properties["dealstage"] == stage

    def test_every_status_has_a_stage(self):
        assert set(DEAL_STAGE_BY_STATUS) == set(SubscriptionStatus)

    def test_amount_and_currency(self):
        deal = subscription_to_deal(_make_snapshot())

        assert deal.properties["amount"] == "499.00"
        assert deal.properties["deal_currency_code"] == "USD"
        assert deal.properties[PROP_SUBSCRIPTION_ID] == "sub_1"
        assert deal.properties["dealname"] == "owner@dealer.com - pro subscription"
        assert deal.contact_email == "owner@dealer.com"

    def test_renewal_flag(self):
        deal = subscription_to_deal(_make_snapshot(renews=False))
        assert deal.properties["dealsmart_renews"] == "false"


class TestActivity:
    """Timeline notes."""

    def test_activity_key_and_body(self):
        record = ActivityRecord(
            customer_id="cust-1",
            event_id="evt-9",
            event_type="conversation.status_changed",
            summary="Conversation resolved",
            occurred_at=datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc),
        )
        activity = event_to_activity(record)

        assert activity.activity_key == "cust-1:evt-9"
        assert activity.body == "[conversation.status_changed] Conversation resolved"
        assert activity.contact_email is None


class TestSyncKey:
    """Content-addressed idempotency keys."""

    def test_key_ignores_dict_order(self):
        assert content_hash({"a": 1, "b": 2}) == content_hash({"b": 2, "a": 1})

    def test_key_changes_with_content(self):
        first = sync_key(SyncKind.CONTACT, "user-1", {"email": "a@x.com"})
        second = sync_key(SyncKind.CONTACT, "user-1", {"email": "b@x.com"})

        assert first != second
        assert first.startswith("crm:contact:user-1:")
        assert len(first.rsplit(":", 1)[1]) == 64
