"""Tests for BillingWebhookProcessor.

Covers:
- Signature and payload gates (no ledger entry on rejection)
- Exactly-once application under concurrent and repeated delivery
- Last-event-wins ordering, including the event-id tie-break
- Release of the reservation on processing failure
- Emission after commit, failure journaling and re-emission
- Cancelled background emission is journaled and re-emitted
"""

from __future__ import annotations

import asyncio
import json
import uuid

import pytest

from src.dealsmart.audit.repository import SyncAttemptRepository
from src.dealsmart.billing.processor import (
    EVENT_BUS_SYSTEM,
    BillingWebhookProcessor,
    ledger_key,
    parse_event,
)
from src.dealsmart.billing.repository import SubscriptionStateRepository
from src.dealsmart.billing.schemas import SubscriptionStatus
from src.dealsmart.billing.signature import sign_payload
from src.dealsmart.core.errors import TransientError
from src.dealsmart.core.tasks import BackgroundTaskRunner
from src.dealsmart.events.bus import DOMAIN_STREAM, EventPublisher
from src.dealsmart.events.schemas import DomainEvent, DomainEventType
from src.dealsmart.idempotency.sql import SqlIdempotencyLedger

SECRET = "whsec_test"
NOW = 1_760_000_000


# ── Helpers ──────────────────────────────────────────────────────────────────


class RecordingPublisher(EventPublisher):
    """Collects published events; raises while ``failing`` is set."""

    def __init__(self) -> None:
        self.events: list[DomainEvent] = []
        self.failing = False

    async def publish(self, event: DomainEvent, stream: str = DOMAIN_STREAM) -> str:
        if self.failing:
            raise TransientError("bus unavailable")
        self.events.append(event)
        return f"{len(self.events)}-0"


class HangingPublisher(EventPublisher):
    """Blocks every publish until cancelled while ``hanging`` is set."""

    def __init__(self) -> None:
        self.events: list[DomainEvent] = []
        self.hanging = True
        self.started = asyncio.Event()

    async def publish(self, event: DomainEvent, stream: str = DOMAIN_STREAM) -> str:
        if self.hanging:
            self.started.set()
            await asyncio.Event().wait()
        self.events.append(event)
        return f"{len(self.events)}-0"


class FlakyRepository(SubscriptionStateRepository):
    """Fails the first ``failures`` applies."""

    def __init__(self, session_factory, failures: int = 1) -> None:
        super().__init__(session_factory)
        self.failures = failures

    async def apply(self, change):
        if self.failures:
            self.failures -= 1
            raise RuntimeError("database hiccup")
        return await super().apply(change)


def _make_payload(**overrides) -> dict:
    data = {
        "subscription_id": "sub_1",
        "customer_id": "cus_1",
        "customer_email": "owner@dealer.com",
        "tier": "pro",
        "amount_cents": 49900,
        "currency": "usd",
    }
    data.update(overrides.pop("data", {}))
    payload = {"id": "evt_123", "type": "payment.succeeded", "created": NOW - 60, "data": data}
    payload.update(overrides)
    return payload


def _signed(payload: dict | bytes, timestamp: int = NOW) -> tuple[bytes, str]:
    raw = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
    return raw, sign_payload(raw, SECRET, timestamp=timestamp)


@pytest.fixture
def ledger(session_factory) -> SqlIdempotencyLedger:
    return SqlIdempotencyLedger(session_factory)


@pytest.fixture
def states(session_factory) -> SubscriptionStateRepository:
    return SubscriptionStateRepository(session_factory)


@pytest.fixture
def attempts(session_factory) -> SyncAttemptRepository:
    return SyncAttemptRepository(session_factory)


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


def _make_processor(ledger, repository, publisher, attempts, executor, **overrides):
    kwargs = {"clock": lambda: NOW, "in_progress_wait_seconds": 2.0}
    kwargs.update(overrides)
    return BillingWebhookProcessor(SECRET, ledger, repository, publisher, attempts, executor, **kwargs)


@pytest.fixture
def processor(ledger, states, publisher, attempts, executor) -> BillingWebhookProcessor:
    return _make_processor(ledger, states, publisher, attempts, executor)


# ── Gates ────────────────────────────────────────────────────────────────────


class TestRejections:
    """Signature and payload rejections."""

    async def test_bad_signature_rejected_without_ledger_entry(self, processor, ledger):
        raw = json.dumps(_make_payload()).encode()
        result = await processor.handle(raw, sign_payload(raw, "wrong", timestamp=NOW))

        assert not result.accepted
        assert result.reason == "invalid_signature"
        assert not result.retryable
        assert await ledger.get(ledger_key("evt_123")) is None

    async def test_missing_signature(self, processor):
        result = await processor.handle(json.dumps(_make_payload()).encode(), None)
        assert result.reason == "invalid_signature"

    async def test_replayed_old_signature(self, processor):
        raw, header = _signed(_make_payload(), timestamp=NOW - 3600)
        result = await processor.handle(raw, header)
        assert result.reason == "invalid_signature"

    @pytest.mark.parametrize(
        "raw",
        [
            b"not json",
            b"[1, 2]",
            json.dumps({"id": "evt_1", "type": "payment.succeeded"}).encode(),
            json.dumps(_make_payload(created=1e20)).encode(),
            json.dumps(_make_payload(created=-1e20)).encode(),
        ],
    )
    async def test_malformed_payload(self, processor, raw):
        result = await processor.handle(*_signed(raw))

        assert not result.accepted
        assert result.reason == "malformed_payload"


# ── Application ──────────────────────────────────────────────────────────────


class TestApply:
    """Applying events to SubscriptionState."""

    async def test_payment_succeeded_applied_and_emitted(self, processor, states, publisher):
        result = await processor.handle(*_signed(_make_payload()))

        assert result.accepted
        assert result.reason == "applied"
        assert not result.duplicate
        assert result.state.status is SubscriptionStatus.ACTIVE
        assert result.state.last_event_id == "evt_123"

        stored = await states.get("sub_1")
        assert stored.customer_email == "owner@dealer.com"

        assert len(publisher.events) == 1
        event = publisher.events[0]
        assert event.event_type is DomainEventType.PAYMENT_SUCCEEDED
        assert event.entity_id == "sub_1"
        assert event.event_id == str(uuid.uuid5(uuid.NAMESPACE_URL, "billing:evt_123"))
        assert event.data["subscription"]["status"] == "active"

    async def test_repeated_delivery_is_duplicate(self, processor, publisher):
        first = await processor.handle(*_signed(_make_payload()))
        second = await processor.handle(*_signed(_make_payload()))

        assert first.reason == "applied"
        assert second.accepted
        assert second.duplicate
        assert second.reason == "duplicate"
        assert len(publisher.events) == 1

    async def test_concurrent_delivery_applies_once(self, processor, publisher, attempts):
        results = await asyncio.gather(
            *(processor.handle(*_signed(_make_payload())) for _ in range(3))
        )

        assert all(r.accepted for r in results)
        assert sorted(r.duplicate for r in results) == [False, True, True]
        assert len(publisher.events) == 1
        assert (await attempts.count_by_outcome(EVENT_BUS_SYSTEM)).get("success") == 1

    async def test_out_of_order_event_is_stale(self, processor, states, publisher):
        failed = _make_payload(id="evt_2", type="payment.failed", created=NOW - 10)
        succeeded = _make_payload(id="evt_1", type="payment.succeeded", created=NOW - 100)

        assert (await processor.handle(*_signed(failed))).reason == "applied"
        late = await processor.handle(*_signed(succeeded))

        assert late.accepted
        assert late.reason == "stale"
        assert (await states.get("sub_1")).status is SubscriptionStatus.PAST_DUE
        assert [e.event_type for e in publisher.events] == [DomainEventType.PAYMENT_FAILED]

    async def test_same_timestamp_broken_by_event_id(self, processor, states):
        later_id = _make_payload(id="evt_b", type="subscription.cancelled", created=NOW - 5)
        earlier_id = _make_payload(id="evt_a", type="payment.succeeded", created=NOW - 5)

        await processor.handle(*_signed(later_id))
        result = await processor.handle(*_signed(earlier_id))

        assert result.reason == "stale"
        state = await states.get("sub_1")
        assert state.status is SubscriptionStatus.CANCELLED
        assert state.renews is False

    async def test_unknown_type_committed_as_ignored(self, processor, ledger, publisher):
        result = await processor.handle(*_signed(_make_payload(type="invoice.finalized")))

        assert result.accepted
        assert result.reason == "ignored"
        assert publisher.events == []
        assert (await ledger.get(ledger_key("evt_123"))).outcome == {"result": "ignored"}

    async def test_subscription_lifecycle(self, processor, states):
        created = _make_payload(id="evt_1", type="subscription.created", created=NOW - 300)
        past_due = _make_payload(id="evt_2", type="payment.failed", created=NOW - 200)
        updated = _make_payload(
            id="evt_3", type="subscription.updated", created=NOW - 100, data={"tier": "enterprise"}
        )

        for payload in (created, past_due, updated):
            await processor.handle(*_signed(payload))

        state = await states.get("sub_1")
        assert state.status is SubscriptionStatus.PAST_DUE
        assert state.tier == "enterprise"
        assert state.last_event_id == "evt_3"


# ── Failure handling ─────────────────────────────────────────────────────────


class TestFailures:
    """Release on failure, in-progress racing, emission failures."""

    async def test_processing_failure_releases_reservation(
        self, session_factory, ledger, publisher, attempts, executor
    ):
        repository = FlakyRepository(session_factory, failures=1)
        processor = _make_processor(ledger, repository, publisher, attempts, executor)

        failed = await processor.handle(*_signed(_make_payload()))
        assert not failed.accepted
        assert failed.reason == "processing_failed"
        assert failed.retryable
        assert await ledger.get(ledger_key("evt_123")) is None

        redelivered = await processor.handle(*_signed(_make_payload()))
        assert redelivered.reason == "applied"

    async def test_live_reservation_asks_for_redelivery(
        self, ledger, states, publisher, attempts, executor
    ):
        processor = _make_processor(
            ledger, states, publisher, attempts, executor, in_progress_wait_seconds=0.05
        )
        await ledger.reserve(ledger_key("evt_123"))

        result = await processor.handle(*_signed(_make_payload()))

        assert not result.accepted
        assert result.reason == "in_progress"
        assert result.retryable

    async def test_emission_failure_journaled_and_reemitted(
        self, processor, publisher, attempts, fake_sleep
    ):
        publisher.failing = True
        result = await processor.handle(*_signed(_make_payload()))

        assert result.accepted
        assert result.reason == "applied"
        pending = await attempts.pending_failures(EVENT_BUS_SYSTEM)
        assert len(pending) == 1
        assert pending[0].entity_id == "evt_123"
        assert pending[0].attempts == 3

        publisher.failing = False
        assert await processor.reemit_failed() == 1
        assert await attempts.pending_failures(EVENT_BUS_SYSTEM) == []
        assert publisher.events[0].event_id == str(uuid.uuid5(uuid.NAMESPACE_URL, "billing:evt_123"))

    async def test_background_emission(self, ledger, states, publisher, attempts, executor):
        runner = BackgroundTaskRunner()
        processor = _make_processor(ledger, states, publisher, attempts, executor, runner=runner)

        result = await processor.handle(*_signed(_make_payload()))
        await runner.drain(timeout=5)

        assert result.reason == "applied"
        assert len(publisher.events) == 1

    async def test_cancelled_emission_journaled_for_reemit(
        self, ledger, states, attempts, executor
    ):
        publisher = HangingPublisher()
        runner = BackgroundTaskRunner()
        processor = _make_processor(ledger, states, publisher, attempts, executor, runner=runner)

        result = await processor.handle(*_signed(_make_payload()))
        assert result.reason == "applied"
        await asyncio.wait_for(publisher.started.wait(), timeout=5)
        await runner.cancel_all()

        pending = await attempts.pending_failures(EVENT_BUS_SYSTEM)
        assert len(pending) == 1
        assert pending[0].entity_id == "evt_123"
        assert "interrupted" in pending[0].last_error

        redelivered = await processor.handle(*_signed(_make_payload()))
        assert redelivered.duplicate

        publisher.hanging = False
        assert await processor.reemit_failed() == 1
        assert [e.event_type for e in publisher.events] == [DomainEventType.PAYMENT_SUCCEEDED]
        assert await attempts.pending_failures(EVENT_BUS_SYSTEM) == []

    def test_unclassified_event_has_no_domain_event(self):
        event = parse_event(json.dumps(_make_payload(type="invoice.finalized")).encode())
        with pytest.raises(ValueError):
            BillingWebhookProcessor._domain_event(event, None)
