"""Billing webhook processor -- verify, dedupe, apply, commit, emit.

``handle(raw_payload, signature_header)`` runs five gates in order:

1. Verify the HMAC signature. Failure is a terminal Rejected with no ledger
   entry.
2. Reserve the provider event id in the idempotency ledger. An already
   committed event returns Accepted without reapplying anything. A delivery
   racing a live reservation waits briefly for the holder to commit, then
   either reports the duplicate or asks the provider to redeliver.
3. Classify the event and apply it to SubscriptionState with the
   last-event-wins conditional write.
4. Commit the event id with its outcome. A failure or cancellation before
   this point releases the reservation so redelivery reprocesses it.
5. Emit the matching domain event through the RetryExecutor. Emission runs
   after the commit and cannot undo it; terminal emission failures are
   journaled as ``event_bus`` SyncAttempts and re-emitted by
   ``reemit_failed()``.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from collections.abc import Callable
from datetime import datetime
from typing import Any

import structlog
from pydantic import ValidationError as PydanticValidationError

from src.dealsmart.audit.repository import SyncAttemptRepository
from src.dealsmart.audit.schemas import SyncAttemptCreate, SyncOutcome
from src.dealsmart.billing.repository import SubscriptionStateRepository
from src.dealsmart.billing.schemas import (
    DOMAIN_EVENT_BY_KIND,
    BillingEvent,
    BillingEventKind,
    SubscriptionChange,
    SubscriptionStateRead,
    SubscriptionStatus,
    WebhookDecision,
    WebhookResult,
)
from src.dealsmart.billing.signature import verify_signature
from src.dealsmart.core.clock import utcnow
from src.dealsmart.core.errors import AuthError, ValidationError
from src.dealsmart.core.monitoring import webhook_events_total
from src.dealsmart.core.retry import RetryExecutor, RetryPolicy, RetryResult
from src.dealsmart.core.tasks import BackgroundTaskRunner
from src.dealsmart.events.bus import EventPublisher
from src.dealsmart.events.schemas import DomainEvent
from src.dealsmart.idempotency.ledger import IdempotencyLedger, wait_for_completion

logger = structlog.get_logger(__name__)

EVENT_BUS_SYSTEM = "event_bus"
_LEDGER_SCOPE = "billing_webhook"


def ledger_key(event_id: str) -> str:
    return f"billing:{event_id}"


def parse_event(raw_payload: bytes) -> BillingEvent:
    """Parse the provider envelope.

    Raises:
        ValidationError: Body is not JSON or lacks required fields.
    """
    try:
        body = json.loads(raw_payload)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValidationError("Webhook body is not valid JSON") from exc
    if not isinstance(body, dict):
        raise ValidationError("Webhook body must be a JSON object")
    try:
        return BillingEvent.model_validate(body)
    except PydanticValidationError as exc:
        raise ValidationError(f"Malformed webhook event: {exc.error_count()} invalid field(s)") from exc


def derive_change(event: BillingEvent) -> SubscriptionChange | None:
    """Map a billing event onto the SubscriptionState fields it sets.

    Returns None for event types the processor does not apply.
    """
    kind = event.kind
    if kind is None:
        return None

    data = event.data
    status: SubscriptionStatus | None
    renews = data.renews
    if kind is BillingEventKind.SUBSCRIPTION_CREATED:
        status = data.status or SubscriptionStatus.ACTIVE
        renews = True if renews is None else renews
    elif kind is BillingEventKind.SUBSCRIPTION_UPDATED:
        status = data.status
    elif kind is BillingEventKind.SUBSCRIPTION_CANCELLED:
        status = (
            SubscriptionStatus.EXPIRED
            if data.status is SubscriptionStatus.EXPIRED
            else SubscriptionStatus.CANCELLED
        )
        renews = False
    elif kind is BillingEventKind.PAYMENT_SUCCEEDED:
        status = SubscriptionStatus.ACTIVE
    else:
        status = SubscriptionStatus.PAST_DUE

    return SubscriptionChange(
        subscription_id=data.subscription_id,
        event_id=event.id,
        event_at=event.created,
        status=status,
        customer_id=data.customer_id,
        customer_email=data.customer_email,
        tier=data.tier,
        renews=renews,
        amount_cents=data.amount_cents,
        currency=data.currency,
    )


class BillingWebhookProcessor:
    """Applies billing provider webhooks exactly once.

    Args:
        secret: Shared webhook signing secret.
        ledger: Idempotency ledger keyed by provider event id.
        repository: SubscriptionState persistence.
        publisher: Durable domain event publisher.
        attempts: Journal for failed (and re-emitted) event emissions.
        executor: RetryExecutor wrapping every publish call.
        runner: When given, emission runs in the background and ``handle``
            returns as soon as the event is committed.
        tolerance_seconds: Allowed signature timestamp skew.
        in_progress_wait_seconds: How long a racing delivery waits for the
            holder of the reservation to commit.
        emit_policy: RetryPolicy override for publishing.
        clock: Returns current unix time (signature tolerance check).
    """

    def __init__(
        self,
        secret: str,
        ledger: IdempotencyLedger,
        repository: SubscriptionStateRepository,
        publisher: EventPublisher,
        attempts: SyncAttemptRepository,
        executor: RetryExecutor,
        runner: BackgroundTaskRunner | None = None,
        tolerance_seconds: int = 300,
        in_progress_wait_seconds: float = 2.0,
        emit_policy: RetryPolicy | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._secret = secret
        self._ledger = ledger
        self._repository = repository
        self._publisher = publisher
        self._attempts = attempts
        self._executor = executor
        self._runner = runner
        self._tolerance = tolerance_seconds
        self._in_progress_wait = in_progress_wait_seconds
        self._emit_policy = emit_policy
        self._clock = clock

    async def handle(self, raw_payload: bytes, signature_header: str | None) -> WebhookResult:
        """Process one webhook delivery. Returns Accepted or Rejected."""
        result = await self._handle(raw_payload, signature_header)
        webhook_events_total.labels(result=result.reason).inc()
        return result

    async def _handle(self, raw_payload: bytes, signature_header: str | None) -> WebhookResult:
        # 1. Signature
        try:
            verify_signature(
                raw_payload,
                signature_header,
                self._secret,
                tolerance_seconds=self._tolerance,
                now=self._clock() if self._clock else None,
            )
        except AuthError as exc:
            logger.warning("billing_webhook.signature_rejected", reason=str(exc))
            return WebhookResult(decision=WebhookDecision.REJECTED, reason="invalid_signature")

        try:
            event = parse_event(raw_payload)
        except ValidationError as exc:
            logger.warning("billing_webhook.malformed_payload", error=str(exc))
            return WebhookResult(decision=WebhookDecision.REJECTED, reason="malformed_payload")

        log = logger.bind(event_id=event.id, event_type=event.type)

        # 2. Reserve
        key = ledger_key(event.id)
        reservation = await self._ledger.reserve(key, scope=_LEDGER_SCOPE)
        if not reservation.acquired:
            if not reservation.completed:
                reservation = await wait_for_completion(
                    self._ledger, key, timeout=self._in_progress_wait
                )
            if reservation is not None and reservation.completed:
                log.info("billing_webhook.duplicate", outcome=reservation.outcome)
                return WebhookResult(
                    decision=WebhookDecision.ACCEPTED,
                    reason="duplicate",
                    event_id=event.id,
                    duplicate=True,
                )
            log.info("billing_webhook.in_progress")
            return WebhookResult(
                decision=WebhookDecision.REJECTED,
                reason="in_progress",
                event_id=event.id,
                retryable=True,
            )

        # 3 + 4. Apply and commit; anything short of commit releases the key
        try:
            change = derive_change(event)
            if change is None:
                outcome: dict[str, Any] = {"result": "ignored"}
                apply_outcome = None
            else:
                apply_outcome = await self._repository.apply(change)
                outcome = {
                    "result": "applied" if apply_outcome.applied else "stale",
                    "subscription_id": change.subscription_id,
                    "status": apply_outcome.state.status.value if apply_outcome.state else None,
                }
            await self._ledger.commit(key, outcome)
        except asyncio.CancelledError:
            await asyncio.shield(self._ledger.release(key))
            log.warning("billing_webhook.cancelled")
            raise
        except Exception as exc:
            await self._ledger.release(key)
            log.exception("billing_webhook.processing_failed", error=str(exc))
            return WebhookResult(
                decision=WebhookDecision.REJECTED,
                reason="processing_failed",
                event_id=event.id,
                retryable=True,
            )

        log.info("billing_webhook.committed", **outcome)

        # 5. Emit
        if apply_outcome is not None and apply_outcome.applied:
            domain_event = self._domain_event(event, apply_outcome.state)
            if self._runner is not None:
                self._runner.spawn(
                    self._emit(domain_event, event.id), name=f"billing.emit:{event.id}"
                )
            else:
                await self._emit(domain_event, event.id)

        return WebhookResult(
            decision=WebhookDecision.ACCEPTED,
            reason="ignored" if change is None else outcome["result"],
            event_id=event.id,
            state=apply_outcome.state if apply_outcome else None,
        )

    # ── Emission ────────────────────────────────────────────────────────────

    @staticmethod
    def _domain_event(
        event: BillingEvent, state: SubscriptionStateRead | None
    ) -> DomainEvent:
        kind = event.kind
        if kind is None:
            raise ValueError(f"Billing event type '{event.type}' has no domain event")
        snapshot = state.model_dump(mode="json") if state is not None else {}
        return DomainEvent(
            # Same id on every re-emission of this billing event
            event_id=str(uuid.uuid5(uuid.NAMESPACE_URL, f"billing:{event.id}")),
            event_type=DOMAIN_EVENT_BY_KIND[kind],
            occurred_at=event.created,
            entity_type="subscription",
            entity_id=event.data.subscription_id,
            actor="billing_provider",
            data={
                "billing_event_id": event.id,
                "billing_event_type": event.type,
                "subscription": snapshot,
                "amount_cents": event.data.amount_cents,
                "currency": event.data.currency,
            },
            correlation_id=event.id,
        )

    async def _emit(self, domain_event: DomainEvent, billing_event_id: str) -> bool:
        """Publish under the retry policy; journal the outcome.

        Never raises except for cancellation. A cancelled emission (shutdown
        cutting the background task short) is journaled as failed before the cancellation
        propagates, so ``reemit_failed()`` publishes it after restart.
        """
        started = utcnow()
        try:
            result = await self._executor.execute(
                lambda: self._publisher.publish(domain_event),
                self._emit_policy,
                name="billing.emit",
                log_context={"billing_event_id": billing_event_id},
            )
        except asyncio.CancelledError:
            interrupted: RetryResult[str] = RetryResult(
                ok=False, attempts=1, error=asyncio.CancelledError("emission interrupted")
            )
            await asyncio.shield(
                self._journal(domain_event, billing_event_id, interrupted, started)
            )
            raise
        await self._journal(domain_event, billing_event_id, result, started)
        return result.ok

    async def _journal(
        self,
        domain_event: DomainEvent,
        billing_event_id: str,
        result: RetryResult,
        started: datetime,
    ) -> None:
        try:
            await self._attempts.record(
                SyncAttemptCreate(
                    system=EVENT_BUS_SYSTEM,
                    kind=domain_event.event_type.value,
                    entity_type="billing_event",
                    entity_id=billing_event_id,
                    idempotency_key=ledger_key(billing_event_id),
                    outcome=SyncOutcome.SUCCESS if result.ok else SyncOutcome.FAILED,
                    attempts=result.attempts,
                    last_error=result.last_error,
                    payload=domain_event.model_dump(mode="json"),
                    external_id=str(result.value) if result.ok else None,
                    started_at=started,
                )
            )
        except Exception:
            logger.exception(
                "billing_webhook.emission_journal_failed",
                billing_event_id=billing_event_id,
                emitted=result.ok,
            )

    async def reemit_failed(self, limit: int = 50) -> int:
        """Re-publish domain events whose emission last failed.

        Returns:
            Number of events published successfully in this sweep.
        """
        pending = await self._attempts.pending_failures(EVENT_BUS_SYSTEM, limit=limit)
        emitted = 0
        for attempt in pending:
            try:
                domain_event = DomainEvent.model_validate(attempt.payload)
            except PydanticValidationError:
                logger.error(
                    "billing_webhook.reemit_unreadable_payload",
                    billing_event_id=attempt.entity_id,
                    attempt_id=attempt.id,
                )
                continue
            if await self._emit(domain_event, attempt.entity_id):
                emitted += 1
        if pending:
            logger.info("billing_webhook.reemit_sweep", pending=len(pending), emitted=emitted)
        return emitted
