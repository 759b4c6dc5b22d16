"""Sync orchestrator -- maps domain events to their side-effect fan-out.

| Event                         | Targets                                     |
|-------------------------------|---------------------------------------------|
| user.registered               | CRM contact, CRM activity                   |
| user.updated                  | CRM contact                                 |
| conversation.created          | CRM activity                                |
| conversation.status_changed   | CRM activity                                |
| message.received              | AI pre-draft (when enabled)                 |
| message.sent                  | CRM activity                                |
| subscription.*                | CRM deal                                    |
| payment.*                     | CRM deal, CRM activity                      |

Every target runs independently: one failing (or raising) target never
affects the others. ``dispatch()`` schedules the fan-out on the
BackgroundTaskRunner and returns at once, so the originating request is
never held up by an external call. The orchestrator keeps no state.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from pydantic import BaseModel, Field

from src.dealsmart.assistance.service import AssistanceService
from src.dealsmart.core.tasks import BackgroundTaskRunner
from src.dealsmart.crm.schemas import (
    ActivityRecord,
    CustomerProfile,
    SubscriptionSnapshot,
    SyncResult,
)
from src.dealsmart.crm.sync import CRMSyncAdapter
from src.dealsmart.events.bus import DOMAIN_STREAM, EventPublisher
from src.dealsmart.events.schemas import DomainEvent, DomainEventType

logger = structlog.get_logger(__name__)

Target = tuple[str, Callable[[], Awaitable[Any]]]

_SUBSCRIPTION_EVENTS = frozenset({
    DomainEventType.SUBSCRIPTION_CREATED,
    DomainEventType.SUBSCRIPTION_UPDATED,
    DomainEventType.SUBSCRIPTION_CANCELLED,
})
_PAYMENT_EVENTS = frozenset({
    DomainEventType.PAYMENT_SUCCEEDED,
    DomainEventType.PAYMENT_FAILED,
})


class TargetOutcome(BaseModel):
    """Result of one fan-out target."""

    target: str
    ok: bool
    detail: str | None = None
    result: dict[str, Any] | None = None


class FanOutReport(BaseModel):
    event_id: str
    event_type: DomainEventType
    outcomes: list[TargetOutcome] = Field(default_factory=list)

    @property
    def all_ok(self) -> bool:
        return all(o.ok for o in self.outcomes)


class SyncOrchestrator:
    """Stateless coordinator from domain events to CRM and AI workflows.

    Args:
        crm: CRM sync adapter (None disables CRM targets).
        assistance: Assistance service for AI pre-drafts (None disables them).
        runner: Background task runner used by ``dispatch``.
        auto_suggest: Pre-draft a suggestion when a customer message arrives.
    """

    def __init__(
        self,
        crm: CRMSyncAdapter | None,
        assistance: AssistanceService | None,
        runner: BackgroundTaskRunner,
        auto_suggest: bool = False,
    ) -> None:
        self._crm = crm
        self._assistance = assistance
        self._runner = runner
        self._auto_suggest = auto_suggest

    # ── Entry points ────────────────────────────────────────────────────────

    def dispatch(self, event: DomainEvent) -> asyncio.Task:
        """Schedule the fan-out for ``event`` and return immediately."""
        return self._runner.spawn(
            self.handle(event), name=f"orchestrator:{event.event_type.value}:{event.event_id}"
        )

    async def handle(self, event: DomainEvent) -> FanOutReport:
        """Run every target for ``event`` concurrently and report each outcome."""
        targets = self.targets_for(event)
        log = logger.bind(event_id=event.event_id, event_type=event.event_type.value)
        if not targets:
            log.debug("orchestrator.no_targets")
            return FanOutReport(event_id=event.event_id, event_type=event.event_type)

        results = await asyncio.gather(
            *(self._run_target(name, call, event) for name, call in targets),
            return_exceptions=True,
        )
        outcomes: list[TargetOutcome] = []
        for (name, _call), result in zip(targets, results):
            if isinstance(result, BaseException):
                # _run_target only lets cancellation escape
                outcomes.append(TargetOutcome(target=name, ok=False, detail="cancelled"))
            else:
                outcomes.append(result)

        report = FanOutReport(
            event_id=event.event_id, event_type=event.event_type, outcomes=outcomes
        )
        log.info(
            "orchestrator.fan_out_complete",
            targets=[o.target for o in outcomes],
            failed=[o.target for o in outcomes if not o.ok],
        )
        return report

    # ── Routing ─────────────────────────────────────────────────────────────

    def targets_for(self, event: DomainEvent) -> list[Target]:
        """Fan-out targets for ``event``. Pure routing, no I/O.

        Payload models are built inside each target call, so a malformed
        payload fails only its own target.
        """
        targets: list[Target] = []
        event_type = event.event_type
        crm = self._crm

        if crm is not None:
            if event_type in (DomainEventType.USER_REGISTERED, DomainEventType.USER_UPDATED):
                if _has_email(event):
                    targets.append((
                        "crm.contact",
                        lambda: crm.sync_contact(profile_from_event(event)),
                    ))

            if event_type in _SUBSCRIPTION_EVENTS or event_type in _PAYMENT_EVENTS:
                if _has_subscription_state(event):
                    targets.append((
                        "crm.deal",
                        lambda: crm.sync_deal(snapshot_from_event(event)),
                    ))

            if event_type in _ACTIVITY_SUMMARIES or event_type in _PAYMENT_EVENTS:
                if _activity_customer_id(event):
                    targets.append((
                        "crm.activity",
                        lambda: crm.log_activity(activity_from_event(event)),
                    ))

        if (
            self._auto_suggest
            and self._assistance is not None
            and event_type is DomainEventType.MESSAGE_RECEIVED
            and event.entity_type == "conversation"
        ):
            assistance = self._assistance
            targets.append((
                "ai.suggestion",
                lambda: assistance.request_suggestion(event.entity_id, actor="system:auto"),
            ))
        return targets

    async def _run_target(
        self, name: str, call: Callable[[], Awaitable[Any]], event: DomainEvent
    ) -> TargetOutcome:
        try:
            result = await call()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception(
                "orchestrator.target_failed",
                target=name,
                event_id=event.event_id,
                event_type=event.event_type.value,
                entity_id=event.entity_id,
            )
            return TargetOutcome(target=name, ok=False, detail=f"{type(exc).__name__}: {exc}")

        if isinstance(result, SyncResult):
            return TargetOutcome(
                target=name,
                ok=result.ok,
                detail=result.error or result.outcome.value,
                result=result.model_dump(mode="json"),
            )
        if isinstance(result, BaseModel):
            return TargetOutcome(target=name, ok=True, result=result.model_dump(mode="json"))
        return TargetOutcome(target=name, ok=True)


class OrchestratorPublisher(EventPublisher):
    """EventPublisher that hands events straight to the orchestrator in-process.

    Used when no Redis event bus is configured.
    """

    def __init__(self, orchestrator: SyncOrchestrator) -> None:
        self._orchestrator = orchestrator

    async def publish(self, event: DomainEvent, stream: str = DOMAIN_STREAM) -> str:
        self._orchestrator.dispatch(event)
        return event.event_id


# ── Event payload helpers ───────────────────────────────────────────────────

_ACTIVITY_SUMMARIES: dict[DomainEventType, str] = {
    DomainEventType.USER_REGISTERED: "Registered for DealSmart",
    DomainEventType.CONVERSATION_CREATED: "Conversation started",
    DomainEventType.CONVERSATION_STATUS_CHANGED: "Conversation {from_status} -> {to_status}",
    DomainEventType.MESSAGE_SENT: "Staff replied: {body}",
    DomainEventType.PAYMENT_SUCCEEDED: "Payment succeeded",
    DomainEventType.PAYMENT_FAILED: "Payment failed",
}

_MAX_SUMMARY_BODY = 200


def _has_email(event: DomainEvent) -> bool:
    if event.data.get("email"):
        return True
    logger.warning("orchestrator.user_event_missing_email", event_id=event.event_id)
    return False


def _has_subscription_state(event: DomainEvent) -> bool:
    subscription = event.data.get("subscription") or {}
    if subscription.get("status"):
        return True
    logger.warning("orchestrator.subscription_event_missing_state", event_id=event.event_id)
    return False


def _activity_customer_id(event: DomainEvent) -> str | None:
    data = event.data
    subscription = data.get("subscription") or {}
    customer_id = data.get("customer_id") or subscription.get("customer_id")
    if event.event_type is DomainEventType.USER_REGISTERED:
        customer_id = customer_id or event.entity_id
    return customer_id or None


def profile_from_event(event: DomainEvent) -> CustomerProfile:
    """Build the CRM contact source from a user event.

    Raises:
        pydantic.ValidationError: The event data is not a usable profile.
    """
    data = event.data
    return CustomerProfile(
        user_id=event.entity_id,
        email=data.get("email"),
        first_name=data.get("first_name"),
        last_name=data.get("last_name"),
        phone=data.get("phone"),
        dealership_name=data.get("dealership_name"),
        role=data.get("role"),
    )


def snapshot_from_event(event: DomainEvent) -> SubscriptionSnapshot:
    subscription = event.data.get("subscription") or {}
    return SubscriptionSnapshot(
        subscription_id=subscription.get("subscription_id") or event.entity_id,
        status=subscription.get("status"),
        customer_id=subscription.get("customer_id"),
        customer_email=subscription.get("customer_email"),
        dealership_name=event.data.get("dealership_name"),
        tier=subscription.get("tier"),
        renews=subscription.get("renews", True),
        amount_cents=subscription.get("amount_cents"),
        currency=subscription.get("currency"),
    )


def activity_from_event(event: DomainEvent) -> ActivityRecord:
    data = event.data
    subscription = data.get("subscription") or {}
    customer_email = (
        data.get("customer_email") or data.get("email") or subscription.get("customer_email")
    )
    template = _ACTIVITY_SUMMARIES.get(event.event_type, event.event_type.value)
    body = str(data.get("body") or "")[:_MAX_SUMMARY_BODY]
    summary = template.format(
        from_status=data.get("from_status", "?"),
        to_status=data.get("to_status", "?"),
        body=body,
    )
    return ActivityRecord(
        customer_id=_activity_customer_id(event),
        event_id=event.event_id,
        event_type=event.event_type.value,
        summary=summary,
        occurred_at=event.occurred_at,
        customer_email=customer_email,
    )
