"""CRM sync adapter -- best-effort, deduplicated pushes to the CRM.

Each public method maps a domain entity through the pure field mapping,
keys the payload in the idempotency ledger by (kind, entity id, content
hash), runs the provider call under the RetryExecutor and journals the
result as a SyncAttempt:

- ``success``: provider call succeeded, key committed
- ``skipped``: identical content already synced (or being synced)
- ``failed``: retries exhausted, terminal error or cancelled mid-call; the
  key is released and the stored payload is picked up by ``reconcile()``

None of the methods raise (cancellation aside): sync failure must never
fail the domain action that triggered it.

After a successful sync the key of the entity's previous successful sync is
forgotten, so returning to an earlier payload (A -> B -> A) syncs again
instead of being mistaken for a no-op.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

import structlog
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from src.dealsmart.audit.repository import SyncAttemptRepository
from src.dealsmart.audit.schemas import SyncAttemptCreate, SyncOutcome
from src.dealsmart.core.clock import utcnow
from src.dealsmart.core.retry import RetryExecutor, RetryPolicy
from src.dealsmart.crm.adapter import CRMClient
from src.dealsmart.crm.field_mapping import (
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
    SyncResult,
)
from src.dealsmart.idempotency.ledger import IdempotencyLedger

logger = structlog.get_logger(__name__)

_LEDGER_SCOPE = "crm_sync"

_ENTITY_TYPE = {
    SyncKind.CONTACT: "user",
    SyncKind.DEAL: "subscription",
    SyncKind.ACTIVITY: "activity",
}


class CRMSyncAdapter:
    """Syncs users, subscriptions and activity to a CRMClient.

    Args:
        client: CRM provider client.
        ledger: Idempotency ledger for (kind, entity, content) keys.
        attempts: SyncAttempt journal.
        executor: RetryExecutor wrapping every provider call.
        policy: Optional RetryPolicy override for CRM calls.
        system: System name recorded on SyncAttempts.
    """

    def __init__(
        self,
        client: CRMClient,
        ledger: IdempotencyLedger,
        attempts: SyncAttemptRepository,
        executor: RetryExecutor,
        policy: RetryPolicy | None = None,
        system: str = "hubspot",
    ) -> None:
        self._client = client
        self._ledger = ledger
        self._attempts = attempts
        self._executor = executor
        self._policy = policy
        self._system = system

    @property
    def system(self) -> str:
        return self._system

    # ── Public operations ───────────────────────────────────────────────────

    async def sync_contact(self, profile: CustomerProfile) -> SyncResult:
        """Upsert the user's CRM contact (keyed by email)."""
        contact = user_to_contact(profile)
        return await self._sync(
            SyncKind.CONTACT,
            profile.user_id,
            source=profile,
            request=contact,
            call=lambda: self._client.upsert_contact(contact),
        )

    async def sync_deal(self, snapshot: SubscriptionSnapshot) -> SyncResult:
        """Upsert the subscription's deal; stage follows subscription status."""
        deal = subscription_to_deal(snapshot)
        return await self._sync(
            SyncKind.DEAL,
            snapshot.subscription_id,
            source=snapshot,
            request=deal,
            call=lambda: self._client.upsert_deal(deal),
        )

    async def log_activity(self, record: ActivityRecord) -> SyncResult:
        """Append a timeline note keyed by (customer id, event id)."""
        activity = event_to_activity(record)
        return await self._sync(
            SyncKind.ACTIVITY,
            activity.activity_key,
            source=record,
            request=activity,
            call=lambda: self._client.append_activity(activity),
        )

    async def reconcile(self, limit: int = 50) -> list[SyncResult]:
        """Retry entities whose latest sync attempt failed.

        Returns:
            Results of this sweep, one per retried entity.
        """
        try:
            pending = await self._attempts.pending_failures(self._system, limit=limit)
        except Exception:
            logger.exception("crm_sync.reconcile_query_failed", system=self._system)
            return []

        results: list[SyncResult] = []
        for attempt in pending:
            source = attempt.payload.get("source", {})
            try:
                kind = SyncKind(attempt.kind)
                if kind is SyncKind.CONTACT:
                    result = await self.sync_contact(CustomerProfile.model_validate(source))
                elif kind is SyncKind.DEAL:
                    result = await self.sync_deal(SubscriptionSnapshot.model_validate(source))
                else:
                    result = await self.log_activity(ActivityRecord.model_validate(source))
            except (ValueError, PydanticValidationError):
                logger.error(
                    "crm_sync.reconcile_unreadable_payload",
                    attempt_id=attempt.id,
                    kind=attempt.kind,
                    entity_id=attempt.entity_id,
                )
                continue
            results.append(result)

        if pending:
            logger.info(
                "crm_sync.reconcile_sweep",
                system=self._system,
                pending=len(pending),
                recovered=sum(1 for r in results if r.outcome is SyncOutcome.SUCCESS),
            )
        return results

    # ── Internals ───────────────────────────────────────────────────────────

    async def _sync(
        self,
        kind: SyncKind,
        entity_id: str,
        source: BaseModel,
        request: BaseModel,
        call: Callable[[], Awaitable[str]],
    ) -> SyncResult:
        body = request.model_dump(mode="json")
        key = sync_key(kind, entity_id, body)
        payload = {"source": source.model_dump(mode="json"), "request": body}
        log = logger.bind(system=self._system, kind=kind.value, entity_id=entity_id)

        try:
            return await self._sync_reserved(kind, entity_id, key, payload, call)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            # Ledger or journal unavailable; the domain action still stands
            log.exception("crm_sync.unexpected_error", error=str(exc))
            return SyncResult(
                system=self._system,
                kind=kind,
                entity_id=entity_id,
                idempotency_key=key,
                outcome=SyncOutcome.FAILED,
                error=f"{type(exc).__name__}: {exc}",
            )

    async def _sync_reserved(
        self,
        kind: SyncKind,
        entity_id: str,
        key: str,
        payload: dict[str, Any],
        call: Callable[[], Awaitable[str]],
    ) -> SyncResult:
        log = logger.bind(system=self._system, kind=kind.value, entity_id=entity_id)
        started = utcnow()
        reservation = await self._ledger.reserve(key, scope=_LEDGER_SCOPE)
        if not reservation.acquired:
            external_id = (reservation.outcome or {}).get("external_id")
            await self._record(
                kind, entity_id, key, SyncOutcome.SKIPPED, payload,
                started=started, external_id=external_id,
            )
            log.info("crm_sync.skipped", reservation=reservation.status.value)
            return SyncResult(
                system=self._system,
                kind=kind,
                entity_id=entity_id,
                idempotency_key=key,
                outcome=SyncOutcome.SKIPPED,
                external_id=external_id,
            )

        try:
            result = await self._executor.execute(
                call,
                self._policy,
                name=f"crm.{kind.value}",
                log_context={"entity_id": entity_id},
            )
        except asyncio.CancelledError:
            await asyncio.shield(self._abandon(kind, entity_id, key, payload, started))
            raise

        if not result.ok:
            await self._ledger.release(key)
            await self._record(
                kind, entity_id, key, SyncOutcome.FAILED, payload,
                started=started, attempts=result.attempts, last_error=result.last_error,
            )
            return SyncResult(
                system=self._system,
                kind=kind,
                entity_id=entity_id,
                idempotency_key=key,
                outcome=SyncOutcome.FAILED,
                attempts=result.attempts,
                error=result.last_error,
            )

        external_id = str(result.value)
        await self._ledger.commit(key, {"external_id": external_id, "attempts": result.attempts})
        previous = await self._attempts.last_success(self._system, kind.value, entity_id)
        await self._record(
            kind, entity_id, key, SyncOutcome.SUCCESS, payload,
            started=started, attempts=result.attempts, external_id=external_id,
        )
        if previous is not None and previous.idempotency_key != key:
            await self._ledger.forget(previous.idempotency_key)

        return SyncResult(
            system=self._system,
            kind=kind,
            entity_id=entity_id,
            idempotency_key=key,
            outcome=SyncOutcome.SUCCESS,
            attempts=result.attempts,
            external_id=external_id,
        )

    async def _abandon(
        self,
        kind: SyncKind,
        entity_id: str,
        key: str,
        payload: dict[str, Any],
        started: datetime,
    ) -> None:
        """Release the key of a cancelled sync and journal it for ``reconcile()``."""
        try:
            await self._ledger.release(key)
            await self._record(
                kind, entity_id, key, SyncOutcome.FAILED, payload,
                started=started, attempts=1, last_error="CancelledError: sync interrupted",
            )
        except Exception:
            logger.exception(
                "crm_sync.cancel_journal_failed",
                system=self._system,
                kind=kind.value,
                entity_id=entity_id,
            )

    async def _record(
        self,
        kind: SyncKind,
        entity_id: str,
        key: str,
        outcome: SyncOutcome,
        payload: dict[str, Any],
        *,
        started: datetime,
        attempts: int = 0,
        last_error: str | None = None,
        external_id: str | None = None,
    ) -> None:
        await self._attempts.record(
            SyncAttemptCreate(
                system=self._system,
                kind=kind.value,
                entity_type=_ENTITY_TYPE[kind],
                entity_id=entity_id,
                idempotency_key=key,
                outcome=outcome,
                attempts=attempts,
                last_error=last_error,
                payload=payload,
                external_id=external_id,
                started_at=started,
            )
        )
