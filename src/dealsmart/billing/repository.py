"""SubscriptionState repository with last-event-wins conditional writes.

``apply()`` is a single UPDATE guarded by
``(last_event_at, last_event_id) <= (incoming_at, incoming_id)``: an event
applies only if it is at least as new as the one that produced the row, with
equal timestamps ordered by event id. Re-applying the same event rewrites
identical values. When no row exists the change is inserted; losing that
insert race falls back to the guarded UPDATE.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import and_, func, literal, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.dealsmart.billing.models import SubscriptionStateModel
from src.dealsmart.billing.schemas import (
    ApplyOutcome,
    SubscriptionChange,
    SubscriptionStateRead,
    SubscriptionStatus,
)
from src.dealsmart.core.clock import as_utc, utcnow

logger = structlog.get_logger(__name__)


def _keep_if_none(value: Any, column: Any) -> Any:
    """SQL expression writing ``value``, or keeping the stored value when None."""
    return func.coalesce(literal(value, column.type), column)


def _model_to_state(model: SubscriptionStateModel) -> SubscriptionStateRead:
    return SubscriptionStateRead(
        subscription_id=model.subscription_id,
        customer_id=model.customer_id,
        customer_email=model.customer_email,
        status=SubscriptionStatus(model.status),
        tier=model.tier,
        renews=model.renews,
        amount_cents=model.amount_cents,
        currency=model.currency,
        last_event_id=model.last_event_id,
        last_event_at=as_utc(model.last_event_at),
        updated_at=as_utc(model.updated_at),
    )


class SubscriptionStateRepository:
    """Conditional-write persistence for SubscriptionState.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    async def get(self, subscription_id: str) -> SubscriptionStateRead | None:
        async for session in self._session_factory():
            model = await session.get(
                SubscriptionStateModel, subscription_id, populate_existing=True
            )
            if model is None:
                return None
            return _model_to_state(model)

    async def apply(self, change: SubscriptionChange) -> ApplyOutcome:
        """Apply ``change`` unless a newer event already wrote the row."""
        event_at = as_utc(change.event_at)
        applied = await self._guarded_update(change, event_at)
        if not applied:
            applied = await self._insert_or_update(change, event_at)

        state = await self.get(change.subscription_id)
        logger.info(
            "subscription_state.applied" if applied else "subscription_state.stale_event",
            subscription_id=change.subscription_id,
            event_id=change.event_id,
            event_at=event_at.isoformat(),
            status=state.status.value if state else None,
        )
        return ApplyOutcome(applied=applied, state=state)

    async def _guarded_update(self, change: SubscriptionChange, event_at: datetime) -> bool:
        model = SubscriptionStateModel
        newer_or_same = or_(
            model.last_event_at < event_at,
            and_(model.last_event_at == event_at, model.last_event_id <= change.event_id),
        )
        values = {
            "status": _keep_if_none(change.status.value if change.status else None, model.status),
            "last_event_id": change.event_id,
            "last_event_at": event_at,
            "updated_at": utcnow(),
            "customer_id": _keep_if_none(change.customer_id, model.customer_id),
            "customer_email": _keep_if_none(change.customer_email, model.customer_email),
            "tier": _keep_if_none(change.tier, model.tier),
            "amount_cents": _keep_if_none(change.amount_cents, model.amount_cents),
            "currency": _keep_if_none(change.currency, model.currency),
        }
        if change.renews is not None:
            values["renews"] = change.renews

        async for session in self._session_factory():
            result = await session.execute(
                update(model)
                .where(model.subscription_id == change.subscription_id, newer_or_same)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount == 1

    async def _insert_or_update(self, change: SubscriptionChange, event_at: datetime) -> bool:
        async for session in self._session_factory():
            exists = await session.scalar(
                select(SubscriptionStateModel.subscription_id).where(
                    SubscriptionStateModel.subscription_id == change.subscription_id
                )
            )
            if exists is not None:
                # Row present and the guard failed: a newer event won
                return False

            now = utcnow()
            session.add(
                SubscriptionStateModel(
                    subscription_id=change.subscription_id,
                    customer_id=change.customer_id,
                    customer_email=change.customer_email,
                    status=(change.status or SubscriptionStatus.ACTIVE).value,
                    tier=change.tier,
                    renews=True if change.renews is None else change.renews,
                    amount_cents=change.amount_cents,
                    currency=change.currency,
                    last_event_id=change.event_id,
                    last_event_at=event_at,
                    created_at=now,
                    updated_at=now,
                )
            )
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
            else:
                return True

        # A concurrent first event inserted the row; compete on the guard
        return await self._guarded_update(change, event_at)

    async def list_states(self, limit: int = 100) -> list[SubscriptionStateRead]:
        async for session in self._session_factory():
            result = await session.execute(
                select(SubscriptionStateModel)
                .order_by(SubscriptionStateModel.updated_at.desc())
                .limit(limit)
            )
            return [_model_to_state(m) for m in result.scalars().all()]
