"""SQL-backed idempotency ledger.

``reserve()`` inserts the key and relies on the primary-key constraint for
atomicity; losers of the race read the existing row instead. Lease
reclamation and commit are single conditional UPDATE statements, so no row
lock is ever held across the caller's external work.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.dealsmart.core.clock import as_utc, utcnow
from src.dealsmart.idempotency.ledger import (
    IdempotencyLedger,
    Reservation,
    ReservationStatus,
)
from src.dealsmart.idempotency.models import IdempotencyRecordModel

logger = structlog.get_logger(__name__)

_IN_PROGRESS = "in_progress"
_COMMITTED = "committed"


def _model_to_reservation(model: IdempotencyRecordModel) -> Reservation:
    if model.status == _COMMITTED:
        return Reservation(
            key=model.key,
            status=ReservationStatus.COMPLETED,
            outcome=model.outcome or {},
            committed_at=as_utc(model.committed_at),
        )
    return Reservation(key=model.key, status=ReservationStatus.IN_PROGRESS)


class SqlIdempotencyLedger(IdempotencyLedger):
    """Idempotency ledger stored in the ``idempotency_records`` table.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
        lease_seconds: How long an uncommitted reservation blocks other
            callers before it may be reclaimed.
    """

    def __init__(
        self,
        session_factory: Callable[..., AsyncGenerator[AsyncSession, None]],
        lease_seconds: int = 120,
    ) -> None:
        self._session_factory = session_factory
        self._lease = timedelta(seconds=lease_seconds)

    async def reserve(self, key: str, scope: str = "default") -> Reservation:
        now = utcnow()
        async for session in self._session_factory():
            session.add(
                IdempotencyRecordModel(
                    key=key,
                    scope=scope,
                    status=_IN_PROGRESS,
                    reserved_at=now,
                    lease_expires_at=now + self._lease,
                )
            )
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
            else:
                logger.debug("ledger.reserved", key=key, scope=scope)
                return Reservation(key=key, status=ReservationStatus.ACQUIRED)

            # Key exists: report it, or reclaim an expired lease
            reclaim = (
                update(IdempotencyRecordModel)
                .where(
                    IdempotencyRecordModel.key == key,
                    IdempotencyRecordModel.status == _IN_PROGRESS,
                    IdempotencyRecordModel.lease_expires_at < now,
                )
                .values(reserved_at=now, lease_expires_at=now + self._lease)
            )
            result = await session.execute(reclaim)
            await session.commit()
            if result.rowcount == 1:
                logger.warning("ledger.lease_reclaimed", key=key, scope=scope)
                return Reservation(key=key, status=ReservationStatus.ACQUIRED)

            existing = await session.get(IdempotencyRecordModel, key, populate_existing=True)
            if existing is None:
                # Released between our insert and read; the caller may redeliver
                return Reservation(key=key, status=ReservationStatus.IN_PROGRESS)
            return _model_to_reservation(existing)

    async def commit(self, key: str, outcome: dict[str, Any]) -> None:
        now = utcnow()
        async for session in self._session_factory():
            stmt = (
                update(IdempotencyRecordModel)
                .where(IdempotencyRecordModel.key == key)
                .values(status=_COMMITTED, outcome=outcome, committed_at=now)
            )
            result = await session.execute(stmt)
            if result.rowcount == 0:
                # Reservation pruned while the work ran; record the commit anyway
                session.add(
                    IdempotencyRecordModel(
                        key=key,
                        status=_COMMITTED,
                        outcome=outcome,
                        reserved_at=now,
                        lease_expires_at=now,
                        committed_at=now,
                    )
                )
            await session.commit()
            logger.debug("ledger.committed", key=key)

    async def release(self, key: str) -> None:
        async for session in self._session_factory():
            await session.execute(
                delete(IdempotencyRecordModel).where(
                    IdempotencyRecordModel.key == key,
                    IdempotencyRecordModel.status == _IN_PROGRESS,
                )
            )
            await session.commit()
            logger.debug("ledger.released", key=key)

    async def forget(self, key: str) -> None:
        async for session in self._session_factory():
            await session.execute(
                delete(IdempotencyRecordModel).where(IdempotencyRecordModel.key == key)
            )
            await session.commit()

    async def get(self, key: str) -> Reservation | None:
        async for session in self._session_factory():
            result = await session.execute(
                select(IdempotencyRecordModel).where(IdempotencyRecordModel.key == key)
            )
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return _model_to_reservation(model)

    async def prune(self, older_than: datetime) -> int:
        async for session in self._session_factory():
            result = await session.execute(
                delete(IdempotencyRecordModel).where(
                    IdempotencyRecordModel.reserved_at < older_than
                )
            )
            await session.commit()
            logger.info("ledger.pruned", removed=result.rowcount, older_than=older_than.isoformat())
            return result.rowcount
