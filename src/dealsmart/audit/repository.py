"""Sync attempt journal repository.

Append-only: ``record()`` inserts, nothing updates. Queries answer the two
questions reconciliation needs -- which entities are currently failed, and
which key last succeeded for an entity.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.dealsmart.audit.models import SyncAttemptModel
from src.dealsmart.audit.schemas import SyncAttemptCreate, SyncAttemptRead, SyncOutcome
from src.dealsmart.core.clock import as_utc, utcnow
from src.dealsmart.core.monitoring import sync_attempts_total

logger = structlog.get_logger(__name__)


def _model_to_attempt(model: SyncAttemptModel) -> SyncAttemptRead:
    return SyncAttemptRead(
        id=model.id,
        system=model.system,
        kind=model.kind,
        entity_type=model.entity_type,
        entity_id=model.entity_id,
        idempotency_key=model.idempotency_key,
        outcome=SyncOutcome(model.outcome),
        attempts=model.attempts,
        last_error=model.last_error,
        payload=model.payload or {},
        external_id=model.external_id,
        started_at=as_utc(model.started_at),
        recorded_at=as_utc(model.recorded_at),
    )


class SyncAttemptRepository:
    """Journal of outbound sync attempts.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    async def record(self, data: SyncAttemptCreate) -> SyncAttemptRead:
        """Append one attempt row."""
        async for session in self._session_factory():
            model = SyncAttemptModel(
                system=data.system,
                kind=data.kind,
                entity_type=data.entity_type,
                entity_id=data.entity_id,
                idempotency_key=data.idempotency_key,
                outcome=data.outcome.value,
                attempts=data.attempts,
                last_error=data.last_error,
                payload=data.payload,
                external_id=data.external_id,
                started_at=data.started_at,
                recorded_at=utcnow(),
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)

            sync_attempts_total.labels(
                system=data.system, kind=data.kind, outcome=data.outcome.value
            ).inc()
            log = logger.warning if data.outcome is SyncOutcome.FAILED else logger.info
            log(
                "sync_attempt.recorded",
                system=data.system,
                kind=data.kind,
                entity_id=data.entity_id,
                outcome=data.outcome.value,
                attempts=data.attempts,
                last_error=data.last_error,
            )
            return _model_to_attempt(model)

    async def list_for_entity(
        self, entity_id: str, system: str | None = None
    ) -> list[SyncAttemptRead]:
        async for session in self._session_factory():
            stmt = select(SyncAttemptModel).where(SyncAttemptModel.entity_id == entity_id)
            if system is not None:
                stmt = stmt.where(SyncAttemptModel.system == system)
            result = await session.execute(stmt.order_by(SyncAttemptModel.id))
            return [_model_to_attempt(m) for m in result.scalars().all()]

    async def list_recent(self, limit: int = 50) -> list[SyncAttemptRead]:
        async for session in self._session_factory():
            result = await session.execute(
                select(SyncAttemptModel).order_by(SyncAttemptModel.id.desc()).limit(limit)
            )
            return [_model_to_attempt(m) for m in result.scalars().all()]

    async def last_success(
        self, system: str, kind: str, entity_id: str
    ) -> SyncAttemptRead | None:
        async for session in self._session_factory():
            result = await session.execute(
                select(SyncAttemptModel)
                .where(
                    SyncAttemptModel.system == system,
                    SyncAttemptModel.kind == kind,
                    SyncAttemptModel.entity_id == entity_id,
                    SyncAttemptModel.outcome == SyncOutcome.SUCCESS.value,
                )
                .order_by(SyncAttemptModel.id.desc())
                .limit(1)
            )
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return _model_to_attempt(model)

    async def pending_failures(
        self, system: str, limit: int = 100
    ) -> list[SyncAttemptRead]:
        """Failed attempts that are still the latest word on their entity.

        An entity whose most recent attempt (per system, kind and entity id)
        is ``failed`` has not been brought in sync yet.
        """
        async for session in self._session_factory():
            latest = (
                select(func.max(SyncAttemptModel.id).label("id"))
                .where(SyncAttemptModel.system == system)
                .group_by(SyncAttemptModel.kind, SyncAttemptModel.entity_id)
                .subquery()
            )
            result = await session.execute(
                select(SyncAttemptModel)
                .join(latest, SyncAttemptModel.id == latest.c.id)
                .where(SyncAttemptModel.outcome == SyncOutcome.FAILED.value)
                .order_by(SyncAttemptModel.id)
                .limit(limit)
            )
            return [_model_to_attempt(m) for m in result.scalars().all()]

    async def count_by_outcome(self, system: str | None = None) -> dict[str, int]:
        async for session in self._session_factory():
            stmt = select(SyncAttemptModel.outcome, func.count()).group_by(
                SyncAttemptModel.outcome
            )
            if system is not None:
                stmt = stmt.where(SyncAttemptModel.system == system)
            result = await session.execute(stmt)
            return {outcome: count for outcome, count in result.all()}
