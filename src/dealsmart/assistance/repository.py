"""AIAssistance repository (session_factory pattern).

Disposition changes are conditional UPDATEs on the current disposition, so
two staff members acting on the same suggestion cannot both win.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.dealsmart.assistance.models import AIAssistanceModel
from src.dealsmart.assistance.schemas import (
    AIAssistanceCreate,
    AIAssistanceRead,
    Disposition,
    SuggestionFlag,
)
from src.dealsmart.core.clock import as_utc, utcnow

logger = structlog.get_logger(__name__)


def _model_to_assistance(model: AIAssistanceModel) -> AIAssistanceRead:
    """Convert AIAssistanceModel to AIAssistanceRead schema."""
    return AIAssistanceRead(
        id=model.id,
        conversation_id=model.conversation_id,
        message_id=model.message_id,
        suggested_text=model.suggested_text,
        confidence=model.confidence,
        needs_clarification=model.needs_clarification,
        flags=[SuggestionFlag(f) for f in (model.flags or [])],
        requested_by=model.requested_by,
        disposition=Disposition(model.disposition),
        final_text=model.final_text,
        rating=model.rating,
        sent_message_id=model.sent_message_id,
        disposition_by=model.disposition_by,
        disposition_at=as_utc(model.disposition_at),
        created_at=as_utc(model.created_at),
        updated_at=as_utc(model.updated_at),
    )


class AIAssistanceRepository:
    """Async persistence for AIAssistance rows.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    async def create(self, data: AIAssistanceCreate) -> AIAssistanceRead:
        now = utcnow()
        async for session in self._session_factory():
            model = AIAssistanceModel(
                conversation_id=data.conversation_id,
                message_id=data.message_id,
                suggested_text=data.suggested_text,
                confidence=data.confidence,
                needs_clarification=data.needs_clarification,
                flags=[f.value for f in data.flags],
                requested_by=data.requested_by,
                disposition=Disposition.PENDING.value,
                created_at=now,
                updated_at=now,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_assistance(model)

    async def get(self, assistance_id: str) -> AIAssistanceRead | None:
        async for session in self._session_factory():
            model = await session.get(AIAssistanceModel, assistance_id, populate_existing=True)
            if model is None:
                return None
            return _model_to_assistance(model)

    async def list_for_conversation(self, conversation_id: str) -> list[AIAssistanceRead]:
        async for session in self._session_factory():
            result = await session.execute(
                select(AIAssistanceModel)
                .where(AIAssistanceModel.conversation_id == conversation_id)
                .order_by(AIAssistanceModel.created_at)
            )
            return [_model_to_assistance(m) for m in result.scalars().all()]

    async def transition_disposition(
        self,
        assistance_id: str,
        expected: Disposition,
        new: Disposition,
        actor: str,
        final_text: str | None = None,
    ) -> AIAssistanceRead | None:
        """Set ``new`` only if the current disposition is ``expected``.

        Returns:
            The updated row, or None if the disposition had already moved.
        """
        now = utcnow()
        async for session in self._session_factory():
            result = await session.execute(
                update(AIAssistanceModel)
                .where(
                    AIAssistanceModel.id == assistance_id,
                    AIAssistanceModel.disposition == expected.value,
                )
                .values(
                    disposition=new.value,
                    final_text=final_text,
                    disposition_by=actor,
                    disposition_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            if result.rowcount != 1:
                return None
            model = await session.get(AIAssistanceModel, assistance_id, populate_existing=True)
            return _model_to_assistance(model)

    async def revert_to_pending(self, assistance_id: str, from_disposition: Disposition) -> None:
        """Undo a claimed disposition whose staff message could not be sent."""
        async for session in self._session_factory():
            await session.execute(
                update(AIAssistanceModel)
                .where(
                    AIAssistanceModel.id == assistance_id,
                    AIAssistanceModel.disposition == from_disposition.value,
                    AIAssistanceModel.sent_message_id.is_(None),
                )
                .values(
                    disposition=Disposition.PENDING.value,
                    final_text=None,
                    disposition_by=None,
                    disposition_at=None,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()

    async def set_sent_message(self, assistance_id: str, message_id: str) -> AIAssistanceRead | None:
        async for session in self._session_factory():
            await session.execute(
                update(AIAssistanceModel)
                .where(AIAssistanceModel.id == assistance_id)
                .values(sent_message_id=message_id, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            model = await session.get(AIAssistanceModel, assistance_id, populate_existing=True)
            if model is None:
                return None
            return _model_to_assistance(model)

    async def set_rating(self, assistance_id: str, rating: int) -> AIAssistanceRead | None:
        async for session in self._session_factory():
            result = await session.execute(
                update(AIAssistanceModel)
                .where(AIAssistanceModel.id == assistance_id)
                .values(rating=rating, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            if result.rowcount != 1:
                return None
            model = await session.get(AIAssistanceModel, assistance_id, populate_existing=True)
            return _model_to_assistance(model)
