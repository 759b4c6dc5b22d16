"""Conversation repository -- async persistence for conversations and messages.

Follows the session_factory callable pattern: every method opens its own
session via ``async for session in self._session_factory()``.

Status changes are single conditional UPDATEs (``WHERE status = :expected``)
written in the same transaction as their journal row, so concurrent writers
never hold a lock across anything but the statement itself. Message appends
claim the next per-conversation sequence number; a unique constraint turns a
lost race into an IntegrityError and the append is retried.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timedelta

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.dealsmart.conversations.models import (
    ConversationModel,
    ConversationTransitionModel,
    MessageModel,
)
from src.dealsmart.conversations.schemas import (
    ConversationCreate,
    ConversationRead,
    ConversationStatus,
    MessageAppendResult,
    MessageCreate,
    MessageRead,
    Priority,
    SenderType,
    TransitionRead,
)
from src.dealsmart.core.clock import as_utc, utcnow

logger = structlog.get_logger(__name__)

StatusRule = Callable[[ConversationStatus, SenderType], ConversationStatus | None]

_MAX_APPEND_ATTEMPTS = 5


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_conversation(model: ConversationModel) -> ConversationRead:
    """Convert ConversationModel to ConversationRead schema."""
    return ConversationRead(
        id=model.id,
        customer_id=model.customer_id,
        customer_email=model.customer_email,
        customer_name=model.customer_name,
        subject=model.subject,
        assigned_to=model.assigned_to,
        status=ConversationStatus(model.status),
        priority=Priority(model.priority),
        source_metadata=model.source_metadata or {},
        created_at=as_utc(model.created_at),
        updated_at=as_utc(model.updated_at),
    )


def _model_to_message(model: MessageModel) -> MessageRead:
    """Convert MessageModel to MessageRead schema."""
    return MessageRead(
        id=model.id,
        conversation_id=model.conversation_id,
        sequence=model.sequence,
        sender=SenderType(model.sender),
        sender_id=model.sender_id,
        body=model.body,
        ai_assistance_id=model.ai_assistance_id,
        created_at=as_utc(model.created_at),
    )


def _model_to_transition(model: ConversationTransitionModel) -> TransitionRead:
    return TransitionRead(
        id=model.id,
        conversation_id=model.conversation_id,
        from_status=ConversationStatus(model.from_status),
        to_status=ConversationStatus(model.to_status),
        actor=model.actor,
        reason=model.reason,
        created_at=as_utc(model.created_at),
    )


class _AppendRace(Exception):
    """Another writer claimed the sequence number or changed status first."""


# ── Repository ──────────────────────────────────────────────────────────────


class ConversationRepository:
    """Async persistence for conversations, messages and transitions.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    # ── Conversations ───────────────────────────────────────────────────────

    async def create(self, data: ConversationCreate) -> ConversationRead:
        now = utcnow()
        async for session in self._session_factory():
            model = ConversationModel(
                customer_id=data.customer_id,
                customer_email=data.customer_email,
                customer_name=data.customer_name,
                subject=data.subject,
                status=ConversationStatus.OPEN.value,
                priority=data.priority.value,
                source_metadata=data.source_metadata,
                created_at=now,
                updated_at=now,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_conversation(model)

    async def get(self, conversation_id: str) -> ConversationRead | None:
        async for session in self._session_factory():
            model = await session.get(ConversationModel, conversation_id)
            if model is None:
                return None
            return _model_to_conversation(model)

    async def change_status(
        self,
        conversation_id: str,
        expected: ConversationStatus,
        new_status: ConversationStatus,
        actor: str,
        reason: str | None = None,
    ) -> tuple[ConversationRead, TransitionRead] | None:
        """Move ``expected -> new_status`` and journal it in one transaction.

        Returns:
            The updated conversation and its transition record, or None when
            the conversation no longer has status ``expected`` (or is gone).
        """
        now = utcnow()
        async for session in self._session_factory():
            result = await session.execute(
                update(ConversationModel)
                .where(
                    ConversationModel.id == conversation_id,
                    ConversationModel.status == expected.value,
                )
                .values(status=new_status.value, updated_at=now)
            )
            if result.rowcount != 1:
                await session.rollback()
                return None

            transition = ConversationTransitionModel(
                conversation_id=conversation_id,
                from_status=expected.value,
                to_status=new_status.value,
                actor=actor,
                reason=reason,
                created_at=now,
            )
            session.add(transition)
            await session.commit()

            model = await session.get(
                ConversationModel, conversation_id, populate_existing=True
            )
            return _model_to_conversation(model), _model_to_transition(transition)

    async def set_assignee(
        self, conversation_id: str, staff_id: str
    ) -> ConversationRead | None:
        """Assign unless the conversation is resolved.

        Returns:
            The updated conversation, or None when it is resolved (or gone).
        """
        async for session in self._session_factory():
            result = await session.execute(
                update(ConversationModel)
                .where(
                    ConversationModel.id == conversation_id,
                    ConversationModel.status != ConversationStatus.RESOLVED.value,
                )
                .values(assigned_to=staff_id, updated_at=utcnow())
            )
            await session.commit()
            if result.rowcount != 1:
                return None
            model = await session.get(
                ConversationModel, conversation_id, populate_existing=True
            )
            return _model_to_conversation(model)

    # ── Messages ────────────────────────────────────────────────────────────

    async def append_message(
        self,
        conversation_id: str,
        data: MessageCreate,
        status_rule: StatusRule | None = None,
        actor: str = "system",
    ) -> MessageAppendResult | None:
        """Append a message and apply any status change it triggers.

        The message row, the conversation status update and the transition
        journal row commit together.

        Args:
            conversation_id: Target conversation.
            data: Message contents.
            status_rule: Maps (current status, sender) to the new status, or
                None for no change.
            actor: Recorded on a triggered transition.

        Returns:
            MessageAppendResult, or None if the conversation does not exist.
        """
        for attempt in range(1, _MAX_APPEND_ATTEMPTS + 1):
            try:
                async for session in self._session_factory():
                    return await self._append_once(
                        session, conversation_id, data, status_rule, actor
                    )
            except _AppendRace:
                logger.debug(
                    "conversation.append_retry",
                    conversation_id=conversation_id,
                    attempt=attempt,
                )
        msg = f"Could not append message to {conversation_id} after {_MAX_APPEND_ATTEMPTS} attempts"
        raise RuntimeError(msg)

    async def _append_once(
        self,
        session: AsyncSession,
        conversation_id: str,
        data: MessageCreate,
        status_rule: StatusRule | None,
        actor: str,
    ) -> MessageAppendResult | None:
        conversation = await session.get(ConversationModel, conversation_id)
        if conversation is None:
            return None
        current = ConversationStatus(conversation.status)

        last = (
            await session.execute(
                select(MessageModel.sequence, MessageModel.created_at)
                .where(MessageModel.conversation_id == conversation_id)
                .order_by(MessageModel.sequence.desc())
                .limit(1)
            )
        ).first()

        # Timestamps are strictly increasing within a conversation
        now = utcnow()
        sequence = 1
        if last is not None:
            sequence = last.sequence + 1
            previous = as_utc(last.created_at)
            if now <= previous:
                now = previous + timedelta(microseconds=1)

        message = MessageModel(
            conversation_id=conversation_id,
            sequence=sequence,
            sender=data.sender.value,
            sender_id=data.sender_id,
            body=data.body,
            ai_assistance_id=data.ai_assistance_id,
            created_at=now,
        )
        session.add(message)
        try:
            await session.flush()
        except IntegrityError:
            await session.rollback()
            raise _AppendRace from None

        new_status = status_rule(current, data.sender) if status_rule else None
        transition: ConversationTransitionModel | None = None
        if new_status is not None and new_status is not current:
            result = await session.execute(
                update(ConversationModel)
                .where(
                    ConversationModel.id == conversation_id,
                    ConversationModel.status == current.value,
                )
                .values(status=new_status.value, updated_at=now)
            )
            if result.rowcount != 1:
                await session.rollback()
                raise _AppendRace
            transition = ConversationTransitionModel(
                conversation_id=conversation_id,
                from_status=current.value,
                to_status=new_status.value,
                actor=actor,
                reason=f"{data.sender.value}_message",
                created_at=now,
            )
            session.add(transition)
        else:
            await session.execute(
                update(ConversationModel)
                .where(ConversationModel.id == conversation_id)
                .values(updated_at=now)
            )

        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            raise _AppendRace from None

        conversation = await session.get(
            ConversationModel, conversation_id, populate_existing=True
        )
        return MessageAppendResult(
            message=_model_to_message(message),
            conversation=_model_to_conversation(conversation),
            transition=_model_to_transition(transition) if transition else None,
        )

    async def get_message(self, message_id: str) -> MessageRead | None:
        async for session in self._session_factory():
            model = await session.get(MessageModel, message_id)
            if model is None:
                return None
            return _model_to_message(model)

    async def list_messages(
        self,
        conversation_id: str,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[MessageRead]:
        """Messages in append order, optionally only those after ``since``."""
        async for session in self._session_factory():
            stmt = select(MessageModel).where(
                MessageModel.conversation_id == conversation_id
            )
            if since is not None:
                stmt = stmt.where(MessageModel.created_at > as_utc(since))
            stmt = stmt.order_by(MessageModel.sequence)
            if limit is not None:
                stmt = stmt.limit(limit)
            result = await session.execute(stmt)
            return [_model_to_message(m) for m in result.scalars().all()]

    async def latest_message(
        self, conversation_id: str, sender: SenderType | None = None
    ) -> MessageRead | None:
        async for session in self._session_factory():
            stmt = select(MessageModel).where(
                MessageModel.conversation_id == conversation_id
            )
            if sender is not None:
                stmt = stmt.where(MessageModel.sender == sender.value)
            stmt = stmt.order_by(MessageModel.sequence.desc()).limit(1)
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return _model_to_message(model)

    # ── Transitions ─────────────────────────────────────────────────────────

    async def list_transitions(self, conversation_id: str) -> list[TransitionRead]:
        async for session in self._session_factory():
            result = await session.execute(
                select(ConversationTransitionModel)
                .where(ConversationTransitionModel.conversation_id == conversation_id)
                .order_by(ConversationTransitionModel.created_at)
            )
            return [_model_to_transition(m) for m in result.scalars().all()]
