"""Conversation state machine service.

Owns the conversation and message lifecycle: creation, assignment, status
transitions (with actor journal), message append with the customer-reply
reopen rule, and polling reads.

Errors from these operations surface synchronously to the caller
(NotFoundError, ConflictError, InvalidTransitionError, ValidationError).
After each write commits, a DomainEvent is handed to ``event_sink``
(normally ``SyncOrchestrator.dispatch``); a failing sink is logged and
never affects the result of the write.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from typing import Any

import structlog

from src.dealsmart.conversations.repository import ConversationRepository
from src.dealsmart.conversations.schemas import (
    ConversationCreate,
    ConversationRead,
    ConversationStatus,
    MessageAppendResult,
    MessageCreate,
    MessageRead,
    SenderType,
    TransitionRead,
)
from src.dealsmart.conversations.state_machine import (
    REOPEN_TARGET,
    status_after_message,
    validate_reopen,
    validate_transition,
)
from src.dealsmart.core.errors import ConflictError, NotFoundError, ValidationError
from src.dealsmart.events.schemas import DomainEvent, DomainEventType

logger = structlog.get_logger(__name__)

EventSink = Callable[[DomainEvent], Any]

# Concurrent writers can move the status between our read and conditional
# write; re-validate against the fresh state this many times.
_MAX_STATUS_RACES = 3


class ConversationService:
    """Conversation lifecycle operations.

    Args:
        repository: Conversation persistence.
        event_sink: Non-blocking callable receiving domain events after
            each committed write.
    """

    def __init__(
        self,
        repository: ConversationRepository,
        event_sink: EventSink | None = None,
    ) -> None:
        self._repository = repository
        self._event_sink = event_sink

    # ── Reads ───────────────────────────────────────────────────────────────

    async def get(self, conversation_id: str) -> ConversationRead:
        conversation = await self._repository.get(conversation_id)
        if conversation is None:
            raise NotFoundError(f"Conversation '{conversation_id}' not found")
        return conversation

    async def list_messages(
        self, conversation_id: str, since: datetime | None = None
    ) -> list[MessageRead]:
        """Messages in order; with ``since``, only newer ones (polling)."""
        await self.get(conversation_id)
        return await self._repository.list_messages(conversation_id, since=since)

    async def list_transitions(self, conversation_id: str) -> list[TransitionRead]:
        await self.get(conversation_id)
        return await self._repository.list_transitions(conversation_id)

    async def get_message(self, message_id: str) -> MessageRead:
        message = await self._repository.get_message(message_id)
        if message is None:
            raise NotFoundError(f"Message '{message_id}' not found")
        return message

    async def latest_customer_message(self, conversation_id: str) -> MessageRead | None:
        return await self._repository.latest_message(
            conversation_id, sender=SenderType.CUSTOMER
        )

    # ── Writes ──────────────────────────────────────────────────────────────

    async def create(
        self, data: ConversationCreate, actor: str = "system"
    ) -> ConversationRead:
        conversation = await self._repository.create(data)
        logger.info(
            "conversation.created",
            conversation_id=conversation.id,
            customer_id=conversation.customer_id,
            actor=actor,
        )
        self._emit(
            DomainEventType.CONVERSATION_CREATED,
            conversation,
            actor,
            data={
                "customer_email": conversation.customer_email,
                "customer_name": conversation.customer_name,
                "priority": conversation.priority.value,
                "source_metadata": conversation.source_metadata,
            },
        )
        return conversation

    async def assign(
        self, conversation_id: str, staff_id: str, actor: str
    ) -> ConversationRead:
        """Assign or reassign a staff member.

        Raises:
            ValidationError: If staff_id is blank.
            NotFoundError: If the conversation does not exist.
            ConflictError: If the conversation is resolved.
        """
        if not staff_id or not staff_id.strip():
            raise ValidationError("staff_id must not be blank")

        current = await self.get(conversation_id)
        if current.status is ConversationStatus.RESOLVED:
            raise ConflictError(f"Conversation '{conversation_id}' is resolved")

        updated = await self._repository.set_assignee(conversation_id, staff_id.strip())
        if updated is None:
            # Resolved between the read and the write
            raise ConflictError(f"Conversation '{conversation_id}' is resolved")

        logger.info(
            "conversation.assigned",
            conversation_id=conversation_id,
            previous_assignee=current.assigned_to,
            assigned_to=updated.assigned_to,
            actor=actor,
        )
        self._emit(
            DomainEventType.CONVERSATION_ASSIGNED,
            updated,
            actor,
            data={
                "previous_assignee": current.assigned_to,
                "assigned_to": updated.assigned_to,
            },
        )
        return updated

    async def transition(
        self,
        conversation_id: str,
        new_status: ConversationStatus,
        actor: str,
        reason: str | None = None,
    ) -> ConversationRead:
        """Move the conversation along a defined status edge.

        Raises:
            NotFoundError: If the conversation does not exist.
            InvalidTransitionError: If the edge is not allowed.
            ConflictError: If resolving an unassigned conversation.
        """
        for _ in range(_MAX_STATUS_RACES):
            current = await self.get(conversation_id)
            validate_transition(current.status, new_status)
            if new_status is ConversationStatus.RESOLVED and not current.assigned_to:
                raise ConflictError(
                    f"Conversation '{conversation_id}' must be assigned before it is resolved"
                )
            changed = await self._repository.change_status(
                conversation_id, current.status, new_status, actor, reason
            )
            if changed is not None:
                conversation, transition = changed
                self._after_transition(conversation, transition)
                return conversation
        raise ConflictError(f"Conversation '{conversation_id}' is being modified concurrently")

    async def reopen(
        self, conversation_id: str, actor: str, reason: str | None = None
    ) -> ConversationRead:
        """Explicitly reopen a resolved conversation (lands in ``open``)."""
        for _ in range(_MAX_STATUS_RACES):
            current = await self.get(conversation_id)
            validate_reopen(current.status)
            changed = await self._repository.change_status(
                conversation_id, current.status, REOPEN_TARGET, actor, reason or "reopened"
            )
            if changed is not None:
                conversation, transition = changed
                self._after_transition(conversation, transition)
                return conversation
        raise ConflictError(f"Conversation '{conversation_id}' is being modified concurrently")

    async def append_message(
        self,
        conversation_id: str,
        sender: SenderType,
        body: str,
        sender_id: str | None = None,
        ai_assistance_id: str | None = None,
    ) -> MessageAppendResult:
        """Append a message; a customer reply may reopen the conversation.

        The message is durably recorded before any event is emitted.

        Raises:
            ValidationError: If the body is blank.
            NotFoundError: If the conversation does not exist.
        """
        if not body or not body.strip():
            raise ValidationError("Message body must not be blank")

        data = MessageCreate(
            sender=sender,
            body=body,
            sender_id=sender_id,
            ai_assistance_id=ai_assistance_id,
        )
        actor = sender_id or sender.value
        result = await self._repository.append_message(
            conversation_id, data, status_rule=status_after_message, actor=actor
        )
        if result is None:
            raise NotFoundError(f"Conversation '{conversation_id}' not found")

        message = result.message
        logger.info(
            "conversation.message_appended",
            conversation_id=conversation_id,
            message_id=message.id,
            sender=message.sender.value,
            sequence=message.sequence,
        )

        event_type = (
            DomainEventType.MESSAGE_RECEIVED
            if sender is SenderType.CUSTOMER
            else DomainEventType.MESSAGE_SENT
        )
        self._emit(
            event_type,
            result.conversation,
            actor,
            data={
                "message_id": message.id,
                "sender": message.sender.value,
                "body": message.body,
                "sequence": message.sequence,
                "ai_assistance_id": message.ai_assistance_id,
                "customer_email": result.conversation.customer_email,
            },
        )
        if result.transition is not None:
            self._after_transition(result.conversation, result.transition)
        return result

    # ── Internals ───────────────────────────────────────────────────────────

    def _after_transition(
        self, conversation: ConversationRead, transition: TransitionRead
    ) -> None:
        logger.info(
            "conversation.status_changed",
            conversation_id=conversation.id,
            from_status=transition.from_status.value,
            to_status=transition.to_status.value,
            actor=transition.actor,
        )
        self._emit(
            DomainEventType.CONVERSATION_STATUS_CHANGED,
            conversation,
            transition.actor,
            data={
                "from_status": transition.from_status.value,
                "to_status": transition.to_status.value,
                "reason": transition.reason,
                "customer_email": conversation.customer_email,
            },
        )

    def _emit(
        self,
        event_type: DomainEventType,
        conversation: ConversationRead,
        actor: str,
        data: dict[str, Any],
    ) -> None:
        if self._event_sink is None:
            return
        event = DomainEvent(
            event_type=event_type,
            entity_type="conversation",
            entity_id=conversation.id,
            actor=actor,
            data={"customer_id": conversation.customer_id, **data},
        )
        try:
            self._event_sink(event)
        except Exception:
            logger.exception(
                "conversation.event_emit_failed",
                event_type=event_type.value,
                conversation_id=conversation.id,
            )
