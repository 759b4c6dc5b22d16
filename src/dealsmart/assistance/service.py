"""AI assistance service -- request suggestions and record staff dispositions.

``request_suggestion`` builds the context from the conversation's messages
plus caller-supplied facts, asks the engine, and stores the draft as an
AIAssistance attached to the latest customer message. An unavailable
suggestion is returned without storing anything.

Dispositions:
- ``accept``: sends the suggested text as a staff message
- ``edit(text)``: sends the edited text as a staff message
- ``reject``: records the rejection
- ``rate(score)``: stores a 1-5 rating (may be overwritten)

Repeating the disposition a suggestion already has is a no-op. Moving from
one final disposition to another raises ConflictError. The disposition is
claimed with a conditional update before the staff message is appended, so
concurrent accepts send exactly one message.
"""

from __future__ import annotations

from typing import Any

import structlog

from src.dealsmart.assistance.context import build_context
from src.dealsmart.assistance.engine import SuggestionEngine
from src.dealsmart.assistance.repository import AIAssistanceRepository
from src.dealsmart.assistance.schemas import (
    AIAssistanceCreate,
    AIAssistanceRead,
    Disposition,
    DispositionResult,
    SuggestionResponse,
)
from src.dealsmart.conversations.schemas import SenderType
from src.dealsmart.conversations.service import ConversationService
from src.dealsmart.core.errors import ConflictError, NotFoundError, ValidationError

logger = structlog.get_logger(__name__)

MIN_RATING = 1
MAX_RATING = 5


class AssistanceService:
    """Suggestion requests and disposition operations.

    Args:
        conversations: Conversation service (reads history, sends staff messages).
        repository: AIAssistance persistence.
        engine: Suggestion engine.
    """

    def __init__(
        self,
        conversations: ConversationService,
        repository: AIAssistanceRepository,
        engine: SuggestionEngine,
    ) -> None:
        self._conversations = conversations
        self._repository = repository
        self._engine = engine

    async def get(self, assistance_id: str) -> AIAssistanceRead:
        assistance = await self._repository.get(assistance_id)
        if assistance is None:
            raise NotFoundError(f"Suggestion '{assistance_id}' not found")
        return assistance

    async def list_for_conversation(self, conversation_id: str) -> list[AIAssistanceRead]:
        await self._conversations.get(conversation_id)
        return await self._repository.list_for_conversation(conversation_id)

    # ── Suggestions ─────────────────────────────────────────────────────────

    async def request_suggestion(
        self,
        conversation_id: str,
        facts: dict[str, Any] | None = None,
        actor: str | None = None,
    ) -> SuggestionResponse:
        """Draft a reply to the latest customer message.

        Raises:
            NotFoundError: If the conversation does not exist.
            ValidationError: If the customer has not written anything yet.
        """
        messages = await self._conversations.list_messages(conversation_id)
        target = next(
            (m for m in reversed(messages) if m.sender is SenderType.CUSTOMER), None
        )
        if target is None:
            raise ValidationError("Conversation has no customer message to reply to")

        context = build_context(conversation_id, messages, facts)
        suggestion = await self._engine.suggest(context)
        if not suggestion.available:
            return SuggestionResponse(suggestion=suggestion)

        assistance = await self._repository.create(
            AIAssistanceCreate(
                conversation_id=conversation_id,
                message_id=target.id,
                suggested_text=suggestion.text,
                confidence=suggestion.confidence,
                needs_clarification=suggestion.needs_clarification,
                flags=suggestion.flags,
                requested_by=actor,
            )
        )
        logger.info(
            "assistance.suggestion_stored",
            assistance_id=assistance.id,
            conversation_id=conversation_id,
            message_id=target.id,
            needs_clarification=assistance.needs_clarification,
        )
        return SuggestionResponse(suggestion=suggestion, assistance=assistance)

    # ── Dispositions ────────────────────────────────────────────────────────

    async def accept(self, assistance_id: str, actor: str) -> DispositionResult:
        """Send the suggested text as a staff message."""
        return await self._send(assistance_id, Disposition.ACCEPTED, actor, text=None)

    async def edit(self, assistance_id: str, text: str, actor: str) -> DispositionResult:
        """Send an edited version of the suggestion as a staff message."""
        if not text or not text.strip():
            raise ValidationError("Edited text must not be blank")
        return await self._send(assistance_id, Disposition.EDITED, actor, text=text.strip())

    async def reject(self, assistance_id: str, actor: str) -> DispositionResult:
        current = await self.get(assistance_id)
        if current.disposition is Disposition.REJECTED:
            return DispositionResult(assistance=current, changed=False)
        self._ensure_pending(current, Disposition.REJECTED)

        updated = await self._repository.transition_disposition(
            assistance_id, Disposition.PENDING, Disposition.REJECTED, actor
        )
        if updated is None:
            return await self._after_lost_race(assistance_id, Disposition.REJECTED)
        logger.info("assistance.rejected", assistance_id=assistance_id, actor=actor)
        return DispositionResult(assistance=updated)

    async def rate(self, assistance_id: str, score: int, actor: str) -> DispositionResult:
        if not MIN_RATING <= score <= MAX_RATING:
            raise ValidationError(f"Rating must be between {MIN_RATING} and {MAX_RATING}")
        current = await self.get(assistance_id)
        if current.rating == score:
            return DispositionResult(assistance=current, changed=False)
        updated = await self._repository.set_rating(assistance_id, score)
        if updated is None:
            raise NotFoundError(f"Suggestion '{assistance_id}' not found")
        logger.info("assistance.rated", assistance_id=assistance_id, rating=score, actor=actor)
        return DispositionResult(assistance=updated)

    # ── Internals ───────────────────────────────────────────────────────────

    @staticmethod
    def _ensure_pending(current: AIAssistanceRead, requested: Disposition) -> None:
        if current.disposition is not Disposition.PENDING:
            raise ConflictError(
                f"Suggestion '{current.id}' is already {current.disposition.value}; "
                f"cannot mark it {requested.value}"
            )

    async def _after_lost_race(
        self, assistance_id: str, requested: Disposition, text: str | None = None
    ) -> DispositionResult:
        """Another caller changed the disposition between our read and write."""
        current = await self.get(assistance_id)
        if current.disposition is requested and (text is None or current.final_text == text):
            return DispositionResult(assistance=current, changed=False)
        raise ConflictError(
            f"Suggestion '{assistance_id}' is already {current.disposition.value}"
        )

    async def _send(
        self,
        assistance_id: str,
        disposition: Disposition,
        actor: str,
        text: str | None,
    ) -> DispositionResult:
        current = await self.get(assistance_id)
        if current.disposition is disposition:
            if text is None or current.final_text == text:
                return DispositionResult(assistance=current, changed=False)
            raise ConflictError(f"Suggestion '{assistance_id}' was already edited")
        self._ensure_pending(current, disposition)

        claimed = await self._repository.transition_disposition(
            assistance_id, Disposition.PENDING, disposition, actor, final_text=text
        )
        if claimed is None:
            return await self._after_lost_race(assistance_id, disposition, text)

        body = text if text is not None else current.suggested_text
        try:
            appended = await self._conversations.append_message(
                current.conversation_id,
                SenderType.STAFF,
                body,
                sender_id=actor,
                ai_assistance_id=assistance_id,
            )
        except Exception:
            await self._repository.revert_to_pending(assistance_id, disposition)
            raise

        updated = await self._repository.set_sent_message(assistance_id, appended.message.id)
        logger.info(
            f"assistance.{disposition.value}",
            assistance_id=assistance_id,
            conversation_id=current.conversation_id,
            message_id=appended.message.id,
            actor=actor,
        )
        return DispositionResult(assistance=updated or claimed, message=appended.message)
