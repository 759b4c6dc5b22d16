"""AI assistance schemas -- suggestion context, provider reply, stored suggestions."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from src.dealsmart.conversations.schemas import MessageRead, SenderType


class Disposition(str, Enum):
    """Staff decision on a suggestion."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EDITED = "edited"


class SuggestionFlag(str, Enum):
    NEEDS_CLARIFICATION = "needs_clarification"
    UNTRACEABLE_NUMBER = "untraceable_number"
    MISSING_PRICE_FACTS = "missing_price_facts"
    MISSING_INVENTORY_FACTS = "missing_inventory_facts"
    REWRITTEN = "rewritten_as_question"
    NO_SUGGESTION = "no_suggestion"


# ── Engine input / output ───────────────────────────────────────────────────


class ContextMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    sender: SenderType
    body: str


class SuggestionContext(BaseModel):
    """Everything the engine may use: the conversation's own messages plus
    facts the caller supplied. Nothing else reaches the provider.
    """

    model_config = ConfigDict(frozen=True)

    conversation_id: str
    messages: tuple[ContextMessage, ...]
    facts: dict[str, Any] = Field(default_factory=dict)

    @property
    def latest_customer_message(self) -> str | None:
        for message in reversed(self.messages):
            if message.sender is SenderType.CUSTOMER:
                return message.body
        return None


class ProviderReply(BaseModel):
    """Raw draft from the AI provider."""

    text: str
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    model: str | None = None


class Suggestion(BaseModel):
    """Validated engine output.

    ``available`` is False for the degraded "no suggestion" result; ``text``
    is then None and never fabricated.
    """

    available: bool
    text: str | None = None
    confidence: float | None = None
    needs_clarification: bool = False
    flags: list[SuggestionFlag] = Field(default_factory=list)
    error: str | None = None

    @classmethod
    def unavailable(cls, error: str | None = None) -> Suggestion:
        return cls(available=False, flags=[SuggestionFlag.NO_SUGGESTION], error=error)


# ── Stored suggestions ──────────────────────────────────────────────────────


class AIAssistanceCreate(BaseModel):
    conversation_id: str
    message_id: str
    suggested_text: str
    confidence: float | None = None
    needs_clarification: bool = False
    flags: list[SuggestionFlag] = Field(default_factory=list)
    requested_by: str | None = None


class AIAssistanceRead(AIAssistanceCreate):
    id: str
    disposition: Disposition
    final_text: str | None = None
    rating: int | None = None
    sent_message_id: str | None = None
    disposition_by: str | None = None
    disposition_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class SuggestionResponse(BaseModel):
    """Result of requesting a suggestion; ``assistance`` is None when unavailable."""

    suggestion: Suggestion
    assistance: AIAssistanceRead | None = None


class DispositionResult(BaseModel):
    """Result of accept/edit/reject/rate.

    ``message`` is the staff message sent by this call (None on no-ops,
    rejections and ratings).
    """

    assistance: AIAssistanceRead
    message: MessageRead | None = None
    changed: bool = True
