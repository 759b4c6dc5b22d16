"""Suggestion context construction.

The context is the only input the engine and provider ever see: the
conversation's own messages (most recent ``max_messages``) plus the facts
the caller passed in. There is no lookup of inventory, pricing or other
conversations anywhere on this path.
"""

from __future__ import annotations

from typing import Any

from src.dealsmart.assistance.schemas import ContextMessage, SuggestionContext
from src.dealsmart.conversations.schemas import MessageRead

DEFAULT_MAX_MESSAGES = 30


def build_context(
    conversation_id: str,
    messages: list[MessageRead],
    facts: dict[str, Any] | None = None,
    max_messages: int = DEFAULT_MAX_MESSAGES,
) -> SuggestionContext:
    recent = messages[-max_messages:] if max_messages > 0 else []
    return SuggestionContext(
        conversation_id=conversation_id,
        messages=tuple(ContextMessage(sender=m.sender, body=m.body) for m in recent),
        facts=dict(facts or {}),
    )
