"""Conversation lifecycle: status state machine, messages and assignment.

Exports:
    ConversationService: Lifecycle operations emitting domain events.
    ConversationRepository: Async persistence (session_factory pattern).
    ConversationStatus, Priority, SenderType: Enums.
    ConversationRead, MessageRead, TransitionRead: Read schemas.
"""

from __future__ import annotations

from src.dealsmart.conversations.repository import ConversationRepository
from src.dealsmart.conversations.schemas import (
    ConversationCreate,
    ConversationRead,
    ConversationStatus,
    MessageAppendResult,
    MessageRead,
    Priority,
    SenderType,
    TransitionRead,
)
from src.dealsmart.conversations.service import ConversationService

__all__ = [
    "ConversationCreate",
    "ConversationRead",
    "ConversationRepository",
    "ConversationService",
    "ConversationStatus",
    "MessageAppendResult",
    "MessageRead",
    "Priority",
    "SenderType",
    "TransitionRead",
]
