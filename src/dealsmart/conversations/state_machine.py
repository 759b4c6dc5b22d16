"""Conversation status rules.

Edges:
    open     -> pending, resolved
    pending  -> open, resolved
    resolved -> open        (explicit reopen only)

A customer message on a ``resolved`` conversation moves it to ``pending``;
on a ``pending`` conversation it moves it back to ``open``. Staff and AI
messages never change status. These functions are pure; persistence and
actor bookkeeping live in ConversationService.
"""

from __future__ import annotations

from src.dealsmart.conversations.schemas import ConversationStatus, SenderType
from src.dealsmart.core.errors import InvalidTransitionError

ALLOWED_TRANSITIONS: dict[ConversationStatus, frozenset[ConversationStatus]] = {
    ConversationStatus.OPEN: frozenset(
        {ConversationStatus.PENDING, ConversationStatus.RESOLVED}
    ),
    ConversationStatus.PENDING: frozenset(
        {ConversationStatus.OPEN, ConversationStatus.RESOLVED}
    ),
    ConversationStatus.RESOLVED: frozenset(),
}

REOPEN_TARGET = ConversationStatus.OPEN


def can_transition(current: ConversationStatus, requested: ConversationStatus) -> bool:
    return requested in ALLOWED_TRANSITIONS[current]


def validate_transition(
    current: ConversationStatus, requested: ConversationStatus
) -> None:
    """Raise InvalidTransitionError unless ``current -> requested`` is an edge."""
    if not can_transition(current, requested):
        raise InvalidTransitionError(current.value, requested.value)


def validate_reopen(current: ConversationStatus) -> None:
    """Only resolved conversations can be explicitly reopened."""
    if current is not ConversationStatus.RESOLVED:
        raise InvalidTransitionError(current.value, REOPEN_TARGET.value)


def status_after_message(
    current: ConversationStatus, sender: SenderType
) -> ConversationStatus | None:
    """Status a new message moves the conversation to, or None for no change."""
    if sender is not SenderType.CUSTOMER:
        return None
    if current is ConversationStatus.RESOLVED:
        return ConversationStatus.PENDING
    if current is ConversationStatus.PENDING:
        return ConversationStatus.OPEN
    return None


def can_assign(current: ConversationStatus) -> bool:
    return current is not ConversationStatus.RESOLVED
