"""Tests for the pure conversation status rules."""

from __future__ import annotations

import pytest

from src.dealsmart.conversations.schemas import ConversationStatus as S
from src.dealsmart.conversations.schemas import SenderType
from src.dealsmart.conversations.state_machine import (
    can_assign,
    can_transition,
    status_after_message,
    validate_reopen,
    validate_transition,
)
from src.dealsmart.core.errors import ConflictError, InvalidTransitionError


class TestTransitions:
    """Explicit status edges."""

    @pytest.mark.parametrize(
        ("current", "requested"),
        [
            (S.OPEN, S.PENDING),
            (S.OPEN, S.RESOLVED),
            (S.PENDING, S.OPEN),
            (S.PENDING, S.RESOLVED),
        ],
    )
    def test_allowed_edges(self, current, requested):
        assert can_transition(current, requested)
        validate_transition(current, requested)

    @pytest.mark.parametrize(
        ("current", "requested"),
        [
            (S.OPEN, S.OPEN),
            (S.RESOLVED, S.OPEN),
            (S.RESOLVED, S.PENDING),
            (S.RESOLVED, S.RESOLVED),
        ],
    )
    def test_rejected_edges(self, current, requested):
        assert not can_transition(current, requested)
        with pytest.raises(InvalidTransitionError) as exc_info:
            validate_transition(current, requested)
        assert exc_info.value.current == current.value
        assert exc_info.value.requested == requested.value

    def test_invalid_transition_is_a_conflict(self):
        with pytest.raises(ConflictError):
            validate_transition(S.RESOLVED, S.PENDING)


class TestReopen:
    """Explicit reopen only applies to resolved conversations."""

    def test_resolved_can_reopen(self):
        validate_reopen(S.RESOLVED)

    @pytest.mark.parametrize("current", [S.OPEN, S.PENDING])
    def test_non_resolved_cannot_reopen(self, current):
        with pytest.raises(InvalidTransitionError):
            validate_reopen(current)


class TestStatusAfterMessage:
    """Customer replies move resolved -> pending -> open."""

    def test_customer_reply_on_resolved(self):
        assert status_after_message(S.RESOLVED, SenderType.CUSTOMER) is S.PENDING

    def test_customer_reply_on_pending(self):
        assert status_after_message(S.PENDING, SenderType.CUSTOMER) is S.OPEN

    def test_customer_reply_on_open_is_no_change(self):
        assert status_after_message(S.OPEN, SenderType.CUSTOMER) is None

    @pytest.mark.parametrize("sender", [SenderType.STAFF, SenderType.AI])
    @pytest.mark.parametrize("current", list(S))
    def test_staff_and_ai_never_change_status(self, current, sender):
        assert status_after_message(current, sender) is None


def test_assignment_blocked_only_when_resolved():
    assert can_assign(S.OPEN)
    assert can_assign(S.PENDING)
    assert not can_assign(S.RESOLVED)
