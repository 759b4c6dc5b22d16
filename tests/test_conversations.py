"""Tests for ConversationService against SQLite.

Covers:
- Creation, assignment and the resolve-requires-assignee rule
- Explicit transitions with the actor journal
- Message sequencing and polling with ``since``
- Customer replies moving resolved -> pending -> open
- Domain events emitted after each committed write
"""

from __future__ import annotations

import asyncio

import pytest

from src.dealsmart.conversations.repository import ConversationRepository
from src.dealsmart.conversations.schemas import (
    ConversationCreate,
    ConversationStatus,
    SenderType,
)
from src.dealsmart.conversations.service import ConversationService
from src.dealsmart.core.errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from src.dealsmart.events.schemas import DomainEvent, DomainEventType


# ── Helpers ──────────────────────────────────────────────────────────────────


def _make_create(**overrides) -> ConversationCreate:
    defaults = {
        "customer_id": "cust-1",
        "customer_email": "buyer@example.com",
        "customer_name": "Pat Buyer",
        "subject": "Trade-in question",
    }
    defaults.update(overrides)
    return ConversationCreate(**defaults)


@pytest.fixture
def events() -> list[DomainEvent]:
    return []


@pytest.fixture
def service(session_factory, events) -> ConversationService:
    return ConversationService(ConversationRepository(session_factory), events.append)


async def _resolved(service: ConversationService) -> str:
    conversation = await service.create(_make_create())
    await service.assign(conversation.id, "staff-1", actor="manager")
    await service.transition(conversation.id, ConversationStatus.RESOLVED, actor="staff-1")
    return conversation.id


# ── Lifecycle ────────────────────────────────────────────────────────────────


class TestCreate:
    """Opening a conversation."""

    async def test_new_conversation_is_open_and_unassigned(self, service, events):
        conversation = await service.create(_make_create(), actor="cust-1")

        assert conversation.status is ConversationStatus.OPEN
        assert conversation.assigned_to is None
        assert conversation.created_at.tzinfo is not None
        assert [e.event_type for e in events] == [DomainEventType.CONVERSATION_CREATED]
        assert events[0].entity_id == conversation.id
        assert events[0].data["customer_id"] == "cust-1"

    async def test_blank_customer_id_rejected(self):
        with pytest.raises(Exception):
            _make_create(customer_id="   ")

    async def test_get_unknown_raises(self, service):
        with pytest.raises(NotFoundError):
            await service.get("missing")


class TestAssign:
    """Assignment rules."""

    async def test_assign_and_reassign(self, service, events):
        conversation = await service.create(_make_create())
        await service.assign(conversation.id, "staff-1", actor="manager")
        updated = await service.assign(conversation.id, "staff-2", actor="manager")

        assert updated.assigned_to == "staff-2"
        assigned = [e for e in events if e.event_type is DomainEventType.CONVERSATION_ASSIGNED]
        assert assigned[-1].data["previous_assignee"] == "staff-1"

    async def test_blank_staff_id_rejected(self, service):
        conversation = await service.create(_make_create())
        with pytest.raises(ValidationError):
            await service.assign(conversation.id, " ", actor="manager")

    async def test_cannot_assign_resolved(self, service):
        conversation_id = await _resolved(service)
        with pytest.raises(ConflictError):
            await service.assign(conversation_id, "staff-2", actor="manager")

    async def test_assign_unknown_conversation(self, service):
        with pytest.raises(NotFoundError):
            await service.assign("missing", "staff-1", actor="manager")


class TestTransition:
    """Explicit status changes."""

    async def test_resolve_requires_assignee(self, service):
        conversation = await service.create(_make_create())
        with pytest.raises(ConflictError):
            await service.transition(conversation.id, ConversationStatus.RESOLVED, actor="staff-1")

    async def test_transition_is_journaled_with_actor(self, service, events):
        conversation = await service.create(_make_create())
        await service.transition(
            conversation.id, ConversationStatus.PENDING, actor="staff-1", reason="awaiting docs"
        )

        transitions = await service.list_transitions(conversation.id)
        assert len(transitions) == 1
        assert transitions[0].from_status is ConversationStatus.OPEN
        assert transitions[0].to_status is ConversationStatus.PENDING
        assert transitions[0].actor == "staff-1"
        assert transitions[0].reason == "awaiting docs"
        assert events[-1].event_type is DomainEventType.CONVERSATION_STATUS_CHANGED

    async def test_invalid_edge_rejected(self, service):
        conversation_id = await _resolved(service)
        with pytest.raises(InvalidTransitionError):
            await service.transition(conversation_id, ConversationStatus.PENDING, actor="staff-1")

    async def test_reopen_resolved(self, service):
        conversation_id = await _resolved(service)
        reopened = await service.reopen(conversation_id, actor="staff-1")

        assert reopened.status is ConversationStatus.OPEN
        transitions = await service.list_transitions(conversation_id)
        assert transitions[-1].reason == "reopened"

    async def test_reopen_open_conversation_rejected(self, service):
        conversation = await service.create(_make_create())
        with pytest.raises(InvalidTransitionError):
            await service.reopen(conversation.id, actor="staff-1")

    async def test_concurrent_transitions_only_one_wins(self, service):
        conversation = await service.create(_make_create())
        results = await asyncio.gather(
            service.transition(conversation.id, ConversationStatus.PENDING, actor="a"),
            service.transition(conversation.id, ConversationStatus.PENDING, actor="b"),
            return_exceptions=True,
        )

        failures = [r for r in results if isinstance(r, Exception)]
        assert len(failures) == 1
        assert isinstance(failures[0], ConflictError)
        assert len(await service.list_transitions(conversation.id)) == 1


# ── Messages ─────────────────────────────────────────────────────────────────


class TestMessages:
    """Appending and polling messages."""

    async def test_sequence_numbers_increase(self, service):
        conversation = await service.create(_make_create())
        first = await service.append_message(conversation.id, SenderType.CUSTOMER, "Hi there")
        second = await service.append_message(
            conversation.id, SenderType.STAFF, "Hello!", sender_id="staff-1"
        )

        assert first.message.sequence == 1
        assert second.message.sequence == 2
        assert second.message.created_at > first.message.created_at

    async def test_poll_since_returns_only_newer(self, service):
        conversation = await service.create(_make_create())
        first = await service.append_message(conversation.id, SenderType.CUSTOMER, "one")
        await service.append_message(conversation.id, SenderType.STAFF, "two")
        await service.append_message(conversation.id, SenderType.CUSTOMER, "three")

        newer = await service.list_messages(conversation.id, since=first.message.created_at)
        assert [m.body for m in newer] == ["two", "three"]

        everything = await service.list_messages(conversation.id)
        assert [m.sequence for m in everything] == [1, 2, 3]

    async def test_concurrent_appends_get_unique_sequences(self, service):
        conversation = await service.create(_make_create())
        await asyncio.gather(
            *(
                service.append_message(conversation.id, SenderType.CUSTOMER, f"msg {i}")
                for i in range(4)
            )
        )

        messages = await service.list_messages(conversation.id)
        assert sorted(m.sequence for m in messages) == [1, 2, 3, 4]

    async def test_blank_body_rejected(self, service):
        conversation = await service.create(_make_create())
        with pytest.raises(ValidationError):
            await service.append_message(conversation.id, SenderType.CUSTOMER, "   ")

    async def test_append_to_unknown_conversation(self, service):
        with pytest.raises(NotFoundError):
            await service.append_message("missing", SenderType.CUSTOMER, "hello")

    async def test_customer_reply_reopens_resolved(self, service, events):
        conversation_id = await _resolved(service)

        first = await service.append_message(conversation_id, SenderType.CUSTOMER, "One more thing")
        assert first.conversation.status is ConversationStatus.PENDING
        assert first.transition is not None
        assert first.transition.reason == "customer_message"

        second = await service.append_message(conversation_id, SenderType.CUSTOMER, "Still there?")
        assert second.conversation.status is ConversationStatus.OPEN

        event_types = [e.event_type for e in events]
        assert DomainEventType.MESSAGE_RECEIVED in event_types
        assert event_types[-1] is DomainEventType.CONVERSATION_STATUS_CHANGED

    async def test_staff_reply_never_changes_status(self, service, events):
        conversation_id = await _resolved(service)
        result = await service.append_message(
            conversation_id, SenderType.STAFF, "Closing note", sender_id="staff-1"
        )

        assert result.conversation.status is ConversationStatus.RESOLVED
        assert result.transition is None
        assert events[-1].event_type is DomainEventType.MESSAGE_SENT

    async def test_latest_customer_message(self, service):
        conversation = await service.create(_make_create())
        await service.append_message(conversation.id, SenderType.CUSTOMER, "first")
        await service.append_message(conversation.id, SenderType.CUSTOMER, "second")
        await service.append_message(conversation.id, SenderType.STAFF, "reply")

        latest = await service.latest_customer_message(conversation.id)
        assert latest.body == "second"


class TestEventSink:
    """A failing sink never affects the write."""

    async def test_sink_failure_is_swallowed(self, session_factory):
        def broken_sink(event):
            raise RuntimeError("bus down")

        service = ConversationService(ConversationRepository(session_factory), broken_sink)
        conversation = await service.create(_make_create())

        assert (await service.get(conversation.id)).status is ConversationStatus.OPEN
