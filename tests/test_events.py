"""Tests for the domain event backbone: schemas, bus, consumer, and DLQ.

Covers:
- DomainEvent creation, validation, and stream serialization
- RedisEventBus publish/subscribe against a mocked Redis client
- EventConsumer redelivery, dead-lettering, and read-error recovery
- DeadLetterQueue parking, listing, depth, and replay
"""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
import redis.asyncio as aioredis

from src.dealsmart.core.errors import NotFoundError
from src.dealsmart.events.bus import RedisEventBus
from src.dealsmart.events.consumer import EventConsumer
from src.dealsmart.events.dlq import DeadLetterQueue
from src.dealsmart.events.schemas import DomainEvent, DomainEventType


def _make_event(**overrides) -> DomainEvent:
    defaults = {
        "event_type": DomainEventType.USER_REGISTERED,
        "entity_type": "user",
        "entity_id": "user-1",
        "actor": "auth_service",
        "data": {"email": "owner@dealer.com"},
    }
    defaults.update(overrides)
    return DomainEvent(**defaults)


# ── Schema Tests ──────────────────────────────────────────────────────────


class TestDomainEvent:
    """DomainEvent creation and serialization."""

    def test_defaults(self):
        event = _make_event()
        assert event.event_id
        assert event.version == "1.0"
        assert event.occurred_at.tzinfo is not None
        assert event.correlation_id is None

    def test_blank_entity_id_rejected(self):
        with pytest.raises(ValueError, match="entity_id must not be blank"):
            _make_event(entity_id="  ")

    def test_stream_dict_is_flat_strings(self):
        data = _make_event(correlation_id="corr-1").to_stream_dict()
        assert all(isinstance(v, str) for v in data.values())
        assert data["event_type"] == "user.registered"

    def test_stream_dict_roundtrip(self):
        event = _make_event(
            occurred_at=datetime(2026, 2, 1, 9, 30, tzinfo=timezone.utc),
            correlation_id="corr-1",
        )
        restored = DomainEvent.from_stream_dict(event.to_stream_dict())
        assert restored == event

    def test_empty_optionals_restore_as_none(self):
        restored = DomainEvent.from_stream_dict(_make_event(actor=None).to_stream_dict())
        assert restored.actor is None
        assert restored.correlation_id is None


# ── Bus Tests ─────────────────────────────────────────────────────────────


class TestRedisEventBus:
    """Redis Streams publish/subscribe."""

    def test_stream_key_format(self):
        bus = RedisEventBus(redis=MagicMock())
        assert bus.stream_key("domain") == "dealsmart:events:domain"

    async def test_publish_calls_xadd(self):
        mock_redis = AsyncMock()
        mock_redis.xadd = AsyncMock(return_value="1700000000000-0")
        bus = RedisEventBus(redis=mock_redis, maxlen=500)

        msg_id = await bus.publish(_make_event())

        assert msg_id == "1700000000000-0"
        call_args = mock_redis.xadd.call_args
        assert call_args[0][0] == "dealsmart:events:domain"
        assert call_args[0][1]["entity_id"] == "user-1"
        assert call_args[1]["maxlen"] == 500
        assert call_args[1]["approximate"] is True

    async def test_subscribe_tolerates_existing_group(self):
        mock_redis = AsyncMock()
        mock_redis.xgroup_create = AsyncMock(
            side_effect=aioredis.ResponseError("BUSYGROUP Consumer Group name already exists")
        )
        mock_redis.xreadgroup = AsyncMock(return_value=[])
        bus = RedisEventBus(redis=mock_redis)

        assert await bus.subscribe("domain", "orchestrator", "worker-1") == []
        mock_redis.xreadgroup.assert_called_once()

    async def test_group_created_once_per_bus(self):
        mock_redis = AsyncMock()
        mock_redis.xreadgroup = AsyncMock(return_value=[])
        bus = RedisEventBus(redis=mock_redis)

        await bus.subscribe("domain", "orchestrator", "worker-1")
        await bus.subscribe("domain", "orchestrator", "worker-1")

        mock_redis.xgroup_create.assert_awaited_once_with(
            "dealsmart:events:domain", "orchestrator", id="0", mkstream=True
        )

    async def test_other_group_errors_propagate(self):
        mock_redis = AsyncMock()
        mock_redis.xgroup_create = AsyncMock(side_effect=aioredis.ResponseError("WRONGTYPE"))
        bus = RedisEventBus(redis=mock_redis)

        with pytest.raises(aioredis.ResponseError):
            await bus.subscribe("domain", "orchestrator", "worker-1")

    async def test_ack_calls_xack(self):
        mock_redis = AsyncMock()
        bus = RedisEventBus(redis=mock_redis)

        await bus.ack("domain", "orchestrator", "1-0")

        mock_redis.xack.assert_called_once_with("dealsmart:events:domain", "orchestrator", "1-0")


# ── EventConsumer Tests ───────────────────────────────────────────────────


class TestEventConsumer:
    """Redelivery with backoff, dead-lettering and read-error recovery."""

    @pytest.fixture
    def bus(self) -> AsyncMock:
        return AsyncMock(spec=RedisEventBus)

    @pytest.fixture
    def dlq(self) -> AsyncMock:
        return AsyncMock(spec=DeadLetterQueue)

    @pytest.fixture
    def consumer(self, bus, dlq, fake_sleep) -> EventConsumer:
        return EventConsumer(bus, dlq, group="orchestrator", consumer_name="w1", sleep=fake_sleep)

    def _data(self, retry_count: int = 0) -> dict[str, str]:
        data = _make_event().to_stream_dict()
        if retry_count:
            data["_retry_count"] = str(retry_count)
        return data

    async def test_success_acks(self, consumer, bus, dlq):
        handler = AsyncMock()
        outcome = await consumer.process_message("1-0", self._data(), handler)

        assert outcome == "processed"
        handler.assert_awaited_once()
        assert handler.await_args.args[0].entity_id == "user-1"
        bus.ack.assert_awaited_once_with("domain", "orchestrator", "1-0")
        bus.publish_raw.assert_not_called()
        dlq.park.assert_not_called()

    async def test_failure_redelivers_with_backoff(self, consumer, bus, fake_sleep):
        handler = AsyncMock(side_effect=RuntimeError("crm down"))
        outcome = await consumer.process_message("1-0", self._data(retry_count=1), handler)

        assert outcome == "retried"
        assert fake_sleep.delays == [4]
        stream, republished = bus.publish_raw.await_args.args
        assert stream == "domain"
        assert republished["_retry_count"] == "2"
        assert republished["entity_id"] == "user-1"
        bus.ack.assert_awaited_once()

    async def test_exhausted_redeliveries_dead_letter(self, consumer, bus, dlq):
        handler = AsyncMock(side_effect=RuntimeError("still down"))
        outcome = await consumer.process_message("9-0", self._data(retry_count=3), handler)

        assert outcome == "dead_lettered"
        stream, message_id, _data, error, attempts = dlq.park.await_args.args
        assert (stream, message_id, error, attempts) == ("domain", "9-0", "still down", 3)
        bus.publish_raw.assert_not_called()
        bus.ack.assert_awaited_once()

    async def test_undecodable_message_parked_without_retry(self, consumer, bus, dlq, fake_sleep):
        handler = AsyncMock()
        outcome = await consumer.process_message("1-0", {"event_type": "nonsense"}, handler)

        assert outcome == "undecodable"
        handler.assert_not_called()
        dlq.park.assert_awaited_once()
        assert dlq.park.await_args.args[3].startswith("undecodable")
        bus.publish_raw.assert_not_called()
        assert fake_sleep.delays == []
        bus.ack.assert_awaited_once()

    async def test_loop_survives_read_errors(self, consumer, bus, fake_sleep):
        bus.subscribe.side_effect = [
            aioredis.ConnectionError("connection lost"),
            [("dealsmart:events:domain", [("1-0", self._data())])],
        ]
        handled: list[DomainEvent] = []

        async def handler(event: DomainEvent) -> None:
            handled.append(event)
            consumer.stop()

        await consumer.process_loop(handler)

        assert len(handled) == 1
        assert fake_sleep.delays == [EventConsumer.READ_ERROR_DELAY]


# ── DeadLetterQueue Tests ─────────────────────────────────────────────────


class TestDeadLetterQueue:
    """Parking, listing, depth and replay."""

    @pytest.fixture
    def redis(self) -> AsyncMock:
        return AsyncMock()

    @pytest.fixture
    def dlq(self, redis) -> DeadLetterQueue:
        return DeadLetterQueue(RedisEventBus(redis=redis))

    async def test_park_adds_metadata(self, dlq, redis):
        redis.xadd = AsyncMock(return_value="5-0")
        parked_id = await dlq.park("domain", "1-0", {"event_id": "e1"}, "boom", 3)

        assert parked_id == "5-0"
        key, data = redis.xadd.await_args.args
        assert key == "dealsmart:events:domain:dlq"
        assert data["event_id"] == "e1"
        assert data["_dlq_message_id"] == "1-0"
        assert data["_dlq_error"] == "boom"
        assert data["_dlq_attempts"] == "3"
        assert "_dlq_parked_at" in data

    async def test_list_and_depth(self, dlq, redis):
        redis.xrange = AsyncMock(return_value=[("5-0", {"event_id": "e1"})])
        redis.xlen = AsyncMock(return_value=1)

        assert await dlq.list_parked() == [("5-0", {"event_id": "e1"})]
        assert await dlq.depth() == 1
        redis.xlen.assert_awaited_once_with("dealsmart:events:domain:dlq")

    async def test_replay_strips_metadata_and_deletes(self, dlq, redis):
        redis.xrange = AsyncMock(
            return_value=[
                ("5-0", {"event_id": "e1", "_retry_count": "3", "_dlq_error": "boom"}),
            ]
        )
        redis.xadd = AsyncMock(return_value="6-0")

        new_id = await dlq.replay("domain", "5-0")

        assert new_id == "6-0"
        key, data = redis.xadd.await_args.args
        assert key == "dealsmart:events:domain"
        assert data == {"event_id": "e1"}
        redis.xdel.assert_awaited_once_with("dealsmart:events:domain:dlq", "5-0")

    async def test_replay_missing_raises(self, dlq, redis):
        redis.xrange = AsyncMock(return_value=[])
        with pytest.raises(NotFoundError, match="No parked event"):
            await dlq.replay("domain", "404-0")


class TestPackageImports:
    """The events package exports its public names lazily."""

    def test_all_exports_importable(self):
        from src.dealsmart.events import (
            DeadLetterQueue,
            DomainEvent,
            EventConsumer,
            EventPublisher,
            RedisEventBus,
        )

        assert all(
            obj is not None
            for obj in (DeadLetterQueue, DomainEvent, EventConsumer, EventPublisher, RedisEventBus)
        )
