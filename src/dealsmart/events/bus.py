"""Domain event transport over Redis Streams.

Stream key pattern: ``dealsmart:events:{stream}``. Events are stored as
flat string dicts (``DomainEvent.to_stream_dict``); the consumer adds a
``_retry_count`` field when it redelivers one.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

import redis.asyncio as aioredis
import structlog

from src.dealsmart.events.schemas import DomainEvent

logger = structlog.get_logger(__name__)

DOMAIN_STREAM = "domain"
RETRY_FIELD = "_retry_count"


class EventPublisher(ABC):
    """Anything that can durably accept a domain event."""

    @abstractmethod
    async def publish(self, event: DomainEvent, stream: str = DOMAIN_STREAM) -> str:
        """Publish ``event`` and return a transport message id."""
        ...


class RedisEventBus(EventPublisher):
    """Publisher and consumer-group reader for the domain streams.

    Delivery is at-least-once: a message stays pending for its consumer
    until acknowledged. Handlers downstream (CRM sync, idempotency ledger)
    tolerate duplicates.

    Args:
        redis: Async Redis client with ``decode_responses=True``.
        prefix: Stream key prefix.
        maxlen: Approximate stream length cap applied on XADD.
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        prefix: str = "dealsmart:events",
        maxlen: int = 10000,
    ) -> None:
        self._redis = redis
        self._prefix = prefix
        self._maxlen = maxlen
        self._known_groups: set[tuple[str, str]] = set()

    @property
    def redis(self) -> aioredis.Redis:
        return self._redis

    def stream_key(self, stream: str) -> str:
        return f"{self._prefix}:{stream}"

    async def publish(self, event: DomainEvent, stream: str = DOMAIN_STREAM) -> str:
        message_id = await self.publish_raw(stream, event.to_stream_dict())
        logger.info(
            "event_bus.published",
            stream=stream,
            event_type=event.event_type.value,
            event_id=event.event_id,
            entity_id=event.entity_id,
            message_id=message_id,
        )
        return message_id

    async def publish_raw(self, stream: str, data: dict[str, str]) -> str:
        """Append already-serialized fields (redeliveries and replays)."""
        return await self._redis.xadd(
            self.stream_key(stream),
            data,
            maxlen=self._maxlen,
            approximate=True,
        )

    async def ensure_group(self, stream: str, group: str) -> None:
        """Create the consumer group (and stream) once per bus instance."""
        if (stream, group) in self._known_groups:
            return
        try:
            await self._redis.xgroup_create(
                self.stream_key(stream), group, id="0", mkstream=True
            )
            logger.info("event_bus.group_created", stream=stream, group=group)
        except aioredis.ResponseError as exc:
            if "BUSYGROUP" not in str(exc):
                raise
        self._known_groups.add((stream, group))

    async def subscribe(
        self,
        stream: str,
        group: str,
        consumer: str,
        count: int = 10,
        block: int = 5000,
    ) -> list[tuple[str, list[tuple[str, dict[str, str]]]]]:
        """Read up to ``count`` new messages for ``consumer``, blocking ``block`` ms."""
        await self.ensure_group(stream, group)
        return await self._redis.xreadgroup(
            groupname=group,
            consumername=consumer,
            streams={self.stream_key(stream): ">"},
            count=count,
            block=block,
        )

    async def ack(self, stream: str, group: str, message_id: str) -> None:
        await self._redis.xack(self.stream_key(stream), group, message_id)

    async def pending_summary(self, stream: str, group: str) -> dict[str, Any]:
        """XPENDING summary: count, id range and per-consumer counts."""
        return await self._redis.xpending(self.stream_key(stream), group)
