"""Consumer-group reader that feeds the domain stream to the orchestrator.

Each message is decoded into a DomainEvent and passed to the handler
(``SyncOrchestrator.handle`` in the app). Outcomes:

- handled: acknowledged.
- handler raised: republished with ``_retry_count`` incremented after a
  backoff delay, until MAX_REDELIVERIES is reached; then parked in the
  dead-letter stream.
- undecodable: parked immediately, since redelivery cannot fix it.

Every message is acknowledged once its outcome is durable, so the pending
list only holds messages a crashed consumer never finished.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

import redis.asyncio as aioredis
import structlog

from src.dealsmart.core.monitoring import events_consumed_total
from src.dealsmart.events.bus import DOMAIN_STREAM, RETRY_FIELD, RedisEventBus
from src.dealsmart.events.dlq import DeadLetterQueue
from src.dealsmart.events.schemas import DomainEvent

logger = structlog.get_logger(__name__)

EventHandler = Callable[[DomainEvent], Awaitable[object]]

CONSUMER_GROUP = "orchestrator"


class EventConsumer:
    """Reads one stream as a member of a consumer group.

    Args:
        bus: RedisEventBus to read from and republish to.
        dlq: Where exhausted and undecodable messages are parked.
        group: Consumer group name.
        consumer_name: Unique consumer identifier within the group.
        stream: Stream name to consume.
        sleep: Awaitable sleep used for backoff (injected in tests).
    """

    MAX_REDELIVERIES: int = 3
    REDELIVERY_DELAYS: tuple[int, ...] = (1, 4, 16)
    READ_ERROR_DELAY: float = 1.0

    def __init__(
        self,
        bus: RedisEventBus,
        dlq: DeadLetterQueue,
        group: str,
        consumer_name: str,
        stream: str = DOMAIN_STREAM,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._bus = bus
        self._dlq = dlq
        self._group = group
        self._consumer_name = consumer_name
        self._stream = stream
        self._sleep = sleep
        self._running = False

    async def process_loop(self, handler: EventHandler) -> None:
        """Read and process until ``stop()``; Redis read errors back off and retry."""
        self._running = True
        log = logger.bind(stream=self._stream, group=self._group, consumer=self._consumer_name)
        log.info("event_consumer.started")

        while self._running:
            try:
                batches = await self._bus.subscribe(
                    self._stream, self._group, self._consumer_name
                )
            except aioredis.RedisError as exc:
                log.warning("event_consumer.read_failed", error=str(exc))
                await self._sleep(self.READ_ERROR_DELAY)
                continue
            for _stream_key, messages in batches or []:
                for message_id, raw_data in messages:
                    await self.process_message(message_id, raw_data, handler)

        log.info("event_consumer.stopped")

    async def process_message(
        self,
        message_id: str,
        raw_data: dict[str, str],
        handler: EventHandler,
    ) -> str:
        """Handle one message and acknowledge it.

        Returns:
            The outcome: ``processed``, ``retried``, ``dead_lettered`` or
            ``undecodable``.
        """
        redeliveries = int(raw_data.get(RETRY_FIELD, "0"))
        event_type = "unknown"

        try:
            event = DomainEvent.from_stream_dict(raw_data)
        except (KeyError, ValueError) as exc:
            await self._dlq.park(
                self._stream, message_id, raw_data, f"undecodable: {exc}", redeliveries
            )
            outcome = "undecodable"
        else:
            event_type = event.event_type.value
            try:
                await handler(event)
            except Exception as exc:
                outcome = await self._after_failure(message_id, raw_data, event, exc, redeliveries)
            else:
                outcome = "processed"
                logger.debug(
                    "event_consumer.processed",
                    event_id=event.event_id,
                    event_type=event_type,
                    message_id=message_id,
                )

        events_consumed_total.labels(event_type=event_type, outcome=outcome).inc()
        await self._bus.ack(self._stream, self._group, message_id)
        return outcome

    async def _after_failure(
        self,
        message_id: str,
        raw_data: dict[str, str],
        event: DomainEvent,
        exc: Exception,
        redeliveries: int,
    ) -> str:
        logger.warning(
            "event_consumer.handler_failed",
            event_id=event.event_id,
            event_type=event.event_type.value,
            message_id=message_id,
            redeliveries=redeliveries,
            error=str(exc),
        )
        if redeliveries >= self.MAX_REDELIVERIES:
            await self._dlq.park(self._stream, message_id, raw_data, str(exc), redeliveries)
            return "dead_lettered"

        delay = self.REDELIVERY_DELAYS[min(redeliveries, len(self.REDELIVERY_DELAYS) - 1)]
        await self._sleep(delay)
        await self._bus.publish_raw(
            self._stream, {**raw_data, RETRY_FIELD: str(redeliveries + 1)}
        )
        return "retried"

    def stop(self) -> None:
        """Stop after the current batch."""
        self._running = False
