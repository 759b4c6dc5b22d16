"""Domain events and their Redis Streams transport.

Exports:
    DomainEvent: Plain event struct exchanged by the orchestration core.
    DomainEventType: Enum of business events.
    EventPublisher: Abstract durable publisher.
    RedisEventBus: Redis Streams publisher/subscriber.
    EventConsumer: Consumer with retry and dead-lettering.
    DeadLetterQueue: DLQ handler for failed event review and replay.
"""

from __future__ import annotations

from src.dealsmart.events.schemas import DomainEvent, DomainEventType

__all__ = [
    "DeadLetterQueue",
    "DomainEvent",
    "DomainEventType",
    "EventConsumer",
    "EventPublisher",
    "RedisEventBus",
]


def __getattr__(name: str):  # noqa: N807
    """Lazy-load bus, consumer, and DLQ so schema imports stay light."""
    if name in ("EventPublisher", "RedisEventBus"):
        from src.dealsmart.events import bus

        return getattr(bus, name)
    if name == "EventConsumer":
        from src.dealsmart.events.consumer import EventConsumer

        return EventConsumer
    if name == "DeadLetterQueue":
        from src.dealsmart.events.dlq import DeadLetterQueue

        return DeadLetterQueue
    msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(msg)
