"""Dead-letter stream for domain events the consumer gave up on.

Parked entries live at ``{stream key}:dlq`` and keep the original event
fields next to ``_dlq_*`` metadata (source stream and message id, error,
delivery attempts, when it was parked). Operators list them, fix the cause
(for instance a CRM outage or a bad mapping) and replay them.
"""

from __future__ import annotations

from typing import Any

import structlog

from src.dealsmart.core.clock import utcnow
from src.dealsmart.core.errors import NotFoundError
from src.dealsmart.events.bus import DOMAIN_STREAM, RETRY_FIELD, RedisEventBus

logger = structlog.get_logger(__name__)

_META_PREFIX = "_dlq_"


class DeadLetterQueue:
    """Park, list and replay failed events.

    Args:
        bus: Event bus whose Redis client and key scheme the DLQ shares.
    """

    def __init__(self, bus: RedisEventBus) -> None:
        self._bus = bus

    def key_for(self, stream: str) -> str:
        return f"{self._bus.stream_key(stream)}:dlq"

    async def park(
        self,
        stream: str,
        message_id: str,
        data: dict[str, str],
        error: str,
        attempts: int,
    ) -> str:
        """Store a failed event with its failure metadata.

        Returns:
            Message id of the parked entry.
        """
        key = self.key_for(stream)
        parked_id = await self._bus.redis.xadd(
            key,
            {
                **data,
                f"{_META_PREFIX}stream": stream,
                f"{_META_PREFIX}message_id": message_id,
                f"{_META_PREFIX}error": error,
                f"{_META_PREFIX}attempts": str(attempts),
                f"{_META_PREFIX}parked_at": utcnow().isoformat(),
            },
        )
        logger.warning(
            "dead_letter.parked",
            stream=stream,
            message_id=message_id,
            event_id=data.get("event_id"),
            event_type=data.get("event_type"),
            attempts=attempts,
            error=error,
        )
        return parked_id

    async def list_parked(
        self, stream: str = DOMAIN_STREAM, count: int = 50
    ) -> list[tuple[str, dict[str, Any]]]:
        """Oldest parked entries first."""
        return await self._bus.redis.xrange(self.key_for(stream), count=count)

    async def depth(self, stream: str = DOMAIN_STREAM) -> int:
        return await self._bus.redis.xlen(self.key_for(stream))

    async def replay(self, stream: str, parked_id: str) -> str:
        """Publish a parked event back onto its stream as a fresh delivery.

        The ``_dlq_*`` metadata and the redelivery counter are dropped, so
        the consumer gets the full retry budget again.

        Raises:
            NotFoundError: No parked entry has that id.
        """
        key = self.key_for(stream)
        entries = await self._bus.redis.xrange(key, min=parked_id, max=parked_id, count=1)
        if not entries:
            raise NotFoundError(f"No parked event '{parked_id}' in {key}")

        _entry_id, data = entries[0]
        event_fields = {
            field: value
            for field, value in data.items()
            if not field.startswith(_META_PREFIX) and field != RETRY_FIELD
        }
        new_id = await self._bus.publish_raw(stream, event_fields)
        await self._bus.redis.xdel(key, parked_id)

        logger.info(
            "dead_letter.replayed",
            stream=stream,
            parked_id=parked_id,
            new_message_id=new_id,
            event_id=event_fields.get("event_id"),
        )
        return new_id
