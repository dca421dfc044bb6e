"""Deal feed consumer with retry logic and consumer group management.

Used by external collaborators that consume the deal change feed from
Redis Streams (chat renderers, notification workers, search indexers).
Reads via a consumer group, deserializes into DealEvent instances, and
invokes a handler. Failed events are re-queued with backoff and moved to
the dead letter queue once retries are exhausted.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

import structlog

from src.app.events.bus import RedisStreamEventBus
from src.app.events.dlq import DeadLetterQueue
from src.app.events.schemas import DealEvent

logger = structlog.get_logger(__name__)

DealEventHandler = Callable[[DealEvent], Awaitable[None]]


class DealEventConsumer:
    """Process the deal feed as one member of a consumer group.

    Args:
        bus: RedisStreamEventBus to read from.
        group: Consumer group name (one per collaborator).
        consumer_name: Unique consumer identifier within the group.
        dlq: DeadLetterQueue for permanently failed messages.
        retry_delays: Seconds to wait before each re-queue.
    """

    MAX_RETRIES: int = 3

    def __init__(
        self,
        bus: RedisStreamEventBus,
        group: str,
        consumer_name: str,
        dlq: DeadLetterQueue,
        retry_delays: list[float] | None = None,
    ) -> None:
        self._bus = bus
        self._group = group
        self._consumer_name = consumer_name
        self._dlq = dlq
        self._retry_delays = retry_delays if retry_delays is not None else [1, 4, 16]
        self._running = False

    async def process_loop(self, handler: DealEventHandler) -> None:
        """Read, deserialize, handle, ack -- until ``stop()`` is called.

        Args:
            handler: Async callable for a single DealEvent. Must raise on
                failure for retry to engage.
        """
        self._running = True
        logger.info(
            "deal_feed_consumer_started",
            stream=self._bus.stream,
            group=self._group,
            consumer=self._consumer_name,
        )
        while self._running:
            messages = await self._bus.subscribe(self._group, self._consumer_name)
            for _stream_key, stream_messages in messages:
                for message_id, raw_data in stream_messages:
                    await self.process_message(message_id, raw_data, handler)

    async def process_message(
        self,
        message_id: str,
        raw_data: dict[str, str],
        handler: DealEventHandler,
    ) -> None:
        """Handle one message; re-queue or dead-letter it on failure.

        The original message is always acknowledged: a retry is a new
        stream entry carrying an incremented ``_retry_count``.
        """
        retry_count = int(raw_data.get("_retry_count", "0"))
        try:
            event = DealEvent.from_stream_dict(raw_data)
            await handler(event)
        except Exception as exc:
            logger.warning(
                "deal_event_processing_failed",
                message_id=message_id,
                retry_count=retry_count,
                error=str(exc),
            )
            if retry_count >= self.MAX_RETRIES:
                await self._dlq.send_to_dlq(
                    message_id=message_id,
                    data=raw_data,
                    error=str(exc),
                    retry_count=retry_count,
                )
            else:
                delay = self._retry_delays[min(retry_count, len(self._retry_delays) - 1)]
                await asyncio.sleep(delay)
                retry_data = dict(raw_data)
                retry_data["_retry_count"] = str(retry_count + 1)
                await self._bus.republish(retry_data)
                logger.info(
                    "deal_event_requeued",
                    message_id=message_id,
                    retry_count=retry_count + 1,
                    delay=delay,
                )
        else:
            logger.debug(
                "deal_event_processed",
                event_id=event.event_id,
                event_type=event.event_type.value,
                message_id=message_id,
            )
        await self._bus.ack(self._group, message_id)

    def stop(self) -> None:
        """Signal the processing loop to stop after the current batch."""
        self._running = False
