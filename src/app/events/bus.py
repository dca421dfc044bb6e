"""Deal change feed transports.

DealEventBus is the one-method protocol the deal core publishes to. Two
implementations:

- InMemoryEventBus: asyncio queues per subscriber, for development, tests,
  and single-process deployments.
- RedisStreamEventBus: Redis Streams with consumer groups so any number of
  external collaborators can consume the feed independently.

Stream key pattern: deals:events:{stream_name}

Note: Publishing never blocks a command. A full in-memory subscriber queue
drops the event for that subscriber and logs a warning.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import AsyncIterator
from typing import Any, Protocol

import redis.asyncio as aioredis
import structlog

from src.app.events.schemas import DealEvent

logger = structlog.get_logger(__name__)


class DealEventBus(Protocol):
    """Anything that can announce a committed deal change."""

    async def publish(self, event: DealEvent) -> str | None: ...


# ── In-Memory ───────────────────────────────────────────────────────────────


class InMemoryEventBus:
    """Fan-out to per-subscriber asyncio queues.

    Args:
        history_size: Number of recent events kept for ``recent()``.
        queue_size: Capacity of each subscriber queue.
    """

    def __init__(self, history_size: int = 1000, queue_size: int = 1000) -> None:
        self._subscribers: dict[asyncio.Queue[DealEvent], str | None] = {}
        self._history: deque[DealEvent] = deque(maxlen=history_size)
        self._queue_size = queue_size

    async def publish(self, event: DealEvent) -> str | None:
        self._history.append(event)
        for queue, deal_filter in list(self._subscribers.items()):
            if deal_filter is not None and deal_filter != event.deal_id:
                continue
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    "event_dropped_slow_subscriber",
                    event_id=event.event_id,
                    deal_id=event.deal_id,
                )
        logger.debug(
            "event_published",
            event_type=event.event_type.value,
            event_id=event.event_id,
            deal_id=event.deal_id,
        )
        return event.event_id

    def subscribe(self, deal_id: str | None = None) -> asyncio.Queue[DealEvent]:
        """Register a subscriber queue, optionally filtered to one deal."""
        queue: asyncio.Queue[DealEvent] = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers[queue] = deal_id
        return queue

    def unsubscribe(self, queue: asyncio.Queue[DealEvent]) -> None:
        self._subscribers.pop(queue, None)

    async def stream(self, deal_id: str | None = None) -> AsyncIterator[DealEvent]:
        """Yield events as they are published until the consumer stops iterating."""
        queue = self.subscribe(deal_id)
        try:
            while True:
                yield await queue.get()
        finally:
            self.unsubscribe(queue)

    def recent(self, deal_id: str | None = None) -> list[DealEvent]:
        """Recently published events, oldest first."""
        return [e for e in self._history if deal_id is None or e.deal_id == deal_id]


# ── Redis Streams ───────────────────────────────────────────────────────────


class RedisStreamEventBus:
    """Publish the deal feed to a Redis Stream and read it via consumer groups.

    Args:
        redis: Async Redis client.
        stream: Stream name (see ``Settings.EVENT_STREAM``).
        maxlen: Approximate stream length cap.
    """

    def __init__(self, redis: aioredis.Redis, stream: str = "deal-events", maxlen: int = 10000) -> None:
        self._redis = redis
        self._stream = stream
        self._maxlen = maxlen

    @property
    def stream(self) -> str:
        return self._stream

    def _stream_key(self, stream: str | None = None) -> str:
        """Build the full stream key, e.g. ``deals:events:deal-events``."""
        return f"deals:events:{stream or self._stream}"

    async def publish(self, event: DealEvent) -> str:
        """Append an event to the stream with approximate trimming.

        Returns:
            Redis message ID assigned by XADD.
        """
        stream_key = self._stream_key()
        message_id = await self._redis.xadd(
            stream_key,
            event.to_stream_dict(),
            maxlen=self._maxlen,
            approximate=True,
        )
        logger.debug(
            "event_published",
            stream=stream_key,
            event_type=event.event_type.value,
            event_id=event.event_id,
            message_id=message_id,
        )
        return message_id

    async def republish(self, data: dict[str, str], stream: str | None = None) -> str:
        """Append a raw stream dict (retries and replays keep their metadata)."""
        return await self._redis.xadd(
            self._stream_key(stream),
            data,
            maxlen=self._maxlen,
            approximate=True,
        )

    async def subscribe(
        self,
        group: str,
        consumer: str,
        count: int = 10,
        block: int = 5000,
    ) -> list[tuple[str, list[tuple[str, dict[str, str]]]]]:
        """Read new events as a consumer in a consumer group.

        Creates the consumer group if it does not already exist.

        Args:
            group: Consumer group name.
            consumer: Consumer name within the group.
            count: Maximum messages to read per call.
            block: Milliseconds to block waiting for new messages.

        Returns:
            List of ``(stream_key, [(message_id, data), ...])`` tuples.
        """
        stream_key = self._stream_key()
        try:
            await self._redis.xgroup_create(stream_key, group, id="0", mkstream=True)
        except aioredis.ResponseError as exc:
            if "BUSYGROUP" not in str(exc):
                raise
        return await self._redis.xreadgroup(
            groupname=group,
            consumername=consumer,
            streams={stream_key: ">"},
            count=count,
            block=block,
        )

    async def ack(self, group: str, message_id: str) -> None:
        """Acknowledge a processed message."""
        await self._redis.xack(self._stream_key(), group, message_id)

    async def claim_abandoned(
        self, group: str, consumer: str, idle_time_ms: int = 60000, count: int = 10
    ) -> Any:
        """Take over messages left pending by dead consumers (XAUTOCLAIM)."""
        return await self._redis.xautoclaim(
            self._stream_key(),
            group,
            consumer,
            min_idle_time=idle_time_ms,
            start_id="0",
            count=count,
        )

    async def get_stream_info(self) -> dict[str, Any]:
        """Stream metadata (length, groups, first/last entry) for monitoring."""
        return await self._redis.xinfo_stream(self._stream_key())
