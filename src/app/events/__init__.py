"""Deal change feed and best-effort delivery.

Exports:
    DealEvent: Committed-change record with stream (de)serialization.
    DealEventType: Enum of change kinds (deal, terms, escrow, file, marking).
    DealEventBus: Publish protocol the deal core depends on.
    InMemoryEventBus: Queue-backed feed for tests and single-process use.
    RedisStreamEventBus: Redis Streams feed with consumer groups.
    DealEventConsumer: Consumer with retry logic and DLQ escalation.
    DeadLetterQueue: DLQ handler for failed feed events.
    NotificationDispatcher: Background publish/notify/summary fan-out.
"""

from __future__ import annotations

from src.app.events.schemas import DealEvent, DealEventType

__all__ = [
    "DeadLetterQueue",
    "DealEvent",
    "DealEventBus",
    "DealEventConsumer",
    "DealEventType",
    "InMemoryEventBus",
    "NotificationDispatcher",
    "RedisStreamEventBus",
]


def __getattr__(name: str):  # noqa: N807
    """Lazy-load transports, consumer, and dispatcher to avoid circular imports."""
    if name in ("DealEventBus", "InMemoryEventBus", "RedisStreamEventBus"):
        from src.app.events import bus

        return getattr(bus, name)
    if name == "DealEventConsumer":
        from src.app.events.consumer import DealEventConsumer

        return DealEventConsumer
    if name == "DeadLetterQueue":
        from src.app.events.dlq import DeadLetterQueue

        return DeadLetterQueue
    if name == "NotificationDispatcher":
        from src.app.events.dispatcher import NotificationDispatcher

        return NotificationDispatcher
    msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(msg)
