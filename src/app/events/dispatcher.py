"""Best-effort fan-out of committed deal changes.

After a command commits, the lifecycle manager hands its DealEvents to
NotificationDispatcher.dispatch(), which returns immediately. A background
task then, per event:

1. Publishes it on the DealEventBus (the subscription feed)
2. Sends the counterparty a Notification via the Notifier collaborator
3. Posts the human-readable summary via the Messenger collaborator

Each step is retried with tenacity exponential backoff. Exhausted retries
are logged and counted, never raised: a delivery failure must not undo a
committed state change.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Protocol

import structlog
from pydantic import BaseModel
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential

from src.app.events.bus import DealEventBus
from src.app.events.schemas import DealEvent, DealEventType

logger = structlog.get_logger(__name__)


class Notification(BaseModel):
    """What the notification service receives for one change."""

    deal_id: str
    recipient_id: str
    title: str
    message: str
    link: str
    type: str = "deal"


class Notifier(Protocol):
    async def notify(self, notification: Notification) -> None: ...


class Messenger(Protocol):
    async def post_summary(self, deal_id: str, author_id: str, text: str) -> None: ...


class LoggingNotifier:
    """Default Notifier: records the notification in the structured log."""

    async def notify(self, notification: Notification) -> None:
        logger.info(
            "notification_sent",
            deal_id=notification.deal_id,
            recipient_id=notification.recipient_id,
            title=notification.title,
        )


class LoggingMessenger:
    """Default Messenger: records the chat summary in the structured log."""

    async def post_summary(self, deal_id: str, author_id: str, text: str) -> None:
        logger.info("deal_summary_posted", deal_id=deal_id, author_id=author_id, text=text)


# ── Notification Content ────────────────────────────────────────────────────

_STATUS_TITLES: dict[str, str] = {
    "pending": "New deal proposal",
    "needs_changes": "Changes proposed",
    "accepted": "Terms accepted",
    "rejected": "Deal rejected",
    "invoice_needed": "Invoice requested",
    "waiting_payment": "Invoice issued",
    "briefing": "Deal confirmed",
    "in_progress": "Work in progress",
    "review": "Draft submitted for review",
    "completed": "Deal completed",
    "disputed": "Dispute opened",
}

_EVENT_TITLES: dict[DealEventType, str] = {
    DealEventType.DEAL_CREATED: "New deal proposal",
    DealEventType.ESCROW_UPDATED: "Escrow updated",
    DealEventType.FILE_ATTACHED: "New file",
    DealEventType.MARKING_UPDATED: "Marking status updated",
    DealEventType.TERMS_PROPOSED: "New terms version",
    DealEventType.TERMS_ACCEPTED: "Terms accepted",
}


def build_notification(
    event: DealEvent, link_builder: Callable[[str], str]
) -> Notification | None:
    """Counterparty notification for an event, or None when nobody is notified."""
    if not event.recipient_id:
        return None
    if event.is_transition and event.to_status in _STATUS_TITLES:
        title = _STATUS_TITLES[event.to_status]
    else:
        title = _EVENT_TITLES.get(event.event_type, "Deal updated")
    return Notification(
        deal_id=event.deal_id,
        recipient_id=event.recipient_id,
        title=title,
        message=event.summary or title,
        link=link_builder(event.deal_id),
    )


def default_link(deal_id: str) -> str:
    return f"/ad-studio?deal={deal_id}"


# ── Dispatcher ──────────────────────────────────────────────────────────────


class NotificationDispatcher:
    """Deliver committed deal changes without blocking the command.

    Args:
        bus: Feed every event is published to.
        notifier: Counterparty notification collaborator.
        messenger: Chat summary collaborator.
        link_builder: Maps a deal id to the in-app link.
        max_attempts: tenacity attempts per delivery step.
        backoff_multiplier: Exponential backoff base in seconds (0 in tests).
        on_failure: Optional hook called with the step name after retries
            are exhausted (metrics).
    """

    def __init__(
        self,
        bus: DealEventBus,
        notifier: Notifier | None = None,
        messenger: Messenger | None = None,
        link_builder: Callable[[str], str] = default_link,
        max_attempts: int = 3,
        backoff_multiplier: float = 0.5,
        on_failure: Callable[[str], None] | None = None,
    ) -> None:
        self._bus = bus
        self._notifier = notifier or LoggingNotifier()
        self._messenger = messenger or LoggingMessenger()
        self._link_builder = link_builder
        self._max_attempts = max_attempts
        self._backoff_multiplier = backoff_multiplier
        self._on_failure = on_failure
        self._tasks: set[asyncio.Task[None]] = set()

    def dispatch(self, events: list[DealEvent]) -> asyncio.Task[None] | None:
        """Schedule delivery of ``events`` in the background and return at once."""
        if not events:
            return None
        task = asyncio.create_task(self._deliver(events))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for all in-flight deliveries (tests and shutdown)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _deliver(self, events: list[DealEvent]) -> None:
        for event in events:
            await self._attempt("publish", event, lambda e=event: self._bus.publish(e))
            notification = build_notification(event, self._link_builder)
            if notification is not None:
                await self._attempt(
                    "notify", event, lambda n=notification: self._notifier.notify(n)
                )
            if event.summary:
                await self._attempt(
                    "post_summary",
                    event,
                    lambda e=event: self._messenger.post_summary(
                        e.deal_id, e.actor_id, e.summary
                    ),
                )

    async def _attempt(
        self,
        step: str,
        event: DealEvent,
        call: Callable[[], Awaitable[object]],
    ) -> None:
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._max_attempts),
                wait=wait_exponential(multiplier=self._backoff_multiplier, max=10),
                reraise=True,
            ):
                with attempt:
                    await call()
        except Exception:
            logger.warning(
                "deal_event_delivery_failed",
                step=step,
                event_id=event.event_id,
                event_type=event.event_type.value,
                deal_id=event.deal_id,
                attempts=self._max_attempts,
                exc_info=True,
            )
            if self._on_failure is not None:
                self._on_failure(step)
