"""Dead letter queue for deal feed events that exhausted their retries.

DLQ key pattern: deals:events:{stream}:dlq
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import redis.asyncio as aioredis
import structlog

logger = structlog.get_logger(__name__)


class DeadLetterQueue:
    """Dead letter stream next to the deal feed stream.

    Failed events are stored with failure metadata for review and can be
    replayed back onto the feed.

    Args:
        redis: Async Redis client.
        stream: Feed stream name (see ``Settings.EVENT_STREAM``).
    """

    def __init__(self, redis: aioredis.Redis, stream: str = "deal-events") -> None:
        self._redis = redis
        self._stream = stream

    @property
    def dlq_key(self) -> str:
        return f"deals:events:{self._stream}:dlq"

    @property
    def stream_key(self) -> str:
        return f"deals:events:{self._stream}"

    async def send_to_dlq(
        self,
        message_id: str,
        data: dict[str, str],
        error: str,
        retry_count: int,
    ) -> str:
        """Store a failed event with its failure metadata.

        Args:
            message_id: Original Redis message ID.
            data: Raw event data dict from the stream.
            error: Error message from the last processing attempt.
            retry_count: Number of retry attempts made.

        Returns:
            DLQ message ID assigned by XADD.
        """
        dlq_data: dict[str, str] = {
            **data,
            "_dlq_original_id": message_id,
            "_dlq_error": error,
            "_dlq_retry_count": str(retry_count),
            "_dlq_timestamp": datetime.now(timezone.utc).isoformat(),
        }
        dlq_message_id = await self._redis.xadd(self.dlq_key, dlq_data)
        logger.warning(
            "deal_event_dead_lettered",
            dlq_key=self.dlq_key,
            original_id=message_id,
            deal_id=data.get("deal_id"),
            error=error,
            retry_count=retry_count,
        )
        return dlq_message_id

    async def list_messages(self, count: int = 50) -> list[tuple[str, dict[str, Any]]]:
        """List dead-lettered messages for review, oldest first."""
        return await self._redis.xrange(self.dlq_key, count=count)

    async def replay_message(self, dlq_message_id: str) -> str:
        """Put a dead-lettered event back on the feed for fresh processing.

        Strips DLQ metadata and the retry counter, re-publishes, then
        deletes the DLQ entry.

        Returns:
            New message ID on the feed stream.

        Raises:
            ValueError: If the DLQ message ID is not found.
        """
        messages = await self._redis.xrange(
            self.dlq_key, min=dlq_message_id, max=dlq_message_id, count=1
        )
        if not messages:
            msg = f"DLQ message '{dlq_message_id}' not found in {self.dlq_key}"
            raise ValueError(msg)

        _msg_id, data = messages[0]
        replay_data = {k: v for k, v in data.items() if not k.startswith("_dlq_")}
        replay_data.pop("_retry_count", None)

        new_id = await self._redis.xadd(
            self.stream_key, replay_data, maxlen=10000, approximate=True
        )
        await self._redis.xdel(self.dlq_key, dlq_message_id)
        logger.info(
            "deal_event_replayed",
            dlq_message_id=dlq_message_id,
            new_message_id=new_id,
        )
        return new_id
