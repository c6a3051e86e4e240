"""In-process publish/subscribe broker for webhook log entries.

Streaming connections call ``subscribe()`` and must call the returned
``unsubscribe`` when the client goes away. A bounded ring buffer keeps the
most recent entries for replay-on-connect.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Callable

import structlog

from src.tasksync.sync.schemas import WebhookLogEntry

logger = structlog.get_logger(__name__)


class LogBroker:
    """Fan-out of WebhookLogEntry objects to subscriber queues.

    Args:
        buffer_size: Entries kept for replay.
        queue_size: Per-subscriber backlog; the oldest entry is dropped when
            a slow subscriber falls behind.
    """

    def __init__(self, buffer_size: int = 100, queue_size: int = 100) -> None:
        self._buffer: deque[WebhookLogEntry] = deque(maxlen=buffer_size)
        self._subscribers: set[asyncio.Queue[WebhookLogEntry]] = set()
        self._queue_size = queue_size

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> tuple[asyncio.Queue[WebhookLogEntry], Callable[[], None]]:
        """Register a subscriber. Returns its queue and an idempotent unsubscribe."""
        queue: asyncio.Queue[WebhookLogEntry] = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.add(queue)

        def unsubscribe() -> None:
            self._subscribers.discard(queue)

        return queue, unsubscribe

    def publish(self, entry: WebhookLogEntry) -> None:
        self._buffer.append(entry)
        for queue in list(self._subscribers):
            if queue.full():
                queue.get_nowait()
                logger.debug("broker.subscriber_lagging")
            queue.put_nowait(entry)

    def recent(self, limit: int | None = None) -> list[WebhookLogEntry]:
        """Most recent entries, oldest first."""
        entries = list(self._buffer)
        if limit is not None:
            entries = entries[-limit:] if limit > 0 else []
        return entries
