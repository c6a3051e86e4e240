"""Persisted webhook log, trimmed to a fixed number of entries."""

from __future__ import annotations

import structlog
from pydantic import ValidationError

from src.tasksync.events.broker import LogBroker
from src.tasksync.store.base import KeyValueStore
from src.tasksync.sync.schemas import WebhookLogEntry

logger = structlog.get_logger(__name__)

LOG_KEY = "sync:webhook_log"


class WebhookLog:
    """Stores recent webhook deliveries and publishes them to the broker.

    Args:
        store: Backing key-value store.
        broker: Live fan-out for streaming clients.
        max_entries: Retained entries; older ones are trimmed.
    """

    def __init__(self, store: KeyValueStore, broker: LogBroker, max_entries: int = 100) -> None:
        self._store = store
        self._broker = broker
        self._max = max_entries

    async def append(self, entry: WebhookLogEntry) -> None:
        await self._store.lpush(LOG_KEY, [entry.model_dump_json()])
        await self._store.ltrim(LOG_KEY, 0, self._max - 1)
        self._broker.publish(entry)

    async def list_entries(self, limit: int = 50) -> list[WebhookLogEntry]:
        """Newest first."""
        entries: list[WebhookLogEntry] = []
        for raw in await self._store.lrange(LOG_KEY, 0, max(limit, 1) - 1):
            try:
                entries.append(WebhookLogEntry.model_validate_json(raw))
            except ValidationError:
                logger.warning("webhook_log.invalid_entry")
        return entries
