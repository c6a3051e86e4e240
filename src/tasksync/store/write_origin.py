"""Write-origin markers used for loop suppression.

Every successful write by the executor records which system's change it
carried. The resolver reads the marker to recognise the echo notification
that the write itself triggers.
"""

from __future__ import annotations

import math
import time
from collections.abc import Callable

import structlog

from src.tasksync.store.base import KeyValueStore
from src.tasksync.sync.schemas import Source, WriteOriginRecord, utcnow

logger = structlog.get_logger(__name__)

ORIGIN_PREFIX = "sync:write_origin:"
VERSION_PREFIX = "sync:write_origin_version:"
VERSION_TTL_SECONDS = 86_400


class WriteOriginStore:
    """Most recent writer per entity, with a monotonic version counter.

    Args:
        store: Backing key-value store.
        ttl_seconds: Marker retention. Raised to cover ``grace_ms`` so a
            marker never expires inside the grace window.
        grace_ms: Loop-suppression grace window.
        clock: Returns the current time in seconds.
    """

    def __init__(
        self,
        store: KeyValueStore,
        ttl_seconds: int = 120,
        grace_ms: int = 60_000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._ttl = max(ttl_seconds, math.ceil(grace_ms / 1000))
        self._clock = clock

    async def mark(self, entity_id: str, updated_by: Source) -> WriteOriginRecord:
        key = entity_id.lower()
        version = await self._store.incr(f"{VERSION_PREFIX}{key}", ttl_seconds=VERSION_TTL_SECONDS)
        record = WriteOriginRecord(
            entity_id=entity_id,
            updated_by=updated_by,
            updated_at=utcnow(self._clock),
            version=version,
        )
        await self._store.set(f"{ORIGIN_PREFIX}{key}", record.model_dump_json(), ttl_seconds=self._ttl)
        logger.debug("write_origin.marked", entity_id=entity_id, updated_by=updated_by.value, version=version)
        return record

    async def get(self, entity_id: str) -> WriteOriginRecord | None:
        raw = await self._store.get(f"{ORIGIN_PREFIX}{entity_id.lower()}")
        if not raw:
            return None
        return WriteOriginRecord.model_validate_json(raw)

    async def current_version(self, entity_id: str) -> int | None:
        record = await self.get(entity_id)
        return record.version if record else None
