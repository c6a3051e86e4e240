"""Delta cursor persistence, one cursor per (feed, scope)."""

from __future__ import annotations

import json
import time
from collections.abc import Callable

from src.tasksync.store.base import KeyValueStore
from src.tasksync.sync.schemas import utcnow

CURSOR_PREFIX = "sync:delta:"


class DeltaCursorStore:
    """Stores the opaque resumption cursor for each delta feed.

    A cursor is written only after a complete page walk, so a failed poll
    leaves the previous value untouched.
    """

    def __init__(self, store: KeyValueStore, clock: Callable[[], float] = time.time) -> None:
        self._store = store
        self._clock = clock

    def _key(self, feed: str, scope: str) -> str:
        return f"{CURSOR_PREFIX}{feed}:{scope}"

    async def get(self, feed: str, scope: str) -> str | None:
        raw = await self._store.get(self._key(feed, scope))
        if not raw:
            return None
        return json.loads(raw).get("cursor")

    async def set(self, feed: str, scope: str, cursor: str) -> None:
        payload = {"cursor": cursor, "updatedAt": utcnow(self._clock).isoformat()}
        await self._store.set(self._key(feed, scope), json.dumps(payload))

    async def clear(self, feed: str, scope: str) -> None:
        await self._store.delete(self._key(feed, scope))
