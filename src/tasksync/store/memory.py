"""Process-scoped in-memory key-value store.

Used when STORE_BACKEND=memory and as the fallback target when Redis is
unreachable. State is lost when the process exits. Every operation runs
without awaiting, so each one is atomic with respect to the event loop.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any

from src.tasksync.store.base import KeyValueStore


def _redis_slice(items: list[str], start: int, end: int) -> list[str]:
    """Inclusive, negative-aware slice matching Redis LRANGE semantics."""
    n = len(items)
    if start < 0:
        start = max(n + start, 0)
    if end < 0:
        end = n + end
    if start > end or start >= n:
        return []
    return items[start : end + 1]


class MemoryKeyValueStore(KeyValueStore):
    """In-memory implementation of KeyValueStore.

    Args:
        clock: Returns the current time in seconds. Injectable so tests can
            move time forward past TTLs.
    """

    name = "memory"

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._data: dict[str, Any] = {}
        self._expires: dict[str, float] = {}

    def _alive(self, key: str) -> bool:
        expires_at = self._expires.get(key)
        if expires_at is not None and self._clock() >= expires_at:
            self._data.pop(key, None)
            self._expires.pop(key, None)
        return key in self._data

    def _set_ttl(self, key: str, ttl_seconds: int | None) -> None:
        if ttl_seconds:
            self._expires[key] = self._clock() + ttl_seconds
        else:
            self._expires.pop(key, None)

    def _list(self, key: str) -> list[str]:
        if not self._alive(key):
            self._data[key] = []
        value = self._data[key]
        if not isinstance(value, list):
            raise TypeError(f"key {key!r} does not hold a list")
        return value

    # ── String operations ───────────────────────────────────────────────

    async def get(self, key: str) -> str | None:
        if not self._alive(key):
            return None
        value = self._data[key]
        return value if isinstance(value, str) else None

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        self._data[key] = value
        self._set_ttl(key, ttl_seconds)

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int | None = None) -> bool:
        if self._alive(key):
            return False
        self._data[key] = value
        self._set_ttl(key, ttl_seconds)
        return True

    async def delete(self, key: str) -> int:
        existed = self._alive(key)
        self._data.pop(key, None)
        self._expires.pop(key, None)
        return int(existed)

    async def delete_if_equals(self, key: str, value: str) -> bool:
        if self._alive(key) and self._data[key] == value:
            del self._data[key]
            self._expires.pop(key, None)
            return True
        return False

    async def keys(self, prefix: str) -> list[str]:
        return sorted(k for k in list(self._data) if k.startswith(prefix) and self._alive(k))

    async def incr(self, key: str, ttl_seconds: int | None = None) -> int:
        current = int(self._data[key]) if self._alive(key) else 0
        current += 1
        self._data[key] = str(current)
        if ttl_seconds:
            self._set_ttl(key, ttl_seconds)
        return current

    # ── List operations ─────────────────────────────────────────────────

    async def rpush(self, key: str, values: list[str]) -> int:
        items = self._list(key)
        items.extend(values)
        return len(items)

    async def lpush(self, key: str, values: list[str]) -> int:
        items = self._list(key)
        for value in values:
            items.insert(0, value)
        return len(items)

    async def lpop(self, key: str, count: int) -> list[str]:
        if count <= 0 or not self._alive(key):
            return []
        items = self._list(key)
        popped = items[:count]
        del items[:count]
        if not items:
            await self.delete(key)
        return popped

    async def lrange(self, key: str, start: int, end: int) -> list[str]:
        if not self._alive(key):
            return []
        return list(_redis_slice(self._list(key), start, end))

    async def ltrim(self, key: str, start: int, end: int) -> None:
        if not self._alive(key):
            return
        self._data[key] = list(_redis_slice(self._list(key), start, end))

    async def llen(self, key: str) -> int:
        if not self._alive(key):
            return 0
        return len(self._list(key))

    async def ping(self) -> bool:
        return True
