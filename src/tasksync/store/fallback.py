"""Store wrapper that degrades to an in-memory backend when Redis fails.

The trade-off is deliberate and visible: while Redis is down, jobs, locks
and markers live only in this process and are lost if it exits. When Redis
answers again, the lists named in ``handoff_lists`` (the job queue) are
moved back before any further operation, so queued work is not stranded in
memory.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable
from typing import TypeVar

import structlog

from src.tasksync.core.monitoring import store_fallback_active
from src.tasksync.errors import StoreUnavailableError
from src.tasksync.store.base import KeyValueStore

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class FallbackKeyValueStore(KeyValueStore):
    """Route each operation to ``primary``, or to ``fallback`` if it is unavailable.

    Args:
        primary: Durable store (normally RedisKeyValueStore).
        fallback: Process-scoped store (normally MemoryKeyValueStore).
        handoff_lists: List keys copied from ``fallback`` to the tail of the
            same key in ``primary`` on recovery.
    """

    name = "fallback"

    def __init__(
        self,
        primary: KeyValueStore,
        fallback: KeyValueStore,
        handoff_lists: Iterable[str] = (),
    ) -> None:
        self._primary = primary
        self._fallback = fallback
        self._handoff_lists = tuple(handoff_lists)
        self.degraded = False

    async def _recover(self) -> bool:
        """While degraded, check the primary and hand back the fallback lists."""
        try:
            if not await self._primary.ping():
                return False
            for key in self._handoff_lists:
                pending = await self._fallback.lrange(key, 0, -1)
                if pending:
                    await self._primary.rpush(key, pending)
                    await self._fallback.delete(key)
                    logger.info("store.fallback_handoff", key=key, items=len(pending))
        except StoreUnavailableError:
            return False
        logger.info("store.primary_recovered")
        store_fallback_active.set(0)
        self.degraded = False
        return True

    async def _route(self, op: str, call: Callable[[KeyValueStore], Awaitable[T]]) -> T:
        if self.degraded and not await self._recover():
            return await call(self._fallback)
        try:
            return await call(self._primary)
        except StoreUnavailableError as exc:
            logger.warning("store.fallback_engaged", op=op, error=str(exc))
            store_fallback_active.set(1)
            self.degraded = True
            return await call(self._fallback)

    async def get(self, key: str) -> str | None:
        return await self._route("get", lambda s: s.get(key))

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        await self._route("set", lambda s: s.set(key, value, ttl_seconds))

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int | None = None) -> bool:
        return await self._route("set_if_absent", lambda s: s.set_if_absent(key, value, ttl_seconds))

    async def delete(self, key: str) -> int:
        return await self._route("delete", lambda s: s.delete(key))

    async def delete_if_equals(self, key: str, value: str) -> bool:
        return await self._route("delete_if_equals", lambda s: s.delete_if_equals(key, value))

    async def keys(self, prefix: str) -> list[str]:
        return await self._route("keys", lambda s: s.keys(prefix))

    async def incr(self, key: str, ttl_seconds: int | None = None) -> int:
        return await self._route("incr", lambda s: s.incr(key, ttl_seconds))

    async def rpush(self, key: str, values: list[str]) -> int:
        return await self._route("rpush", lambda s: s.rpush(key, values))

    async def lpush(self, key: str, values: list[str]) -> int:
        return await self._route("lpush", lambda s: s.lpush(key, values))

    async def lpop(self, key: str, count: int) -> list[str]:
        return await self._route("lpop", lambda s: s.lpop(key, count))

    async def lrange(self, key: str, start: int, end: int) -> list[str]:
        return await self._route("lrange", lambda s: s.lrange(key, start, end))

    async def ltrim(self, key: str, start: int, end: int) -> None:
        await self._route("ltrim", lambda s: s.ltrim(key, start, end))

    async def llen(self, key: str) -> int:
        return await self._route("llen", lambda s: s.llen(key))

    async def ping(self) -> bool:
        try:
            return await self._primary.ping()
        except StoreUnavailableError:
            return False

    async def close(self) -> None:
        await self._primary.close()
        await self._fallback.close()
