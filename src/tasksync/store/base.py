"""Key-value store abstract base class.

Every backend (Redis, in-process memory) implements this ABC. Higher-level
stores (job queue, subscriptions, delta cursors, write origins) are written
against it and never touch a backend directly.

Values are strings; callers serialize with pydantic or json.
"""

from __future__ import annotations

from abc import ABC, abstractmethod


class KeyValueStore(ABC):
    """Abstract interface for the persistence operations the engine needs.

    Methods:
        get / set / delete: plain string values with optional TTL.
        set_if_absent: atomic SET NX EX, the building block for locks and dedup.
        delete_if_equals: atomic compare-and-delete, used to release locks.
        keys: list keys under a prefix.
        incr: atomic counter.
        rpush / lpush / lpop / lrange / ltrim / llen: list operations.
    """

    name: str = "abstract"

    @abstractmethod
    async def get(self, key: str) -> str | None:
        ...

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        ...

    @abstractmethod
    async def set_if_absent(self, key: str, value: str, ttl_seconds: int | None = None) -> bool:
        """Set ``key`` only if it does not exist. Returns True if set."""
        ...

    @abstractmethod
    async def delete(self, key: str) -> int:
        ...

    @abstractmethod
    async def delete_if_equals(self, key: str, value: str) -> bool:
        """Delete ``key`` only if it currently holds ``value``."""
        ...

    @abstractmethod
    async def keys(self, prefix: str) -> list[str]:
        ...

    @abstractmethod
    async def incr(self, key: str, ttl_seconds: int | None = None) -> int:
        """Increment a counter, refreshing its TTL when given."""
        ...

    @abstractmethod
    async def rpush(self, key: str, values: list[str]) -> int:
        ...

    @abstractmethod
    async def lpush(self, key: str, values: list[str]) -> int:
        ...

    @abstractmethod
    async def lpop(self, key: str, count: int) -> list[str]:
        """Pop up to ``count`` items from the head of a list."""
        ...

    @abstractmethod
    async def lrange(self, key: str, start: int, end: int) -> list[str]:
        ...

    @abstractmethod
    async def ltrim(self, key: str, start: int, end: int) -> None:
        ...

    @abstractmethod
    async def llen(self, key: str) -> int:
        ...

    @abstractmethod
    async def ping(self) -> bool:
        ...

    async def close(self) -> None:
        """Release backend resources. No-op by default."""
        return None
