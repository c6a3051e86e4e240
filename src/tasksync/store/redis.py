"""Redis-backed key-value store with automatic key prefixing.

Every key is prefixed with STORE_KEY_PREFIX so several deployments can
share one Redis database. Connection and timeout errors are raised as
StoreUnavailableError so the fallback wrapper can take over.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import TypeVar

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from src.tasksync.errors import StoreUnavailableError
from src.tasksync.store.base import KeyValueStore

T = TypeVar("T")

# Compare-and-delete: only the holder of the value may remove the key.
_DELETE_IF_EQUALS = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("DEL", KEYS[1])
end
return 0
"""


class RedisKeyValueStore(KeyValueStore):
    """KeyValueStore on top of a redis.asyncio client.

    Args:
        redis_client: Async Redis client created with ``decode_responses=True``.
        prefix: Namespace prepended to every key.
    """

    name = "redis"

    def __init__(self, redis_client: aioredis.Redis, prefix: str = "") -> None:
        self._redis = redis_client
        self._prefix = prefix
        self._delete_if_equals = redis_client.register_script(_DELETE_IF_EQUALS)

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def _call(self, op: str, awaitable: Awaitable[T]) -> T:
        try:
            return await awaitable
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            raise StoreUnavailableError(f"redis {op} failed: {exc}") from exc

    # ── String operations ───────────────────────────────────────────────

    async def get(self, key: str) -> str | None:
        return await self._call("get", self._redis.get(self._key(key)))

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        await self._call("set", self._redis.set(self._key(key), value, ex=ttl_seconds or None))

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int | None = None) -> bool:
        result = await self._call(
            "set_nx",
            self._redis.set(self._key(key), value, nx=True, ex=ttl_seconds or None),
        )
        return bool(result)

    async def delete(self, key: str) -> int:
        return int(await self._call("delete", self._redis.delete(self._key(key))))

    async def delete_if_equals(self, key: str, value: str) -> bool:
        result = await self._call(
            "delete_if_equals",
            self._delete_if_equals(keys=[self._key(key)], args=[value]),
        )
        return bool(result)

    async def keys(self, prefix: str) -> list[str]:
        async def _scan() -> list[str]:
            found = []
            async for full_key in self._redis.scan_iter(match=f"{self._key(prefix)}*"):
                found.append(full_key[len(self._prefix):])
            return sorted(found)

        return await self._call("scan", _scan())

    async def incr(self, key: str, ttl_seconds: int | None = None) -> int:
        async def _incr() -> int:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.incr(self._key(key))
                if ttl_seconds:
                    pipe.expire(self._key(key), ttl_seconds)
                results = await pipe.execute()
            return int(results[0])

        return await self._call("incr", _incr())

    # ── List operations ─────────────────────────────────────────────────

    async def rpush(self, key: str, values: list[str]) -> int:
        if not values:
            return await self.llen(key)
        return int(await self._call("rpush", self._redis.rpush(self._key(key), *values)))

    async def lpush(self, key: str, values: list[str]) -> int:
        if not values:
            return await self.llen(key)
        return int(await self._call("lpush", self._redis.lpush(self._key(key), *values)))

    async def lpop(self, key: str, count: int) -> list[str]:
        if count <= 0:
            return []
        result = await self._call("lpop", self._redis.lpop(self._key(key), count))
        return list(result or [])

    async def lrange(self, key: str, start: int, end: int) -> list[str]:
        return list(await self._call("lrange", self._redis.lrange(self._key(key), start, end)))

    async def ltrim(self, key: str, start: int, end: int) -> None:
        await self._call("ltrim", self._redis.ltrim(self._key(key), start, end))

    async def llen(self, key: str) -> int:
        return int(await self._call("llen", self._redis.llen(self._key(key))))

    async def ping(self) -> bool:
        return bool(await self._call("ping", self._redis.ping()))
