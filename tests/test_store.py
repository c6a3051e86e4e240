"""Tests for the key-value backends and the Redis fallback wrapper."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from src.tasksync.errors import StoreUnavailableError
from src.tasksync.store.fallback import FallbackKeyValueStore
from src.tasksync.store.memory import MemoryKeyValueStore
from src.tasksync.store.queue import JOBS_KEY, JobQueue
from src.tasksync.store.redis import RedisKeyValueStore
from src.tasksync.sync.schemas import Source


# ── MemoryKeyValueStore ──────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_set_if_absent_respects_ttl(store, clock):
    assert await store.set_if_absent("lock", "a", ttl_seconds=60) is True
    assert await store.set_if_absent("lock", "b", ttl_seconds=60) is False

    clock.advance(60)
    assert await store.set_if_absent("lock", "c", ttl_seconds=60) is True
    assert await store.get("lock") == "c"


@pytest.mark.asyncio
async def test_delete_if_equals_only_for_holder(store):
    await store.set("lock", "token-1")
    assert await store.delete_if_equals("lock", "token-2") is False
    assert await store.get("lock") == "token-1"
    assert await store.delete_if_equals("lock", "token-1") is True
    assert await store.get("lock") is None


@pytest.mark.asyncio
async def test_list_operations_follow_redis_semantics(store):
    await store.rpush("jobs", ["a", "b", "c"])
    await store.lpush("jobs", ["z"])
    assert await store.lrange("jobs", 0, -1) == ["z", "a", "b", "c"]
    assert await store.lpop("jobs", 2) == ["z", "a"]
    assert await store.llen("jobs") == 2

    await store.ltrim("jobs", 0, 0)
    assert await store.lrange("jobs", 0, -1) == ["b"]
    assert await store.lpop("jobs", 5) == ["b"]
    assert await store.llen("jobs") == 0


@pytest.mark.asyncio
async def test_incr_and_keys(store, clock):
    assert await store.incr("v:task-1", ttl_seconds=10) == 1
    assert await store.incr("v:task-1", ttl_seconds=10) == 2
    await store.set("v:task-2", "x")
    await store.set("other", "y")
    assert await store.keys("v:") == ["v:task-1", "v:task-2"]

    clock.advance(11)
    assert await store.keys("v:") == ["v:task-2"]
    assert await store.incr("v:task-1") == 1


# ── RedisKeyValueStore ───────────────────────────────────────────────────────


def _redis_mock() -> MagicMock:
    client = MagicMock()
    client.register_script.return_value = AsyncMock(return_value=1)
    client.get = AsyncMock(return_value="value")
    client.set = AsyncMock(return_value=True)
    client.ping = AsyncMock(return_value=True)
    return client


@pytest.mark.asyncio
async def test_redis_store_prefixes_keys():
    client = _redis_mock()
    store = RedisKeyValueStore(client, prefix="tasksync:")

    assert await store.get("sync:jobs:lock") == "value"
    client.get.assert_awaited_once_with("tasksync:sync:jobs:lock")

    assert await store.set_if_absent("sync:jobs:lock", "tok", ttl_seconds=60) is True
    client.set.assert_awaited_with("tasksync:sync:jobs:lock", "tok", nx=True, ex=60)


@pytest.mark.asyncio
async def test_redis_store_release_uses_compare_and_delete_script():
    client = _redis_mock()
    store = RedisKeyValueStore(client, prefix="p:")

    assert await store.delete_if_equals("lock", "tok") is True
    script = client.register_script.return_value
    script.assert_awaited_once_with(keys=["p:lock"], args=["tok"])


@pytest.mark.asyncio
async def test_redis_errors_become_store_unavailable():
    client = _redis_mock()
    client.get = AsyncMock(side_effect=RedisConnectionError("connection refused"))
    store = RedisKeyValueStore(client)

    with pytest.raises(StoreUnavailableError):
        await store.get("anything")


# ── FallbackKeyValueStore ────────────────────────────────────────────────────


class _DownStore(MemoryKeyValueStore):
    """Memory store that can be switched off to simulate an outage."""

    def __init__(self) -> None:
        super().__init__()
        self.down = True

    def _check(self, op: str) -> None:
        if self.down:
            raise StoreUnavailableError(f"redis {op} failed: timeout")

    async def set(self, key, value, ttl_seconds=None):
        self._check("set")
        await super().set(key, value, ttl_seconds)

    async def get(self, key):
        self._check("get")
        return await super().get(key)

    async def set_if_absent(self, key, value, ttl_seconds=None):
        self._check("set_if_absent")
        return await super().set_if_absent(key, value, ttl_seconds)

    async def rpush(self, key, values):
        self._check("rpush")
        return await super().rpush(key, values)

    async def lpop(self, key, count):
        self._check("lpop")
        return await super().lpop(key, count)

    async def ping(self):
        self._check("ping")
        return True


@pytest.mark.asyncio
async def test_fallback_routes_to_memory_while_primary_is_down():
    primary = _DownStore()
    fallback = MemoryKeyValueStore()
    store = FallbackKeyValueStore(primary, fallback)

    await store.set("k", "v")
    assert store.degraded is True
    assert await fallback.get("k") == "v"
    assert await store.get("k") == "v"
    assert await store.ping() is False


@pytest.mark.asyncio
async def test_fallback_recovers_when_primary_returns():
    primary = _DownStore()
    store = FallbackKeyValueStore(primary, MemoryKeyValueStore())

    await store.set("k", "v")
    assert store.degraded is True

    primary.down = False
    await store.set("k", "v2")
    assert store.degraded is False
    assert await primary.get("k") == "v2"


@pytest.mark.asyncio
async def test_jobs_queued_during_outage_move_to_primary_on_recovery(make_event):
    primary = _DownStore()
    primary.down = False
    store = FallbackKeyValueStore(primary, MemoryKeyValueStore(), handoff_lists=(JOBS_KEY,))
    queue = JobQueue(store)

    await queue.enqueue([make_event(Source.BC, "A1")])
    primary.down = True
    await queue.enqueue([make_event(Source.BC, "A2")])
    assert store.degraded is True

    primary.down = False
    jobs = await queue.drain(10)

    assert [job.event.entity_id for job in jobs] == ["A1", "A2"]
    assert store.degraded is False
    assert await queue.size() == 0
