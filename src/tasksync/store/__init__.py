"""Persistence layer: key-value backends and the stores built on them."""

from __future__ import annotations

import time
from collections.abc import Callable

from src.tasksync.config import Settings, StoreBackend
from src.tasksync.store.base import KeyValueStore
from src.tasksync.store.fallback import FallbackKeyValueStore
from src.tasksync.store.memory import MemoryKeyValueStore
from src.tasksync.store.queue import JOBS_KEY


def build_store(settings: Settings, clock: Callable[[], float] = time.time) -> KeyValueStore:
    """Create the configured store backend.

    ``memory`` returns a process-scoped store. ``redis`` returns the Redis
    store, wrapped with an in-memory fallback when STORE_FALLBACK_TO_MEMORY
    is set.
    """
    if settings.STORE_BACKEND == StoreBackend.memory:
        return MemoryKeyValueStore(clock=clock)

    from src.tasksync.core.redis import get_redis_pool
    from src.tasksync.store.redis import RedisKeyValueStore

    primary = RedisKeyValueStore(get_redis_pool(), prefix=settings.STORE_KEY_PREFIX)
    if settings.STORE_FALLBACK_TO_MEMORY:
        return FallbackKeyValueStore(primary, MemoryKeyValueStore(clock=clock), handoff_lists=(JOBS_KEY,))
    return primary
