"""FastAPI dependencies for services kept on ``app.state``.

Long-lived pieces (store, queue, broker, normalizer) are created once in the
lifespan. Vendor clients and everything built on them are created per
request through ``get_clients`` so no REST client outlives its request.
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator, Callable
from contextlib import AbstractAsyncContextManager
from functools import partial
from typing import Any

from fastapi import Depends, HTTPException, Request, status

from src.tasksync.api.middleware.logging import get_request_id
from src.tasksync.clients import ClientBundle, open_client_bundle
from src.tasksync.config import Settings, get_settings
from src.tasksync.events.broker import LogBroker
from src.tasksync.events.webhook_log import WebhookLog
from src.tasksync.store.cursors import DeltaCursorStore
from src.tasksync.store.queue import JobQueue
from src.tasksync.store.subscriptions import SubscriptionStore
from src.tasksync.store.write_origin import WriteOriginStore
from src.tasksync.sync.engine import SyncEngine
from src.tasksync.sync.executor import SyncExecutor
from src.tasksync.sync.normalizer import WebhookNormalizer
from src.tasksync.sync.processor import JobProcessor
from src.tasksync.sync.resolver import ConflictResolver
from src.tasksync.sync.schemas import ResolveOptions


def _service(request: Request, name: str) -> Any:
    """Retrieve a service from app.state, 503 if not available."""
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{name} not available",
        )
    return service


def get_app_settings(request: Request) -> Settings:
    return getattr(request.app.state, "settings", None) or get_settings()


def get_clock(request: Request) -> Callable[[], float]:
    return getattr(request.app.state, "clock", None) or time.time


def get_queue(request: Request) -> JobQueue:
    return _service(request, "queue")


def get_normalizer(request: Request) -> WebhookNormalizer:
    return _service(request, "normalizer")


def get_webhook_log(request: Request) -> WebhookLog:
    return _service(request, "webhook_log")


def get_broker(request: Request) -> LogBroker:
    return _service(request, "broker")


def get_write_origins(request: Request) -> WriteOriginStore:
    return _service(request, "write_origins")


def get_cursor_store(request: Request) -> DeltaCursorStore:
    return _service(request, "cursor_store")


def get_subscription_store(request: Request) -> SubscriptionStore:
    return _service(request, "subscription_store")


ClientFactory = Callable[[], AbstractAsyncContextManager[ClientBundle]]


def get_client_factory(settings: Settings = Depends(get_app_settings)) -> ClientFactory:
    """Opens a client bundle on demand, for routes that need clients only sometimes."""
    return partial(open_client_bundle, settings)


async def get_clients(open_clients: ClientFactory = Depends(get_client_factory)) -> AsyncGenerator[ClientBundle, None]:
    """One client bundle per request, closed when the request ends."""
    async with open_clients() as bundle:
        yield bundle


def build_engine(request: Request, clients: ClientBundle, settings: Settings) -> SyncEngine:
    clock = get_clock(request)
    write_origins = get_write_origins(request)
    resolver = ConflictResolver(
        write_origins,
        bc_modified_grace_ms=settings.SYNC_BC_MODIFIED_GRACE_MS,
        sync_lock_timeout_minutes=settings.SYNC_LOCK_TIMEOUT_MINUTES,
        clock=clock,
    )
    executor = SyncExecutor(clients.bc, clients.graph, clients.dataverse, write_origins, clock=clock)
    return SyncEngine(
        clients.bc,
        clients.graph,
        clients.dataverse,
        resolver,
        executor,
        concurrency=settings.SYNC_TASK_CONCURRENCY,
    )


def build_processor(request: Request, engine: SyncEngine, settings: Settings) -> JobProcessor:
    return JobProcessor(
        get_queue(request),
        engine,
        lock_ttl_seconds=settings.QUEUE_LOCK_TTL_SECONDS,
        default_max_jobs=settings.QUEUE_MAX_JOBS,
    )


def get_engine(
    request: Request,
    clients: ClientBundle = Depends(get_clients),
    settings: Settings = Depends(get_app_settings),
) -> SyncEngine:
    return build_engine(request, clients, settings)


def get_processor(
    request: Request,
    engine: SyncEngine = Depends(get_engine),
    settings: Settings = Depends(get_app_settings),
) -> JobProcessor:
    return build_processor(request, engine, settings)


def build_resolve_options(request: Request, settings: Settings, dry_run: bool = False) -> ResolveOptions:
    return ResolveOptions(
        request_id=get_request_id(request),
        prefer_bc=settings.SYNC_PREFER_BC,
        grace_ms=settings.SYNC_LOOP_GRACE_MS,
        dry_run=dry_run,
    )
