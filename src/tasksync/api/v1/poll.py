"""Delta polling, either as the primary sync path or as a backstop."""

from __future__ import annotations

from enum import Enum
from functools import partial

from fastapi import APIRouter, Depends, Query, Request

import structlog

from src.tasksync.api.deps import (
    build_resolve_options,
    get_app_settings,
    get_clients,
    get_clock,
    get_cursor_store,
    get_processor,
    get_queue,
)
from src.tasksync.api.middleware.logging import get_request_id
from src.tasksync.clients import ClientBundle
from src.tasksync.config import Settings
from src.tasksync.core.security import require_cron_secret
from src.tasksync.store.cursors import DeltaCursorStore
from src.tasksync.store.queue import JobQueue
from src.tasksync.sync.poller import DataverseDeltaFeed, DeltaFeed, DeltaPoller, PlannerDeltaFeed
from src.tasksync.sync.processor import JobProcessor

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/sync/poll", tags=["poll"], dependencies=[Depends(require_cron_secret)])


class Feed(str, Enum):
    planner = "planner"
    premium = "premium"


def build_feeds(feed: Feed, clients: ClientBundle, settings: Settings, request: Request, plan_id: str | None) -> list[DeltaFeed]:
    clock = get_clock(request)
    if feed == Feed.premium:
        return [DataverseDeltaFeed(clients.dataverse, clock=clock)]
    plan_ids = [plan_id] if plan_id else settings.planner_plan_ids
    return [PlannerDeltaFeed(clients.graph, pid, clock=clock) for pid in plan_ids]


@router.post("/{feed}")
async def run_poll(
    feed: Feed,
    request: Request,
    plan_id: str | None = Query(None, alias="planId"),
    process: bool = Query(True),
    reset: bool = Query(False),
    clients: ClientBundle = Depends(get_clients),
    settings: Settings = Depends(get_app_settings),
    cursors: DeltaCursorStore = Depends(get_cursor_store),
    queue: JobQueue = Depends(get_queue),
    processor: JobProcessor = Depends(get_processor),
) -> dict:
    """Walk each delta feed, enqueue its changes, then drain the queue once.

    ``reset=true`` discards the stored cursor and starts a full walk.
    """
    outcomes = []
    for delta_feed in build_feeds(feed, clients, settings, request, plan_id):
        if reset:
            await cursors.clear(delta_feed.name, delta_feed.scope)
        poller = DeltaPoller(delta_feed, cursors, max_pages=settings.POLL_MAX_PAGES)
        outcomes.append(await poller.run(sink=partial(queue.enqueue, dedupe_history=False)))

    summary = None
    if process and any(o.items for o in outcomes):
        summary = await processor.process(options=build_resolve_options(request, settings))

    return {
        "ok": all(o.error is None for o in outcomes),
        "requestId": get_request_id(request),
        "smartPolling": settings.SYNC_USE_SMART_POLLING,
        "feeds": [o.model_dump(mode="json", by_alias=True) for o in outcomes],
        "summary": summary.model_dump(mode="json", by_alias=True) if summary else None,
    }
