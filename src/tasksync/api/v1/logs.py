"""Webhook log listing and live stream (Server-Sent Events)."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable

import structlog
from fastapi import APIRouter, Depends, Query, Request
from sse_starlette.sse import EventSourceResponse

from src.tasksync.api.deps import get_app_settings, get_broker, get_webhook_log
from src.tasksync.config import Settings
from src.tasksync.core.security import require_cron_secret
from src.tasksync.events.broker import LogBroker
from src.tasksync.events.webhook_log import WebhookLog
from src.tasksync.sync.schemas import WebhookLogEntry

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/sync/webhook-log", tags=["webhook-log"], dependencies=[Depends(require_cron_secret)])

# How often the stream checks for a client disconnect while idle.
POLL_INTERVAL_SECONDS = 1.0


async def stream_entries(
    broker: LogBroker,
    replay: list[WebhookLogEntry],
    is_disconnected: Callable[[], Awaitable[bool]],
    poll_interval: float = POLL_INTERVAL_SECONDS,
) -> AsyncIterator[dict]:
    """Yield SSE events for ``replay`` then for every new broker entry.

    The broker subscription is dropped as soon as the generator finishes,
    whether the client disconnected or the response was cancelled.
    """
    queue, unsubscribe = broker.subscribe()
    logger.info("webhook_log.stream_opened", subscribers=broker.subscriber_count)
    try:
        for entry in replay:
            yield {"event": "webhook", "id": entry.id, "data": entry.model_dump_json(by_alias=True)}
        while not await is_disconnected():
            try:
                entry = await asyncio.wait_for(queue.get(), timeout=poll_interval)
            except asyncio.TimeoutError:
                continue
            yield {"event": "webhook", "id": entry.id, "data": entry.model_dump_json(by_alias=True)}
    finally:
        unsubscribe()
        logger.info("webhook_log.stream_closed", subscribers=broker.subscriber_count)


@router.get("")
async def list_webhook_log(
    limit: int = Query(50, ge=1, le=500),
    webhook_log: WebhookLog = Depends(get_webhook_log),
) -> dict:
    """Most recent webhook deliveries, newest first."""
    entries = await webhook_log.list_entries(limit)
    return {"ok": True, "entries": [e.model_dump(mode="json", by_alias=True) for e in entries]}


@router.get("/stream")
async def stream_webhook_log(
    request: Request,
    include: bool = Query(False),
    broker: LogBroker = Depends(get_broker),
    webhook_log: WebhookLog = Depends(get_webhook_log),
    settings: Settings = Depends(get_app_settings),
) -> EventSourceResponse:
    """SSE stream of webhook deliveries; ``include=1`` replays recent entries first."""
    replay: list[WebhookLogEntry] = []
    if include:
        replay = list(reversed(await webhook_log.list_entries(settings.WEBHOOK_LOG_REPLAY)))
    return EventSourceResponse(
        stream_entries(broker, replay, request.is_disconnected),
        ping=int(settings.WEBHOOK_LOG_KEEPALIVE_SECONDS),
    )
