"""Cron-triggered job queue processing."""

from __future__ import annotations

import json

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse

import structlog

from src.tasksync.api.deps import build_resolve_options, get_app_settings, get_processor, get_queue
from src.tasksync.config import Settings
from src.tasksync.core.security import require_cron_secret
from src.tasksync.store.queue import JobQueue
from src.tasksync.sync.processor import JobProcessor

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/sync/jobs", tags=["jobs"], dependencies=[Depends(require_cron_secret)])


async def _body_max_jobs(request: Request) -> int | None:
    raw = await request.body()
    if not raw:
        return None
    try:
        payload = json.loads(raw)
    except ValueError:
        logger.warning("jobs.invalid_body")
        return None
    value = payload.get("maxJobs") if isinstance(payload, dict) else None
    return value if isinstance(value, int) and value > 0 else None


@router.api_route("/process", methods=["GET", "POST"])
async def process_jobs(
    request: Request,
    max_jobs: int | None = Query(None, alias="maxJobs", ge=1, le=500),
    dry_run: bool = Query(False, alias="dryRun"),
    processor: JobProcessor = Depends(get_processor),
    settings: Settings = Depends(get_app_settings),
) -> JSONResponse:
    """Drain one batch of queued jobs.

    Returns 409 with ``locked: true`` when another invocation holds the
    queue lock; the queue is not touched in that case.
    """
    if max_jobs is None and request.method == "POST":
        max_jobs = await _body_max_jobs(request)

    options = build_resolve_options(request, settings, dry_run=dry_run)
    summary = await processor.process(max_jobs=max_jobs, options=options)
    content = {"ok": not summary.locked, **summary.model_dump(mode="json", by_alias=True)}
    if summary.locked:
        logger.info("jobs.locked", request_id=options.request_id)
        return JSONResponse(status_code=status.HTTP_409_CONFLICT, content=content)
    return JSONResponse(status_code=status.HTTP_200_OK, content=content)


@router.get("/queue")
async def queue_status(queue: JobQueue = Depends(get_queue), limit: int = Query(20, ge=1, le=200)) -> dict:
    """Queue length and the oldest queued jobs."""
    jobs = await queue.peek(limit)
    return {
        "size": await queue.size(),
        "jobs": [job.model_dump(mode="json") for job in jobs],
    }
