"""Cron-triggered queue processing under the advisory lock."""

from __future__ import annotations

import structlog

from src.tasksync.core.monitoring import queue_jobs_total
from src.tasksync.store.queue import JobQueue
from src.tasksync.sync.engine import SyncEngine
from src.tasksync.sync.schemas import EntityState, Job, JobProcessSummary, ResolveOptions

logger = structlog.get_logger(__name__)

# Jobs deferred this many times are dropped; the next poll backstop picks them up.
MAX_DEFERRALS = 5


class JobProcessor:
    """Drains one batch of jobs per call.

    A second caller that finds the lock held gets ``locked=True`` and the
    queue is left untouched. The lock is always released, and only by the
    token that acquired it.

    Args:
        queue: Job queue and lock.
        engine: Sync pipeline for the drained events.
        lock_ttl_seconds: Lock lifetime; a crashed holder self-heals after it.
        default_max_jobs: Batch size when the caller gives none.
    """

    def __init__(
        self,
        queue: JobQueue,
        engine: SyncEngine,
        lock_ttl_seconds: int = 60,
        default_max_jobs: int = 25,
    ) -> None:
        self._queue = queue
        self._engine = engine
        self._lock_ttl = lock_ttl_seconds
        self._default_max_jobs = default_max_jobs

    async def process(self, max_jobs: int | None = None, options: ResolveOptions | None = None) -> JobProcessSummary:
        options = options or ResolveOptions()
        summary = JobProcessSummary(request_id=options.request_id)
        limit = max_jobs if max_jobs and max_jobs > 0 else self._default_max_jobs

        lock = await self._queue.acquire_lock(self._lock_ttl)
        if lock is None:
            summary.locked = True
            return summary

        try:
            # A dry run previews the head of the queue and leaves it intact.
            if options.dry_run:
                jobs = await self._queue.peek(limit)
            else:
                jobs = await self._queue.drain(limit)
            summary.jobs = len(jobs)
            if not jobs:
                return summary

            results = await self._engine.sync_events([job.event for job in jobs], options)
            summary.results = results

            to_requeue: list[Job] = []
            for job, result in zip(jobs, results):
                if result.error:
                    summary.errors += 1
                elif result.state == EntityState.APPLIED:
                    summary.processed += 1
                elif result.state == EntityState.DEFERRED:
                    summary.deferred += 1
                    if options.dry_run:
                        continue
                    if job.deferrals < MAX_DEFERRALS:
                        to_requeue.append(job)
                    else:
                        logger.warning("processor.job_dropped", entity_id=job.event.entity_id, deferrals=job.deferrals)
                else:
                    summary.skipped += 1

            if to_requeue:
                await self._queue.requeue(to_requeue)

            queue_jobs_total.labels(outcome="processed").inc(summary.processed)
            queue_jobs_total.labels(outcome="failed").inc(summary.errors)
            logger.info(
                "processor.batch_complete",
                request_id=options.request_id,
                jobs=summary.jobs,
                processed=summary.processed,
                skipped=summary.skipped,
                deferred=summary.deferred,
                errors=summary.errors,
            )
            return summary
        finally:
            await self._queue.release_lock(lock.token)
