"""Durable job queue with deduplication and an advisory processing lock.

Key layout (under the store's prefix):
    sync:jobs                 FIFO list of serialized Job records
    sync:jobs:lock            advisory lock, value = holder token
    sync:job_dedupe:{sha1}    recent-history marker, TTL = dedupe window
"""

from __future__ import annotations

import hashlib
import time
import uuid
from collections.abc import Callable, Iterable

import structlog
from pydantic import ValidationError

from src.tasksync.core.monitoring import queue_jobs_total, queue_lock_contended_total
from src.tasksync.store.base import KeyValueStore
from src.tasksync.sync.schemas import ChangeEvent, EnqueueResult, Job, Lock, utcnow

logger = structlog.get_logger(__name__)

JOBS_KEY = "sync:jobs"
LOCK_KEY = "sync:jobs:lock"
DEDUPE_PREFIX = "sync:job_dedupe:"


def build_dedup_key(event: ChangeEvent, window_seconds: int) -> str:
    """Stable dedup key for an event within its time bucket."""
    bucket = int(event.received_at.timestamp() // max(window_seconds, 1))
    raw = "|".join((*event.identity(), str(bucket)))
    return hashlib.sha1(raw.encode("utf-8")).hexdigest()


class JobQueue:
    """Job queue over any KeyValueStore.

    Args:
        store: Backing key-value store.
        dedupe_window_seconds: How long an enqueued change suppresses
            identical notifications.
        clock: Returns the current time in seconds.
    """

    def __init__(
        self,
        store: KeyValueStore,
        dedupe_window_seconds: int = 300,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._window = dedupe_window_seconds
        self._clock = clock

    async def enqueue(self, events: Iterable[ChangeEvent], dedupe_history: bool = True) -> EnqueueResult:
        """Queue events, collapsing duplicates.

        Duplicates within the same call always collapse. Across calls, an
        event is dropped while its dedup marker from an earlier enqueue is
        still alive. Never raises on partial duplication.

        Args:
            events: Change events to queue.
            dedupe_history: Check and set the recent-history marker. Poll
                items pass False: the poll is the retry path for webhook
                jobs that failed inside the window.
        """
        result = EnqueueResult()
        seen: set[tuple[str, str, str, str]] = set()
        payloads: list[str] = []
        now = utcnow(self._clock)

        for event in events:
            if not event.entity_id or not event.entity_set:
                result.skipped += 1
                continue
            identity = event.identity()
            if identity in seen:
                result.deduped += 1
                continue
            seen.add(identity)

            dedup_key = build_dedup_key(event, self._window)
            if dedupe_history:
                fresh = await self._store.set_if_absent(
                    f"{DEDUPE_PREFIX}{dedup_key}", "1", ttl_seconds=self._window
                )
                if not fresh:
                    result.deduped += 1
                    continue

            job = Job(event=event, dedup_key=dedup_key, enqueued_at=now)
            payloads.append(job.model_dump_json())

        if payloads:
            await self._store.rpush(JOBS_KEY, payloads)
        result.enqueued = len(payloads)

        queue_jobs_total.labels(outcome="enqueued").inc(result.enqueued)
        queue_jobs_total.labels(outcome="deduped").inc(result.deduped)
        logger.info(
            "queue.enqueued",
            enqueued=result.enqueued,
            deduped=result.deduped,
            skipped=result.skipped,
        )
        return result

    async def requeue(self, jobs: list[Job]) -> int:
        """Push jobs back to the tail without dedup checks."""
        if not jobs:
            return 0
        payloads = [
            job.model_copy(update={"deferrals": job.deferrals + 1}).model_dump_json() for job in jobs
        ]
        await self._store.rpush(JOBS_KEY, payloads)
        queue_jobs_total.labels(outcome="requeued").inc(len(payloads))
        return len(payloads)

    async def drain(self, max_jobs: int) -> list[Job]:
        """Remove and return up to ``max_jobs`` jobs in enqueue order."""
        raw_jobs = await self._store.lpop(JOBS_KEY, max_jobs)
        jobs: list[Job] = []
        for raw in raw_jobs:
            try:
                jobs.append(Job.model_validate_json(raw))
            except ValidationError as exc:
                logger.warning("queue.invalid_job_dropped", error=str(exc))
                queue_jobs_total.labels(outcome="invalid").inc()
        return jobs

    async def size(self) -> int:
        return await self._store.llen(JOBS_KEY)

    async def peek(self, limit: int = 50) -> list[Job]:
        """Return up to ``limit`` jobs from the head without removing them."""
        raw_jobs = await self._store.lrange(JOBS_KEY, 0, limit - 1)
        jobs: list[Job] = []
        for raw in raw_jobs:
            try:
                jobs.append(Job.model_validate_json(raw))
            except ValidationError as exc:
                logger.warning("queue.invalid_job_skipped", error=str(exc))
        return jobs

    # ── Advisory lock ───────────────────────────────────────────────────

    async def acquire_lock(self, ttl_seconds: int) -> Lock | None:
        """Atomically take the processing lock. Returns None if it is held."""
        token = uuid.uuid4().hex
        acquired = await self._store.set_if_absent(LOCK_KEY, token, ttl_seconds=ttl_seconds)
        if not acquired:
            queue_lock_contended_total.inc()
            logger.info("queue.lock_contended")
            return None
        return Lock(token=token, acquired_at=utcnow(self._clock), ttl_seconds=ttl_seconds)

    async def release_lock(self, token: str) -> bool:
        """Release the lock only if ``token`` still holds it."""
        released = await self._store.delete_if_equals(LOCK_KEY, token)
        if not released:
            logger.warning("queue.lock_release_skipped", reason="token_mismatch_or_expired")
        return released
