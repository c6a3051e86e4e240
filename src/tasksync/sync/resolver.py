"""Conflict and authority resolution for a single change event.

Decides whether a change should be applied, and which system's state wins,
without writing anything. Rules are evaluated in order:

1. not_found         no BC record (or no remote record) to sync
2. <system>_origin   loop suppression: the engine itself wrote this entity
                     on behalf of another system inside the grace window
3. sync_locked       the BC record's syncLock is held and not stale
4. already_applied   etag / lastSyncAt show the change is already in BC
5. bc_newer          preferBc and BC changed since the last sync
6. source_changed    the event's system wins
"""

from __future__ import annotations

import time
from collections.abc import Callable
from datetime import timedelta

import structlog

from src.tasksync.core.monitoring import sync_decisions_total
from src.tasksync.store.write_origin import WriteOriginStore
from src.tasksync.sync.schemas import (
    ChangeEvent,
    EntityState,
    RemoteTask,
    ResolveOptions,
    Source,
    SyncDecision,
    TaskRecord,
    utcnow,
)

logger = structlog.get_logger(__name__)


def is_stale_sync_lock(record: TaskRecord, timeout_minutes: int, now_ts: float) -> bool:
    """A syncLock older than the timeout is stale.

    The lock PATCH bumps BC's modified time but not lastSyncAt, so the age
    runs from whichever of the two is later.
    """
    if not record.sync_lock:
        return False
    if timeout_minutes <= 0:
        return False
    stamps = [ts for ts in (record.last_sync_at, record.modified_at) if ts is not None]
    if not stamps:
        return True
    return now_ts - max(stamps).timestamp() > timeout_minutes * 60


def bc_changed_since_sync(record: TaskRecord, grace_ms: int) -> bool:
    """True if BC was modified after the last sync stamp, beyond ``grace_ms``."""
    if record.modified_at is None:
        return False
    if record.last_sync_at is None:
        return True
    return record.modified_at > record.last_sync_at + timedelta(milliseconds=grace_ms)


class ConflictResolver:
    """Produces a SyncDecision for one event.

    Args:
        write_origins: Store of the most recent engine write per entity.
        bc_modified_grace_ms: Slack between BC's modified time and the
            lastSyncAt stamp written in the same PATCH.
        sync_lock_timeout_minutes: Age after which a syncLock is ignored.
        clock: Returns the current time in seconds.
    """

    def __init__(
        self,
        write_origins: WriteOriginStore,
        bc_modified_grace_ms: int = 2_000,
        sync_lock_timeout_minutes: int = 30,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._origins = write_origins
        self._bc_grace_ms = bc_modified_grace_ms
        self._lock_timeout = sync_lock_timeout_minutes
        self._clock = clock

    async def resolve(
        self,
        event: ChangeEvent,
        options: ResolveOptions,
        bc_record: TaskRecord | None = None,
        remote_record: RemoteTask | None = None,
    ) -> SyncDecision:
        state, winner, reason, version = await self._decide(event, options, bc_record, remote_record)
        decision = SyncDecision(
            request_id=options.request_id,
            dry_run=options.dry_run,
            prefer_bc=options.prefer_bc,
            grace_ms=options.grace_ms,
            winner=winner,
            reason=reason,
            state=state,
            entity_id=event.entity_id,
            source=event.source,
            origin_version=version,
            decided_at=utcnow(self._clock),
        )
        sync_decisions_total.labels(source=event.source.value, state=state.value, reason=reason).inc()
        logger.info(
            "resolver.decided",
            request_id=options.request_id,
            entity_id=event.entity_id,
            source=event.source.value,
            state=state.value,
            winner=winner.value if winner else None,
            reason=reason,
            dry_run=options.dry_run,
        )
        return decision

    async def _decide(
        self,
        event: ChangeEvent,
        options: ResolveOptions,
        bc: TaskRecord | None,
        remote: RemoteTask | None,
    ) -> tuple[EntityState, Source | None, str, int | None]:
        deleted = event.change_type == "deleted"

        if bc is None:
            return EntityState.UNSEEN, None, "not_found", None
        if event.source != Source.BC and remote is None and not deleted:
            return EntityState.UNSEEN, None, "not_found", None

        origin = await self._origins.get(event.entity_id)
        version = origin.version if origin else None
        if origin is not None and origin.updated_by != event.source:
            elapsed_ms = (event.received_at - origin.updated_at).total_seconds() * 1000
            if 0 <= elapsed_ms < options.grace_ms:
                return EntityState.SUPPRESSED, None, f"{origin.updated_by.value}_origin", version

        if bc.sync_lock and not is_stale_sync_lock(bc, self._lock_timeout, self._clock()):
            return EntityState.DEFERRED, None, "sync_locked", version

        if deleted:
            if event.source == Source.BC:
                return EntityState.UNSEEN, None, "not_found", version
            return EntityState.PENDING, event.source, "source_deleted", version

        if self._already_applied(event, bc, remote):
            return EntityState.APPLIED, event.source, "already_applied", version

        if event.source != Source.BC and options.prefer_bc and bc_changed_since_sync(bc, self._bc_grace_ms):
            return EntityState.PENDING, Source.BC, "bc_newer", version

        return EntityState.PENDING, event.source, "source_changed", version

    def _already_applied(self, event: ChangeEvent, bc: TaskRecord, remote: RemoteTask | None) -> bool:
        if event.source == Source.PLANNER:
            return bool(remote and remote.etag and bc.last_planner_etag == remote.etag)
        if event.source == Source.PREMIUM:
            if remote is None or remote.modified_at is None or bc.last_sync_at is None:
                return False
            return remote.modified_at <= bc.last_sync_at
        # BC event: nothing changed in BC after the engine's own lastSyncAt stamp
        if bc.last_sync_at is None or bc.modified_at is None:
            return False
        return not bc_changed_since_sync(bc, self._bc_grace_ms)
