"""Applies resolver decisions through the BC, Graph and Dataverse clients.

Every mutation touching a BC task runs inside the record-level syncLock:
the lock is set with an If-Match on the task's etag, the final PATCH
clears it, and a best-effort clearing PATCH runs on any failure. Each
successful write records a write-origin marker so the echo notification it
triggers is suppressed.
"""

from __future__ import annotations

import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog

from src.tasksync.errors import ExternalServiceError, RecordLockedError
from src.tasksync.store.write_origin import WriteOriginStore
from src.tasksync.sync.schemas import (
    ChangeEvent,
    EntityState,
    RemoteTask,
    Source,
    SyncDecision,
    TaskFields,
    TaskRecord,
)

logger = structlog.get_logger(__name__)


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def bc_patch_from_fields(fields: TaskFields) -> dict[str, Any]:
    """BC columns written when another system's task state wins."""
    return {
        "percentComplete": fields.percent_complete if fields.percent_complete is not None else 0,
        "startDate": fields.start_date,
        "endDate": fields.end_date,
    }


@dataclass
class _LockedRecord:
    record: TaskRecord
    pending: dict[str, Any] = field(default_factory=dict)


class SyncExecutor:
    """Writes the winning state to the other systems.

    Args:
        bc: BC client (``patch_project_task``).
        graph: Graph client (``get_task``, ``update_task``).
        dataverse: Dataverse client (``update_task``).
        write_origins: Loop-suppression marker store.
        clock: Returns the current time in seconds.
    """

    def __init__(
        self,
        bc: Any,
        graph: Any,
        dataverse: Any,
        write_origins: WriteOriginStore,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._bc = bc
        self._graph = graph
        self._dataverse = dataverse
        self._origins = write_origins
        self._clock = clock

    async def apply(
        self,
        decision: SyncDecision,
        event: ChangeEvent,
        bc_record: TaskRecord,
        remote_record: RemoteTask | None = None,
    ) -> list[str]:
        """Apply a pending decision. Returns the written targets as ``system:id``.

        Raises:
            RecordLockedError: The BC task changed or was locked concurrently,
                or another write landed on the entity after the decision.
            ExternalServiceError: A vendor call failed.
        """
        if decision.dry_run or decision.state != EntityState.PENDING or decision.winner is None:
            return []

        current_version = await self._origins.current_version(decision.entity_id)
        if current_version is not None and current_version != decision.origin_version:
            raise RecordLockedError(
                f"write origin for {decision.entity_id} moved to v{current_version} after decision"
            )

        if decision.reason == "source_deleted":
            return await self._unlink(event.source, bc_record)
        if decision.winner == Source.BC:
            return await self._push_from_bc(bc_record, remote_record)
        return await self._pull_into_bc(decision.winner, bc_record, remote_record)

    # ── Record-level lock ───────────────────────────────────────────────

    @asynccontextmanager
    async def _record_lock(self, record: TaskRecord) -> AsyncIterator[_LockedRecord]:
        """Hold the BC task's syncLock; the final PATCH writes ``pending`` and clears it."""
        held = _LockedRecord(record=record)
        if record.has_sync_lock:
            try:
                held.record = await self._bc.patch_project_task(
                    record.system_id, {"syncLock": True}, etag=record.etag
                )
            except ExternalServiceError as exc:
                if exc.is_precondition_failed:
                    raise RecordLockedError(f"BC task {record.system_id} changed before lock") from exc
                raise

        released = False
        try:
            yield held
            final = dict(held.pending)
            if record.has_sync_lock:
                final["syncLock"] = False
            if final:
                held.record = await self._bc.patch_project_task(
                    record.system_id, final, etag=held.record.etag
                )
            released = True
        finally:
            if record.has_sync_lock and not released:
                try:
                    await self._bc.patch_project_task(record.system_id, {"syncLock": False})
                except ExternalServiceError as exc:
                    logger.error(
                        "executor.sync_lock_release_failed",
                        system_id=record.system_id,
                        error=str(exc),
                    )

    # ── Write paths ─────────────────────────────────────────────────────

    async def _write_planner(self, task_id: str, fields: TaskFields, etag: str | None) -> str | None:
        if not etag:
            current = await self._graph.get_task(task_id)
            if current is None:
                logger.warning("executor.planner_task_missing", planner_task_id=task_id)
                return None
            etag = current.etag
        return await self._graph.update_task(task_id, fields, etag or "*")

    async def _push_from_bc(self, bc: TaskRecord, remote: RemoteTask | None) -> list[str]:
        writes: list[str] = []
        fields = bc.fields()
        async with self._record_lock(bc) as held:
            if bc.planner_task_id:
                known_etag = remote.etag if remote and remote.source == Source.PLANNER else None
                new_etag = await self._write_planner(bc.planner_task_id, fields, known_etag)
                if new_etag is not None:
                    await self._origins.mark(bc.planner_task_id, Source.BC)
                    writes.append(f"planner:{bc.planner_task_id}")
                    held.pending["lastPlannerEtag"] = new_etag
            if bc.premium_task_id:
                await self._dataverse.update_task(bc.premium_task_id, fields)
                await self._origins.mark(bc.premium_task_id, Source.BC)
                writes.append(f"premium:{bc.premium_task_id}")
            held.pending["lastSyncAt"] = _iso(self._clock())
        logger.info("executor.pushed_from_bc", system_id=bc.system_id, writes=writes)
        return writes

    async def _pull_into_bc(self, winner: Source, bc: TaskRecord, remote: RemoteTask | None) -> list[str]:
        if remote is None:
            raise RecordLockedError(f"{winner.value} task for {bc.system_id} unavailable")
        writes: list[str] = []
        merged = bc.fields().model_copy(
            update={
                "percent_complete": remote.fields.percent_complete,
                "start_date": remote.fields.start_date,
                "end_date": remote.fields.end_date,
            }
        )
        async with self._record_lock(bc) as held:
            held.pending.update(bc_patch_from_fields(remote.fields))
            if winner == Source.PLANNER:
                held.pending["lastPlannerEtag"] = remote.etag
                if remote.plan_id:
                    held.pending["plannerPlanId"] = remote.plan_id
                if bc.premium_task_id:
                    await self._dataverse.update_task(bc.premium_task_id, merged)
                    await self._origins.mark(bc.premium_task_id, winner)
                    writes.append(f"premium:{bc.premium_task_id}")
            elif bc.planner_task_id:
                new_etag = await self._write_planner(bc.planner_task_id, merged, None)
                if new_etag is not None:
                    await self._origins.mark(bc.planner_task_id, winner)
                    writes.append(f"planner:{bc.planner_task_id}")
                    held.pending["lastPlannerEtag"] = new_etag
            held.pending["lastSyncAt"] = _iso(self._clock())
        await self._origins.mark(bc.system_id, winner)
        writes.insert(0, f"bc:{bc.system_id}")
        logger.info("executor.pulled_into_bc", system_id=bc.system_id, winner=winner.value, writes=writes)
        return writes

    async def _unlink(self, source: Source, bc: TaskRecord) -> list[str]:
        link_field = "plannerTaskId" if source == Source.PLANNER else "premiumTaskId"
        async with self._record_lock(bc) as held:
            held.pending[link_field] = ""
            held.pending["lastSyncAt"] = _iso(self._clock())
        await self._origins.mark(bc.system_id, source)
        logger.info("executor.unlinked", system_id=bc.system_id, source=source.value)
        return [f"bc:{bc.system_id}"]
