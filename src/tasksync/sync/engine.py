"""Per-event sync pipeline: lookup -> resolve -> apply.

Events for different entities run concurrently up to a fixed limit;
events for the same entity run one after another in arrival order.
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from typing import Any

import structlog

from src.tasksync.errors import ExternalServiceError, RecordLockedError, StoreUnavailableError
from src.tasksync.sync.executor import SyncExecutor
from src.tasksync.sync.resolver import ConflictResolver
from src.tasksync.sync.schemas import (
    ChangeEvent,
    EntityState,
    JobResult,
    RemoteTask,
    ResolveOptions,
    Source,
    SyncDecision,
    TaskRecord,
)

logger = structlog.get_logger(__name__)


class SyncEngine:
    """Runs change events through the resolver and executor.

    Args:
        bc: BC client.
        graph: Graph client.
        dataverse: Dataverse client.
        resolver: Decides what to do with each event.
        executor: Applies pending decisions.
        concurrency: Maximum entities processed at once.
    """

    def __init__(
        self,
        bc: Any,
        graph: Any,
        dataverse: Any,
        resolver: ConflictResolver,
        executor: SyncExecutor,
        concurrency: int = 6,
    ) -> None:
        self._bc = bc
        self._graph = graph
        self._dataverse = dataverse
        self._resolver = resolver
        self._executor = executor
        self._concurrency = max(1, concurrency)

    async def lookup(self, event: ChangeEvent) -> tuple[TaskRecord | None, RemoteTask | None]:
        """Fetch the BC task and, for Planner/Premium events, the source task."""
        if event.source == Source.BC:
            return await self._bc.get_project_task(event.entity_id), None
        if event.source == Source.PLANNER:
            bc_record = await self._bc.find_project_task_by_planner_task_id(event.entity_id)
            remote = None
            if bc_record is not None and event.change_type != "deleted":
                remote = await self._graph.get_task(event.entity_id)
            return bc_record, remote
        bc_record = await self._bc.find_project_task_by_premium_task_id(event.entity_id)
        remote = None
        if bc_record is not None and event.change_type != "deleted":
            remote = await self._dataverse.get_task(event.entity_id)
        return bc_record, remote

    async def preview(self, event: ChangeEvent, options: ResolveOptions) -> SyncDecision:
        """Resolve without applying, regardless of ``options.dry_run``."""
        bc_record, remote = await self.lookup(event)
        return await self._resolver.resolve(
            event, options.model_copy(update={"dry_run": True}), bc_record, remote
        )

    async def sync_event(self, event: ChangeEvent, options: ResolveOptions) -> JobResult:
        result = JobResult(
            entity_id=event.entity_id,
            source=event.source,
            change_type=event.change_type,
            state=EntityState.UNSEEN,
            reason="not_started",
        )
        try:
            bc_record, remote = await self.lookup(event)
            decision = await self._resolver.resolve(event, options, bc_record, remote)
            result.state = decision.state
            result.reason = decision.reason
            result.winner = decision.winner
            if decision.state == EntityState.PENDING and not decision.dry_run and bc_record is not None:
                result.writes = await self._executor.apply(decision, event, bc_record, remote)
                result.state = EntityState.APPLIED
        except RecordLockedError as exc:
            result.state = EntityState.DEFERRED
            result.reason = "record_locked"
            logger.info("sync.deferred", entity_id=event.entity_id, source=event.source.value, detail=str(exc))
        except (ExternalServiceError, StoreUnavailableError) as exc:
            result.error = str(exc)
            logger.error(
                "sync.event_error",
                request_id=options.request_id,
                entity_id=event.entity_id,
                source=event.source.value,
                error=str(exc),
            )
        except Exception as exc:
            result.error = f"{type(exc).__name__}: {exc}"
            logger.exception(
                "sync.event_unexpected_error",
                request_id=options.request_id,
                entity_id=event.entity_id,
                source=event.source.value,
            )
        return result

    async def sync_events(self, events: list[ChangeEvent], options: ResolveOptions) -> list[JobResult]:
        """Process a batch; results are returned in input order."""
        groups: OrderedDict[tuple[str, str], list[int]] = OrderedDict()
        for index, event in enumerate(events):
            groups.setdefault((event.source.value, event.entity_id.lower()), []).append(index)

        results: list[JobResult | None] = [None] * len(events)
        semaphore = asyncio.Semaphore(self._concurrency)

        async def run_group(indexes: list[int]) -> None:
            async with semaphore:
                for index in indexes:
                    results[index] = await self.sync_event(events[index], options)

        await asyncio.gather(*(run_group(indexes) for indexes in groups.values()))
        return [r for r in results if r is not None]
