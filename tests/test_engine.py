"""Tests for SyncEngine and SyncExecutor against the fake vendor clients."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from src.tasksync.errors import ExternalServiceError, RecordLockedError
from src.tasksync.sync.executor import SyncExecutor
from src.tasksync.sync.schemas import EntityState, ResolveOptions, Source


def _options(**overrides) -> ResolveOptions:
    return ResolveOptions(request_id="req-1", **overrides)


@pytest.mark.asyncio
async def test_planner_change_is_pulled_into_bc(engine, bc, graph, write_origins, make_event):
    bc.add_task("A1", plannerTaskId="ptask-1")
    remote = graph.add_task("ptask-1", percent=75, plan_id="plan-9", start_date="2025-01-06")

    result = await engine.sync_event(make_event(Source.PLANNER, "ptask-1"), _options())

    assert result.state == EntityState.APPLIED
    assert result.winner == Source.PLANNER
    assert result.writes == ["bc:A1"]

    stored = bc.tasks["A1"]
    assert stored["percentComplete"] == 75
    assert stored["startDate"] == "2025-01-06"
    assert stored["lastPlannerEtag"] == remote.etag
    assert stored["plannerPlanId"] == "plan-9"
    assert stored["syncLock"] is False

    origin = await write_origins.get("A1")
    assert origin.updated_by == Source.PLANNER


@pytest.mark.asyncio
async def test_record_lock_wraps_the_write(engine, bc, graph, make_event):
    initial = bc.add_task("A1", plannerTaskId="ptask-1")
    graph.add_task("ptask-1", percent=10)

    await engine.sync_event(make_event(Source.PLANNER, "ptask-1"), _options())

    lock_patch, final_patch = bc.patches
    assert lock_patch == ("A1", {"syncLock": True}, initial.etag)
    assert final_patch[1]["syncLock"] is False
    assert final_patch[1]["percentComplete"] == 10
    assert "lastSyncAt" in final_patch[1]


@pytest.mark.asyncio
async def test_bc_write_echo_is_suppressed_then_later_change_applies(engine, bc, graph, clock, make_event):
    bc.add_task("A1", plannerTaskId="ptask-1", percentComplete=30)
    graph.add_task("ptask-1", percent=0)

    pushed = await engine.sync_event(make_event(Source.BC, "A1"), _options())
    assert pushed.state == EntityState.APPLIED
    assert pushed.writes == ["planner:ptask-1"]
    assert graph.tasks["ptask-1"].fields.percent_complete == 30

    clock.advance(5)
    echo = await engine.sync_event(make_event(Source.PLANNER, "ptask-1", received_at=clock.at()), _options())
    assert echo.state == EntityState.SUPPRESSED
    assert echo.reason == "bc_origin"

    # a user edit in Planner after the grace window
    clock.advance(56)
    graph.add_task("ptask-1", percent=90)
    later = await engine.sync_event(make_event(Source.PLANNER, "ptask-1", received_at=clock.at()), _options())
    assert later.state == EntityState.APPLIED
    assert bc.tasks["A1"]["percentComplete"] == 90


@pytest.mark.asyncio
async def test_bc_push_writes_planner_and_premium(engine, bc, graph, dataverse, write_origins, make_event):
    bc.add_task("A1", plannerTaskId="ptask-1", premiumTaskId="dv-1", percentComplete=60)
    graph.add_task("ptask-1")
    dataverse.add_task("dv-1")

    result = await engine.sync_event(make_event(Source.BC, "A1"), _options())

    assert result.writes == ["planner:ptask-1", "premium:dv-1"]
    assert dataverse.updates[0][1].percent_complete == 60
    assert bc.tasks["A1"]["lastPlannerEtag"] == graph.tasks["ptask-1"].etag
    assert (await write_origins.get("dv-1")).updated_by == Source.BC


@pytest.mark.asyncio
async def test_stale_etag_defers_without_writing(engine, bc, graph, make_event):
    stale = bc.add_task("A1", plannerTaskId="ptask-1")
    bc.tasks["A1"]["@odata.etag"] = 'W/"bc-concurrent"'
    bc.get_project_task = AsyncMock(return_value=stale)
    graph.add_task("ptask-1")

    result = await engine.sync_event(make_event(Source.BC, "A1"), _options())

    assert result.state == EntityState.DEFERRED
    assert result.reason == "record_locked"
    assert bc.patches == []
    assert graph.updates == []


@pytest.mark.asyncio
async def test_sync_lock_cleared_when_write_fails(engine, bc, graph, make_event):
    bc.add_task("A1", plannerTaskId="ptask-1")
    graph.add_task("ptask-1")
    graph.fail["update_task"] = ExternalServiceError("graph", 503, "Service Unavailable")

    result = await engine.sync_event(make_event(Source.BC, "A1"), _options())

    assert result.error == "graph 503: Service Unavailable"
    assert bc.tasks["A1"]["syncLock"] is False
    assert bc.patches[-1] == ("A1", {"syncLock": False}, None)


@pytest.mark.asyncio
async def test_remote_deletion_clears_link(engine, bc, make_event):
    bc.add_task("A1", plannerTaskId="ptask-1")

    result = await engine.sync_event(make_event(Source.PLANNER, "ptask-1", change_type="deleted"), _options())

    assert result.state == EntityState.APPLIED
    assert result.reason == "source_deleted"
    assert bc.tasks["A1"]["plannerTaskId"] == ""


@pytest.mark.asyncio
async def test_dry_run_reports_decision_without_writes(engine, bc, graph, make_event):
    bc.add_task("A1", plannerTaskId="ptask-1")
    graph.add_task("ptask-1", percent=5)

    result = await engine.sync_event(make_event(Source.PLANNER, "ptask-1"), _options(dry_run=True))

    assert result.state == EntityState.PENDING
    assert result.winner == Source.PLANNER
    assert bc.patches == []


@pytest.mark.asyncio
async def test_preview_forces_dry_run(engine, bc, make_event):
    bc.add_task("A1")
    decision = await engine.preview(make_event(Source.BC, "A1"), _options(dry_run=False))
    assert decision.dry_run is True
    assert bc.patches == []


@pytest.mark.asyncio
async def test_lookup_failure_is_reported_per_event(engine, bc, make_event):
    bc.add_task("A2")

    async def flaky_get(system_id):
        if system_id == "A1":
            raise ExternalServiceError("bc", 500, "boom")
        return bc.record(system_id)

    bc.get_project_task = flaky_get

    results = await engine.sync_events([make_event(Source.BC, "A1"), make_event(Source.BC, "A2")], _options())

    assert results[0].error == "bc 500: boom"
    assert results[1].error is None
    assert results[1].state == EntityState.APPLIED


@pytest.mark.asyncio
async def test_sync_events_keeps_input_order(engine, bc, make_event):
    for system_id in ("A1", "A2", "A3"):
        bc.add_task(system_id)
    events = [
        make_event(Source.BC, "A1"),
        make_event(Source.BC, "A2"),
        make_event(Source.BC, "a1", change_type="created"),
        make_event(Source.BC, "A3"),
    ]

    results = await engine.sync_events(events, _options())

    assert [(r.entity_id, r.change_type) for r in results] == [
        ("A1", "updated"),
        ("A2", "updated"),
        ("a1", "created"),
        ("A3", "updated"),
    ]


@pytest.mark.asyncio
async def test_executor_rejects_decision_after_newer_write(resolver, bc, graph, dataverse, write_origins, clock, make_event):
    executor = SyncExecutor(bc, graph, dataverse, write_origins, clock=clock)
    record = bc.add_task("A1")
    event = make_event(Source.BC, "A1")
    decision = await resolver.resolve(event, _options(), record)

    await write_origins.mark("A1", Source.PLANNER)

    with pytest.raises(RecordLockedError):
        await executor.apply(decision, event, record)
    assert bc.patches == []
