"""Tests for delta polling and cursor handling."""

from __future__ import annotations

import pytest

from src.tasksync.errors import ExternalServiceError
from src.tasksync.store.cursors import DeltaCursorStore
from src.tasksync.sync.poller import DataverseDeltaFeed, DeltaPoller, PlannerDeltaFeed
from src.tasksync.sync.schemas import Source

PAGE_2 = "https://graph.test/beta/planner/plans/plan-1/tasks/delta?$skiptoken=2"
PAGE_3 = "https://graph.test/beta/planner/plans/plan-1/tasks/delta?$skiptoken=3"
DELTA = "https://graph.test/beta/planner/plans/plan-1/tasks/delta?$deltatoken=abc"


@pytest.fixture
def cursors(store, clock) -> DeltaCursorStore:
    return DeltaCursorStore(store, clock=clock)


@pytest.fixture
def planner_feed(graph, clock) -> PlannerDeltaFeed:
    return PlannerDeltaFeed(graph, "plan-1", clock=clock)


def _three_pages(graph) -> None:
    graph.pages = {
        graph.delta_url("plan-1"): {"value": [{"id": "t1"}, {"id": "t2"}], "@odata.nextLink": PAGE_2},
        PAGE_2: {"value": [{"id": "t3"}], "@odata.nextLink": PAGE_3},
        PAGE_3: {"value": [{"id": "t1"}, {"id": "t4", "@removed": {"reason": "deleted"}}], "@odata.deltaLink": DELTA},
    }


class _Sink:
    def __init__(self) -> None:
        self.batches: list[list] = []

    async def __call__(self, events) -> None:
        self.batches.append(list(events))


@pytest.mark.asyncio
async def test_full_walk_collects_items_and_delta_link(planner_feed, cursors, graph):
    _three_pages(graph)
    poller = DeltaPoller(planner_feed, cursors)

    result = await poller.poll(None)

    assert result.pages == 3
    assert result.complete is True
    assert result.next_cursor == DELTA
    assert [(e.entity_id, e.change_type) for e in result.items] == [
        ("t2", "updated"),
        ("t3", "updated"),
        ("t1", "updated"),
        ("t4", "deleted"),
    ]
    assert all(e.source == Source.PLANNER for e in result.items)


@pytest.mark.asyncio
async def test_failed_page_keeps_cursor_then_retry_advances(planner_feed, cursors, graph):
    _three_pages(graph)
    good_page_2 = graph.pages[PAGE_2]
    graph.pages[PAGE_2] = ExternalServiceError("graph", 503, "Service Unavailable")
    await cursors.set("planner", "plan-1", graph.delta_url("plan-1"))
    sink = _Sink()
    poller = DeltaPoller(planner_feed, cursors)

    failed = await poller.run(sink=sink)

    assert failed.error == "graph 503: Service Unavailable"
    assert failed.cursor_advanced is False
    assert sink.batches == []
    assert await cursors.get("planner", "plan-1") == graph.delta_url("plan-1")

    graph.pages[PAGE_2] = good_page_2
    retried = await poller.run(sink=sink)

    assert retried.error is None
    assert retried.cursor_advanced is True
    assert retried.items == 4
    assert len(sink.batches) == 1
    assert await cursors.get("planner", "plan-1") == DELTA
    assert graph.page_requests.count(graph.delta_url("plan-1")) == 2


@pytest.mark.asyncio
async def test_page_cap_stores_last_next_link(planner_feed, cursors, graph):
    _three_pages(graph)
    poller = DeltaPoller(planner_feed, cursors, max_pages=2)

    outcome = await poller.run()

    assert outcome.complete is False
    assert outcome.pages == 2
    assert await cursors.get("planner", "plan-1") == PAGE_3

    resumed = await poller.run()
    assert resumed.complete is True
    assert await cursors.get("planner", "plan-1") == DELTA


@pytest.mark.asyncio
async def test_sink_failure_leaves_cursor(planner_feed, cursors, graph):
    _three_pages(graph)

    async def broken_sink(events):
        raise RuntimeError("queue down")

    poller = DeltaPoller(planner_feed, cursors)
    with pytest.raises(RuntimeError):
        await poller.run(sink=broken_sink)
    assert await cursors.get("planner", "plan-1") is None


@pytest.mark.asyncio
async def test_empty_delta_keeps_previous_cursor(planner_feed, cursors, graph):
    graph.pages = {DELTA: {"value": []}}
    await cursors.set("planner", "plan-1", DELTA)

    outcome = await DeltaPoller(planner_feed, cursors).run()

    assert outcome.items == 0
    assert outcome.cursor_advanced is False
    assert await cursors.get("planner", "plan-1") == DELTA


@pytest.mark.asyncio
async def test_dataverse_feed_maps_rows_and_deletions(dataverse, cursors, clock):
    dv_delta = "https://org.test/api/data/v9.2/msdyn_projecttasks?$deltatoken=919"
    dataverse.pages = {
        dataverse.delta_url(): {
            "value": [
                {"msdyn_projecttaskid": "dv-1", "msdyn_percentcomplete": 30},
                {"@odata.context": "https://org.test/api/data/v9.2/$metadata#msdyn_projecttasks/$deletedEntity", "id": "dv-2"},
                {"msdyn_subject": "row without id"},
            ],
            "@odata.deltaLink": dv_delta,
        }
    }
    feed = DataverseDeltaFeed(dataverse, clock=clock)

    result = await DeltaPoller(feed, cursors).poll(None)

    assert [(e.entity_id, e.change_type) for e in result.items] == [("dv-1", "updated"), ("dv-2", "deleted")]
    assert all(e.entity_set == "msdyn_projecttasks" for e in result.items)
    assert result.next_cursor == dv_delta
