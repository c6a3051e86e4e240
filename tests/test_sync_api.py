"""Integration tests for the cron-triggered sync endpoints and health checks."""

from __future__ import annotations

import pytest

from src.tasksync.sync.schemas import Source


# ── Cron secret ──────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_cron_routes_require_secret(client):
    response = await client.post("/sync/jobs/process")
    assert response.status_code == 401

    response = await client.post("/sync/jobs/process", headers={"x-cron-secret": "wrong"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_cron_secret_accepted_in_query(client):
    response = await client.get("/sync/jobs/queue?cronSecret=cron-secret")
    assert response.status_code == 200
    assert response.json()["size"] == 0


# ── Jobs ─────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_process_drains_queue(client, cron_headers, queue, bc, make_event):
    bc.add_task("A1")
    bc.add_task("A2")
    await queue.enqueue([make_event(Source.BC, "A1"), make_event(Source.BC, "A2")])

    response = await client.post("/sync/jobs/process", headers=cron_headers)

    assert response.status_code == 200
    data = response.json()
    assert data["ok"] is True
    assert data["jobs"] == 2
    assert data["processed"] == 2
    assert data["locked"] is False
    assert await queue.size() == 0


@pytest.mark.asyncio
async def test_process_respects_max_jobs_in_body(client, cron_headers, queue, make_event):
    await queue.enqueue([make_event(Source.BC, f"T{i}") for i in range(3)])

    response = await client.post("/sync/jobs/process", headers=cron_headers, json={"maxJobs": 2})

    assert response.json()["jobs"] == 2
    assert await queue.size() == 1


@pytest.mark.asyncio
async def test_process_rejects_out_of_range_max_jobs(client, cron_headers):
    response = await client.get("/sync/jobs/process?maxJobs=0", headers=cron_headers)
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_process_returns_409_when_locked(client, cron_headers, queue, make_event):
    await queue.enqueue([make_event(Source.BC, "A1")])
    await queue.acquire_lock(60)

    response = await client.post("/sync/jobs/process", headers=cron_headers)

    assert response.status_code == 409
    assert response.json()["locked"] is True
    assert response.json()["ok"] is False
    assert await queue.size() == 1


@pytest.mark.asyncio
async def test_dry_run_process_writes_nothing(client, cron_headers, queue, bc, make_event):
    bc.add_task("A1")
    await queue.enqueue([make_event(Source.BC, "A1")])

    response = await client.post("/sync/jobs/process?dryRun=true", headers=cron_headers)

    assert response.status_code == 200
    assert response.json()["results"][0]["state"] == "pending"
    assert bc.patches == []
    assert await queue.size() == 1


@pytest.mark.asyncio
async def test_queue_status_lists_jobs(client, cron_headers, queue, make_event):
    await queue.enqueue([make_event(Source.PLANNER, "ptask-1")])

    response = await client.get("/sync/jobs/queue", headers=cron_headers)

    data = response.json()
    assert data["size"] == 1
    assert data["jobs"][0]["event"]["entity_id"] == "ptask-1"


# ── Resolve ──────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_resolve_preview(client, cron_headers, bc, graph):
    bc.add_task("A1", plannerTaskId="ptask-1")
    graph.add_task("ptask-1", percent=50)

    response = await client.post(
        "/sync/resolve", headers=cron_headers, json={"source": "planner", "entityId": "ptask-1"}
    )

    assert response.status_code == 200
    decision = response.json()["decision"]
    assert decision["dryRun"] is True
    assert decision["winner"] == "planner"
    assert decision["reason"] == "source_changed"
    assert bc.patches == []


@pytest.mark.asyncio
async def test_resolve_apply(client, cron_headers, bc, graph):
    bc.add_task("A1", plannerTaskId="ptask-1")
    graph.add_task("ptask-1", percent=50)

    response = await client.post(
        "/sync/resolve",
        headers=cron_headers,
        json={"source": "planner", "entityId": "ptask-1", "dryRun": False},
    )

    assert response.json()["result"]["state"] == "applied"
    assert bc.tasks["A1"]["percentComplete"] == 50


# ── Poll ─────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_poll_enqueues_processes_and_advances_cursor(client, cron_headers, app, bc, graph):
    bc.add_task("A1", plannerTaskId="ptask-1")
    graph.add_task("ptask-1", percent=80)
    delta = "https://graph.test/beta/planner/plans/plan-1/tasks/delta?$deltatoken=1"
    graph.pages = {graph.delta_url("plan-1"): {"value": [{"id": "ptask-1"}], "@odata.deltaLink": delta}}

    response = await client.post("/sync/poll/planner", headers=cron_headers)

    assert response.status_code == 200
    data = response.json()
    assert data["ok"] is True
    assert data["feeds"][0]["cursorAdvanced"] is True
    assert data["summary"]["processed"] == 1
    assert bc.tasks["A1"]["percentComplete"] == 80
    assert await app.state.cursor_store.get("planner", "plan-1") == delta


@pytest.mark.asyncio
async def test_poll_recovers_change_whose_webhook_job_failed(client, cron_headers, queue, clock, bc, graph, make_event):
    from src.tasksync.errors import ExternalServiceError

    bc.add_task("A1", plannerTaskId="ptask-1")
    graph.add_task("ptask-1", percent=60)
    await queue.enqueue([make_event(Source.PLANNER, "ptask-1", received_at=clock.at())])
    graph.fail["get_task"] = ExternalServiceError("graph", 503, "Service Unavailable")

    response = await client.post("/sync/jobs/process", headers=cron_headers)
    assert response.json()["errors"] == 1
    assert await queue.size() == 0

    del graph.fail["get_task"]
    clock.advance(60)
    delta = "https://graph.test/beta/planner/plans/plan-1/tasks/delta?$deltatoken=2"
    graph.pages = {graph.delta_url("plan-1"): {"value": [{"id": "ptask-1"}], "@odata.deltaLink": delta}}

    response = await client.post("/sync/poll/planner", headers=cron_headers)

    data = response.json()
    assert data["feeds"][0]["items"] == 1
    assert data["summary"]["processed"] == 1
    assert bc.tasks["A1"]["percentComplete"] == 60


@pytest.mark.asyncio
async def test_poll_failure_reports_error(client, cron_headers, graph):
    from src.tasksync.errors import ExternalServiceError

    graph.pages = {graph.delta_url("plan-1"): ExternalServiceError("graph", 429, "Too Many Requests")}

    response = await client.post("/sync/poll/planner", headers=cron_headers)

    data = response.json()
    assert data["ok"] is False
    assert data["feeds"][0]["error"] == "graph 429: Too Many Requests"
    assert data["summary"] is None


# ── Subscriptions ────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_create_then_list_planner_subscriptions(client, cron_headers, graph):
    response = await client.post("/sync/subscriptions/planner/create", headers=cron_headers)

    assert response.status_code == 200
    assert response.json()["created"] == ["/planner/plans/plan-1/tasks"]
    (remote,) = graph.subscriptions.values()
    assert remote["notificationUrl"] == "https://sync.example.com/webhooks/graph/planner"
    assert remote["clientState"] == "graph-state"

    listed = await client.get("/sync/subscriptions/planner/list?remote=true", headers=cron_headers)
    assert len(listed.json()["tracked"]) == 1
    assert len(listed.json()["remote"]) == 1


@pytest.mark.asyncio
async def test_renew_with_buffer_override(client, cron_headers, graph):
    await client.post("/sync/subscriptions/planner/create", headers=cron_headers)

    response = await client.post(
        "/sync/subscriptions/planner/renew", headers=cron_headers, json={"bufferHours": 100}
    )

    assert response.json()["renewed"] == ["/planner/plans/plan-1/tasks"]


@pytest.mark.asyncio
async def test_delete_bc_subscriptions(client, cron_headers, bc):
    await client.post("/sync/subscriptions/bc/create", headers=cron_headers)
    assert len(bc.subscriptions) == 1

    response = await client.post("/sync/subscriptions/bc/delete", headers=cron_headers)

    assert response.json()["deleted"] == ["bc-sub-1"]
    assert bc.subscriptions == {}


# ── Health ───────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_readiness_with_memory_store(client):
    response = await client.get("/health/ready")
    assert response.status_code == 200
    assert response.json()["checks"]["store"] == "ok"
