"""Shared fixtures: a controllable clock, the in-memory store and fake vendor clients.

The fakes keep vendor state in dictionaries and mimic the behaviour the
engine relies on: If-Match preconditions (412), 404 as ``None`` on reads,
and subscription CRUD. Failures are injected per method through the
``fail`` mapping.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from src.tasksync.clients import ClientBundle
from src.tasksync.clients.dataverse import DataverseFieldMap
from src.tasksync.config import Settings
from src.tasksync.errors import ExternalServiceError
from src.tasksync.store.memory import MemoryKeyValueStore
from src.tasksync.store.queue import JobQueue
from src.tasksync.store.write_origin import WriteOriginStore
from src.tasksync.sync.engine import SyncEngine
from src.tasksync.sync.executor import SyncExecutor
from src.tasksync.sync.resolver import ConflictResolver
from src.tasksync.sync.schemas import ChangeEvent, RemoteTask, Source, TaskFields, TaskRecord

START = 1_760_000_000.0
COMPANY_ROOT = "/api/cornerstone/plannerSync/v1.0/companies(c0ffee00-0000-0000-0000-000000000001)"


class FakeClock:
    """Callable clock whose time only moves when told to."""

    def __init__(self, start: float = START) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def at(self, offset_seconds: float = 0.0) -> datetime:
        return datetime.fromtimestamp(self.now + offset_seconds, tz=timezone.utc)


def _raise_if(fail: dict[str, Exception], name: str) -> None:
    exc = fail.get(name)
    if exc is not None:
        raise exc


class FakeBcClient:
    """BC project tasks kept as raw API payloads."""

    service = "bc"

    def __init__(self) -> None:
        self.tasks: dict[str, dict[str, Any]] = {}
        self.patches: list[tuple[str, dict[str, Any], str | None]] = []
        self.subscriptions: dict[str, dict[str, Any]] = {}
        self.fail: dict[str, Exception] = {}
        self._etag = 0
        self._sub_seq = 0

    def _next_etag(self) -> str:
        self._etag += 1
        return f'W/"bc-{self._etag}"'

    def add_task(self, system_id: str, **fields: Any) -> TaskRecord:
        payload = {"systemId": system_id, "syncLock": False, "taskNo": "T100", "description": "Pour footing"}
        payload.update(fields)
        payload["@odata.etag"] = self._next_etag()
        self.tasks[system_id] = payload
        return TaskRecord.from_bc(payload)

    def record(self, system_id: str) -> TaskRecord:
        return TaskRecord.from_bc(self.tasks[system_id])

    async def get_project_task(self, system_id: str) -> TaskRecord | None:
        _raise_if(self.fail, "get_project_task")
        payload = self.tasks.get(system_id)
        return TaskRecord.from_bc(payload) if payload else None

    async def _find(self, field: str, value: str) -> TaskRecord | None:
        for payload in self.tasks.values():
            if payload.get(field) == value:
                return TaskRecord.from_bc(payload)
        return None

    async def find_project_task_by_planner_task_id(self, planner_task_id: str) -> TaskRecord | None:
        return await self._find("plannerTaskId", planner_task_id)

    async def find_project_task_by_premium_task_id(self, premium_task_id: str) -> TaskRecord | None:
        return await self._find("premiumTaskId", premium_task_id)

    async def patch_project_task(self, system_id: str, patch: dict[str, Any], etag: str | None = None) -> TaskRecord:
        _raise_if(self.fail, "patch_project_task")
        payload = self.tasks.get(system_id)
        if payload is None:
            raise ExternalServiceError("bc", 404, f"projectTask {system_id} not found")
        if etag and etag != "*" and etag != payload["@odata.etag"]:
            raise ExternalServiceError("bc", 412, "Precondition Failed")
        self.patches.append((system_id, dict(patch), etag))
        payload.update(patch)
        payload["@odata.etag"] = self._next_etag()
        return TaskRecord.from_bc(payload)

    # subscriptions

    def subscription_resource(self, entity_set: str) -> str:
        return f"{COMPANY_ROOT}/{entity_set}"

    async def create_subscription(self, resource: str, notification_url: str, client_state: str | None) -> dict[str, Any]:
        _raise_if(self.fail, "create_subscription")
        self._sub_seq += 1
        sub = {
            "subscriptionId": f"bc-sub-{self._sub_seq}",
            "resource": resource,
            "notificationUrl": notification_url,
            "clientState": client_state,
            "expirationDateTime": (datetime.fromtimestamp(START, tz=timezone.utc) + timedelta(days=3)).isoformat(),
        }
        self.subscriptions[sub["subscriptionId"]] = sub
        return dict(sub)

    async def list_subscriptions(self) -> list[dict[str, Any]]:
        return [dict(s) for s in self.subscriptions.values()]

    async def renew_subscription(self, subscription: dict[str, Any]) -> dict[str, Any]:
        _raise_if(self.fail, "renew_subscription")
        current = self.subscriptions.get(subscription["id"])
        if current is None:
            raise ExternalServiceError("bc", 404, "subscription not found")
        current["expirationDateTime"] = (datetime.fromtimestamp(START, tz=timezone.utc) + timedelta(days=3)).isoformat()
        return dict(current)

    async def delete_subscription(self, subscription_id: str) -> None:
        _raise_if(self.fail, "delete_subscription")
        if self.subscriptions.pop(subscription_id, None) is None:
            raise ExternalServiceError("bc", 404, "subscription not found")


class FakeGraphClient:
    """Planner tasks, paged delta responses and Graph subscriptions."""

    service = "graph"

    def __init__(self) -> None:
        self.tasks: dict[str, RemoteTask] = {}
        self.updates: list[tuple[str, TaskFields, str]] = []
        self.pages: dict[str, Any] = {}
        self.page_requests: list[str] = []
        self.subscriptions: dict[str, dict[str, Any]] = {}
        self.fail: dict[str, Exception] = {}
        self._etag = 0
        self._sub_seq = 0

    def _next_etag(self) -> str:
        self._etag += 1
        return f'W/"planner-{self._etag}"'

    def add_task(self, task_id: str, percent: int = 0, plan_id: str = "plan-1", **fields: Any) -> RemoteTask:
        task = RemoteTask(
            source=Source.PLANNER,
            id=task_id,
            etag=self._next_etag(),
            plan_id=plan_id,
            fields=TaskFields(percent_complete=percent, **fields),
        )
        self.tasks[task_id] = task
        return task

    async def get_task(self, task_id: str) -> RemoteTask | None:
        _raise_if(self.fail, "get_task")
        return self.tasks.get(task_id)

    async def update_task(self, task_id: str, fields: TaskFields, etag: str) -> str | None:
        _raise_if(self.fail, "update_task")
        current = self.tasks.get(task_id)
        if current is None:
            raise ExternalServiceError("graph", 404, "task not found")
        if etag != "*" and etag != current.etag:
            raise ExternalServiceError("graph", 412, "Precondition Failed")
        self.updates.append((task_id, fields, etag))
        updated = current.model_copy(update={"fields": fields, "etag": self._next_etag()})
        self.tasks[task_id] = updated
        return updated.etag

    def delta_url(self, plan_id: str) -> str:
        return f"https://graph.test/beta/planner/plans/{plan_id}/tasks/delta"

    async def get_page(self, url: str) -> dict[str, Any]:
        self.page_requests.append(url)
        page = self.pages[url]
        if isinstance(page, Exception):
            raise page
        return page

    async def create_subscription(
        self, resource: str, notification_url: str, client_state: str | None, expiration: datetime
    ) -> dict[str, Any]:
        _raise_if(self.fail, "create_subscription")
        self._sub_seq += 1
        sub = {
            "id": f"graph-sub-{self._sub_seq}",
            "resource": resource,
            "notificationUrl": notification_url,
            "clientState": client_state,
            "expirationDateTime": expiration.isoformat(),
        }
        self.subscriptions[sub["id"]] = sub
        return dict(sub)

    async def list_subscriptions(self) -> list[dict[str, Any]]:
        return [dict(s) for s in self.subscriptions.values()]

    async def renew_subscription(self, subscription_id: str, expiration: datetime) -> dict[str, Any]:
        _raise_if(self.fail, "renew_subscription")
        current = self.subscriptions.get(subscription_id)
        if current is None:
            raise ExternalServiceError("graph", 404, "subscription not found")
        current["expirationDateTime"] = expiration.isoformat()
        return dict(current)

    async def delete_subscription(self, subscription_id: str) -> None:
        _raise_if(self.fail, "delete_subscription")
        if self.subscriptions.pop(subscription_id, None) is None:
            raise ExternalServiceError("graph", 404, "subscription not found")


class FakeDataverseClient:
    """Dataverse tasks and change-tracking pages."""

    service = "dataverse"

    def __init__(self) -> None:
        self.fields = DataverseFieldMap()
        self.tasks: dict[str, RemoteTask] = {}
        self.updates: list[tuple[str, TaskFields]] = []
        self.pages: dict[str, Any] = {}
        self.fail: dict[str, Exception] = {}

    def add_task(self, task_id: str, percent: int = 0, modified_at: datetime | None = None, **fields: Any) -> RemoteTask:
        task = RemoteTask(
            source=Source.PREMIUM,
            id=task_id,
            modified_at=modified_at,
            fields=TaskFields(percent_complete=percent, **fields),
        )
        self.tasks[task_id] = task
        return task

    async def get_task(self, task_id: str) -> RemoteTask | None:
        _raise_if(self.fail, "get_task")
        return self.tasks.get(task_id)

    async def update_task(self, task_id: str, fields: TaskFields) -> None:
        _raise_if(self.fail, "update_task")
        self.updates.append((task_id, fields))
        if task_id in self.tasks:
            self.tasks[task_id] = self.tasks[task_id].model_copy(update={"fields": fields})

    def delta_url(self) -> str:
        return f"https://org.test/api/data/v9.2/{self.fields.entity_set}?$select={self.fields.select()}"

    async def get_page(self, url: str) -> dict[str, Any]:
        page = self.pages[url]
        if isinstance(page, Exception):
            raise page
        return page


def _make_event(
    source: Source = Source.BC,
    entity_id: str = "task-1",
    change_type: str = "updated",
    entity_set: str | None = None,
    received_at: datetime | None = None,
) -> ChangeEvent:
    default_sets = {Source.BC: "projectTasks", Source.PLANNER: "plannerTask", Source.PREMIUM: "msdyn_projecttasks"}
    return ChangeEvent(
        source=source,
        entity_set=entity_set or default_sets[source],
        entity_id=entity_id,
        change_type=change_type,
        received_at=received_at or datetime.fromtimestamp(START, tz=timezone.utc),
    )


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> MemoryKeyValueStore:
    return MemoryKeyValueStore(clock=clock)


@pytest.fixture
def queue(store: MemoryKeyValueStore, clock: FakeClock) -> JobQueue:
    return JobQueue(store, dedupe_window_seconds=300, clock=clock)


@pytest.fixture
def write_origins(store: MemoryKeyValueStore, clock: FakeClock) -> WriteOriginStore:
    return WriteOriginStore(store, ttl_seconds=120, grace_ms=60_000, clock=clock)


@pytest.fixture
def bc() -> FakeBcClient:
    return FakeBcClient()


@pytest.fixture
def graph() -> FakeGraphClient:
    return FakeGraphClient()


@pytest.fixture
def dataverse() -> FakeDataverseClient:
    return FakeDataverseClient()


@pytest.fixture
def make_event():
    """Factory for ChangeEvents stamped at the fake clock's start time."""
    return _make_event


@pytest.fixture
def resolver(write_origins: WriteOriginStore, clock: FakeClock) -> ConflictResolver:
    return ConflictResolver(write_origins, bc_modified_grace_ms=2_000, sync_lock_timeout_minutes=30, clock=clock)


@pytest.fixture
def engine(bc, graph, dataverse, resolver, write_origins, clock) -> SyncEngine:
    executor = SyncExecutor(bc, graph, dataverse, write_origins, clock=clock)
    return SyncEngine(bc, graph, dataverse, resolver, executor, concurrency=4)


# ── API ──────────────────────────────────────────────────────────────────────

CRON_SECRET = "cron-secret"


def _make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "STORE_BACKEND": "memory",
        "CRON_SECRET": CRON_SECRET,
        "BC_WEBHOOK_SHARED_SECRET": "bc-secret",
        "GRAPH_SUBSCRIPTION_CLIENT_STATE": "graph-state",
        "DATAVERSE_WEBHOOK_SECRET": "dv-secret",
        "PLANNER_PLAN_IDS": "plan-1",
        "BC_WEBHOOK_NOTIFICATION_URL": "https://sync.example.com/webhooks/bc",
        "GRAPH_NOTIFICATION_URL": "https://sync.example.com/webhooks/graph/planner",
    }
    values.update(overrides)
    return Settings(**values)


def _make_mock_app(settings: Settings, store: MemoryKeyValueStore, clock: FakeClock, bc, graph, dataverse):
    """Minimal app with the v1 router, in-memory state and fake vendor clients."""
    from fastapi import FastAPI

    from src.tasksync.api.deps import get_client_factory
    from src.tasksync.api.middleware.logging import LoggingMiddleware
    from src.tasksync.api.v1.router import router
    from src.tasksync.main import init_app_state

    app = FastAPI()
    app.add_middleware(LoggingMiddleware)
    app.include_router(router)
    init_app_state(app, settings, store=store, clock=clock)
    app.state.client_bundles_opened = 0

    @asynccontextmanager
    async def _open_fake_clients():
        app.state.client_bundles_opened += 1
        yield ClientBundle(bc=bc, graph=graph, dataverse=dataverse)

    app.dependency_overrides[get_client_factory] = lambda: _open_fake_clients
    return app


@pytest.fixture
def make_settings():
    """Factory for Settings with test secrets and the memory backend."""
    return _make_settings


@pytest.fixture
def app(store, clock, bc, graph, dataverse):
    return _make_mock_app(_make_settings(), store, clock, bc, graph, dataverse)


@pytest_asyncio.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as http:
        yield http


@pytest.fixture
def cron_headers() -> dict[str, str]:
    return {"x-cron-secret": CRON_SECRET}
