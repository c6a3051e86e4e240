"""Microsoft Graph client for Planner tasks and change-notification subscriptions."""

from __future__ import annotations

from datetime import date, datetime
from typing import Any

import httpx

from src.tasksync.clients.auth import ClientCredentialsAuth
from src.tasksync.clients.base import ApiClient
from src.tasksync.config import Settings
from src.tasksync.errors import ExternalServiceError
from src.tasksync.sync.schemas import RemoteTask, Source, TaskFields, parse_date

GRAPH_SCOPE = "https://graph.microsoft.com/.default"

# Planner accepts due/start dates only inside this range.
PLANNER_MIN_DATE = "1984-01-01"
PLANNER_MAX_DATE = "2149-12-31"


def to_planner_percent(value: int | None) -> int:
    """Planner only knows not started (0), in progress (50) and done (100)."""
    if value is None:
        return 0
    if value >= 100:
        return 100
    if value > 0:
        return 50
    return 0


def to_bc_percent(value: int | None) -> int:
    if value is None:
        return 0
    if value >= 100:
        return 100
    if value >= 50:
        return 50
    return 0


def to_planner_date(value: str | None) -> str | None:
    day = parse_date(value)
    if day is None or day < PLANNER_MIN_DATE or day > PLANNER_MAX_DATE:
        return None
    return datetime.combine(date.fromisoformat(day), datetime.min.time()).strftime("%Y-%m-%dT%H:%M:%SZ")


def planner_task_to_remote(payload: dict[str, Any]) -> RemoteTask:
    return RemoteTask(
        source=Source.PLANNER,
        id=str(payload.get("id") or ""),
        etag=payload.get("@odata.etag"),
        plan_id=payload.get("planId"),
        fields=TaskFields(
            title=payload.get("title"),
            percent_complete=to_bc_percent(payload.get("percentComplete")),
            start_date=parse_date(payload.get("startDateTime")),
            end_date=parse_date(payload.get("dueDateTime")),
        ),
    )


class GraphClient(ApiClient):
    """Planner task reads/writes and Graph subscription management."""

    service = "graph"

    def __init__(
        self,
        http: httpx.AsyncClient,
        auth: ClientCredentialsAuth,
        base_url: str = "https://graph.microsoft.com/v1.0",
        beta_base_url: str = "https://graph.microsoft.com/beta",
    ) -> None:
        super().__init__(http, auth, base_url)
        self._beta_base_url = beta_base_url.rstrip("/")

    @classmethod
    def from_settings(cls, http: httpx.AsyncClient, settings: Settings) -> GraphClient:
        auth = ClientCredentialsAuth(
            http,
            settings.GRAPH_TENANT_ID,
            settings.GRAPH_CLIENT_ID,
            settings.GRAPH_CLIENT_SECRET,
            GRAPH_SCOPE,
            service="graph",
        )
        return cls(http, auth, settings.GRAPH_BASE_URL, settings.GRAPH_BETA_BASE_URL)

    # ── Planner tasks ───────────────────────────────────────────────────

    async def get_task(self, task_id: str) -> RemoteTask | None:
        try:
            data = await self.request_json("GET", f"/planner/tasks/{task_id}")
        except ExternalServiceError as exc:
            if exc.is_not_found:
                return None
            raise
        return planner_task_to_remote(data)

    async def update_task(self, task_id: str, fields: TaskFields, etag: str) -> str | None:
        """PATCH a Planner task with If-Match. Returns the new etag."""
        body: dict[str, Any] = {
            "percentComplete": to_planner_percent(fields.percent_complete),
            "startDateTime": to_planner_date(fields.start_date),
            "dueDateTime": to_planner_date(fields.end_date),
        }
        if fields.title:
            body["title"] = fields.title
        response = await self.request(
            "PATCH",
            f"/planner/tasks/{task_id}",
            json=body,
            headers={"If-Match": etag, "Prefer": "return=representation"},
        )
        if response.content:
            new_etag = response.json().get("@odata.etag")
            if new_etag:
                return new_etag
        return response.headers.get("ETag")

    def delta_url(self, plan_id: str) -> str:
        return f"{self._beta_base_url}/planner/plans/{plan_id}/tasks/delta"

    async def get_page(self, url: str) -> dict[str, Any]:
        return await self.request_json("GET", url)

    # ── Subscriptions ───────────────────────────────────────────────────

    async def create_subscription(
        self,
        resource: str,
        notification_url: str,
        client_state: str | None,
        expiration: datetime,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "changeType": "created,updated,deleted",
            "notificationUrl": notification_url,
            "resource": resource,
            "expirationDateTime": expiration.isoformat().replace("+00:00", "Z"),
            "latestSupportedTlsVersion": "v1_2",
        }
        if client_state:
            body["clientState"] = client_state
        return await self.request_json("POST", "/subscriptions", json=body)

    async def list_subscriptions(self) -> list[dict[str, Any]]:
        data = await self.request_json("GET", "/subscriptions")
        return list(data.get("value", []))

    async def renew_subscription(self, subscription_id: str, expiration: datetime) -> dict[str, Any]:
        return await self.request_json(
            "PATCH",
            f"/subscriptions/{subscription_id}",
            json={"expirationDateTime": expiration.isoformat().replace("+00:00", "Z")},
        )

    async def delete_subscription(self, subscription_id: str) -> None:
        await self.request("DELETE", f"/subscriptions/{subscription_id}")
