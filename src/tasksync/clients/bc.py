"""Business Central REST client (custom projectTasks API + webhook subscriptions)."""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from src.tasksync.clients.auth import ClientCredentialsAuth
from src.tasksync.clients.base import ApiClient
from src.tasksync.config import Settings
from src.tasksync.errors import ExternalServiceError
from src.tasksync.sync.schemas import TaskRecord

logger = structlog.get_logger(__name__)

BC_SCOPE = "https://api.businesscentral.dynamics.com/.default"


def _odata_literal(value: str) -> str:
    return value.replace("'", "''")


class BcClient(ApiClient):
    """Client for one BC company.

    Project tasks live under the custom API
    ``api/{publisher}/{group}/{version}/companies({companyId})``; webhook
    subscriptions use the standard ``api/v2.0/subscriptions`` endpoint.
    """

    service = "bc"

    def __init__(self, http: httpx.AsyncClient, auth: ClientCredentialsAuth, settings: Settings) -> None:
        self._environment_url = f"{settings.BC_API_BASE.rstrip('/')}/{settings.BC_TENANT_ID}/{settings.BC_ENVIRONMENT}"
        self.resource_root = (
            f"api/{settings.BC_API_PUBLISHER}/{settings.BC_API_GROUP}/{settings.BC_API_VERSION}"
            f"/companies({settings.BC_COMPANY_ID})"
        )
        self.company_id = settings.BC_COMPANY_ID
        super().__init__(http, auth, f"{self._environment_url}/{self.resource_root}")

    @classmethod
    def from_settings(cls, http: httpx.AsyncClient, settings: Settings) -> BcClient:
        auth = ClientCredentialsAuth(
            http,
            settings.BC_TENANT_ID,
            settings.BC_CLIENT_ID,
            settings.BC_CLIENT_SECRET,
            BC_SCOPE,
            service="bc",
        )
        return cls(http, auth, settings)

    # ── Project tasks ───────────────────────────────────────────────────

    async def list_project_tasks(self, filter_expr: str | None = None) -> list[TaskRecord]:
        params = {"$filter": filter_expr} if filter_expr else None
        data = await self.request_json("GET", "/projectTasks", params=params)
        return [TaskRecord.from_bc(item) for item in data.get("value", [])]

    async def get_project_task(self, system_id: str) -> TaskRecord | None:
        try:
            data = await self.request_json("GET", f"/projectTasks({system_id})")
        except ExternalServiceError as exc:
            if exc.is_not_found:
                return None
            raise
        return TaskRecord.from_bc(data)

    async def _find_one(self, field: str, value: str) -> TaskRecord | None:
        tasks = await self.list_project_tasks(f"{field} eq '{_odata_literal(value)}'")
        if not tasks:
            return None
        if len(tasks) > 1:
            logger.warning("bc.multiple_tasks_for_link", field=field, value=value, count=len(tasks))
        return tasks[0]

    async def find_project_task_by_planner_task_id(self, planner_task_id: str) -> TaskRecord | None:
        return await self._find_one("plannerTaskId", planner_task_id)

    async def find_project_task_by_premium_task_id(self, premium_task_id: str) -> TaskRecord | None:
        return await self._find_one("premiumTaskId", premium_task_id)

    async def patch_project_task(
        self, system_id: str, patch: dict[str, Any], etag: str | None = None
    ) -> TaskRecord:
        """PATCH a task. ``etag`` enables optimistic concurrency; default is ``*``."""
        data = await self.request_json(
            "PATCH",
            f"/projectTasks({system_id})",
            json=patch,
            headers={"If-Match": etag or "*"},
        )
        if data:
            return TaskRecord.from_bc(data)
        refreshed = await self.get_project_task(system_id)
        if refreshed is None:
            raise ExternalServiceError(self.service, 404, f"projectTask {system_id} vanished after PATCH")
        return refreshed

    # ── Webhook subscriptions ───────────────────────────────────────────

    def _subscriptions_url(self, subscription_id: str | None = None) -> str:
        url = f"{self._environment_url}/api/v2.0/subscriptions"
        if subscription_id:
            url += f"('{subscription_id}')"
        return url

    def subscription_resource(self, entity_set: str) -> str:
        return f"{self.resource_root}/{entity_set}"

    async def create_subscription(
        self, resource: str, notification_url: str, client_state: str | None
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"notificationUrl": notification_url, "resource": resource}
        if client_state:
            body["clientState"] = client_state
        return await self.request_json("POST", self._subscriptions_url(), json=body)

    async def list_subscriptions(self) -> list[dict[str, Any]]:
        data = await self.request_json("GET", self._subscriptions_url())
        return list(data.get("value", []))

    async def renew_subscription(self, subscription: dict[str, Any]) -> dict[str, Any]:
        """BC renews by re-PATCHing the subscription; expiry is set server-side."""
        body = {
            "notificationUrl": subscription["notificationUrl"],
            "resource": subscription["resource"],
        }
        if subscription.get("clientState"):
            body["clientState"] = subscription["clientState"]
        return await self.request_json(
            "PATCH",
            self._subscriptions_url(subscription["id"]),
            json=body,
            headers={"If-Match": subscription.get("etag") or "*"},
        )

    async def delete_subscription(self, subscription_id: str) -> None:
        await self.request("DELETE", self._subscriptions_url(subscription_id), headers={"If-Match": "*"})
