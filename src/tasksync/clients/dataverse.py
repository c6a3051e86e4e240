"""Dataverse Web API client for project tasks and change tracking."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx

from src.tasksync.clients.auth import ClientCredentialsAuth
from src.tasksync.clients.base import ApiClient
from src.tasksync.config import Settings
from src.tasksync.errors import ExternalServiceError
from src.tasksync.sync.schemas import RemoteTask, Source, TaskFields, parse_date, parse_datetime


@dataclass
class DataverseFieldMap:
    """Logical column names for the task entity."""

    entity_set: str = "msdyn_projecttasks"
    id_field: str = "msdyn_projecttaskid"
    title_field: str = "msdyn_subject"
    percent_field: str = "msdyn_percentcomplete"
    start_field: str = "msdyn_start"
    finish_field: str = "msdyn_finish"
    modified_field: str = "modifiedon"
    percent_scale: float = 1.0

    @classmethod
    def from_settings(cls, settings: Settings) -> DataverseFieldMap:
        return cls(
            entity_set=settings.DATAVERSE_TASK_ENTITY_SET,
            id_field=settings.DATAVERSE_TASK_ID_FIELD,
            title_field=settings.DATAVERSE_TASK_TITLE_FIELD,
            percent_field=settings.DATAVERSE_TASK_PERCENT_FIELD,
            start_field=settings.DATAVERSE_TASK_START_FIELD,
            finish_field=settings.DATAVERSE_TASK_FINISH_FIELD,
            modified_field=settings.DATAVERSE_TASK_MODIFIED_FIELD,
            percent_scale=settings.DATAVERSE_PERCENT_SCALE,
        )

    def select(self) -> str:
        return ",".join(
            (self.id_field, self.title_field, self.percent_field, self.start_field, self.finish_field, self.modified_field)
        )

    def to_percent(self, value: int | None) -> float | None:
        if value is None:
            return None
        scaled = value if self.percent_scale in (0, 1) else value / self.percent_scale
        return max(0.0, min(float(scaled), 100.0))

    def from_percent(self, value: Any) -> int | None:
        if not isinstance(value, (int, float)):
            return None
        raw = value if self.percent_scale in (0, 1) else value * self.percent_scale
        return max(0, min(round(raw), 100))


class DataverseClient(ApiClient):
    """Reads and writes the configured task entity set."""

    service = "dataverse"

    def __init__(
        self,
        http: httpx.AsyncClient,
        auth: ClientCredentialsAuth,
        base_url: str,
        fields: DataverseFieldMap,
        page_size: int = 200,
    ) -> None:
        super().__init__(http, auth, base_url)
        self.fields = fields
        self._page_size = page_size

    @classmethod
    def from_settings(cls, http: httpx.AsyncClient, settings: Settings) -> DataverseClient:
        org_url = settings.DATAVERSE_URL.rstrip("/")
        auth = ClientCredentialsAuth(
            http,
            settings.DATAVERSE_TENANT_ID,
            settings.DATAVERSE_CLIENT_ID,
            settings.DATAVERSE_CLIENT_SECRET,
            f"{org_url}/.default",
            service="dataverse",
        )
        return cls(
            http,
            auth,
            f"{org_url}/api/data/{settings.DATAVERSE_API_VERSION}",
            DataverseFieldMap.from_settings(settings),
            page_size=settings.POLL_PAGE_SIZE,
        )

    def to_remote(self, row: dict[str, Any]) -> RemoteTask:
        f = self.fields
        return RemoteTask(
            source=Source.PREMIUM,
            id=str(row.get(f.id_field) or ""),
            etag=row.get("@odata.etag"),
            modified_at=parse_datetime(row.get(f.modified_field)),
            fields=TaskFields(
                title=row.get(f.title_field),
                percent_complete=f.from_percent(row.get(f.percent_field)),
                start_date=parse_date(row.get(f.start_field)),
                end_date=parse_date(row.get(f.finish_field)),
            ),
        )

    async def get_task(self, task_id: str) -> RemoteTask | None:
        try:
            row = await self.request_json(
                "GET",
                f"/{self.fields.entity_set}({task_id})",
                params={"$select": self.fields.select()},
            )
        except ExternalServiceError as exc:
            if exc.is_not_found:
                return None
            raise
        return self.to_remote(row)

    async def update_task(self, task_id: str, fields: TaskFields) -> None:
        f = self.fields
        body: dict[str, Any] = {
            f.percent_field: f.to_percent(fields.percent_complete),
            f.start_field: fields.start_date,
            f.finish_field: fields.end_date,
        }
        if fields.title:
            body[f.title_field] = fields.title
        await self.request("PATCH", f"/{f.entity_set}({task_id})", json=body, headers={"If-Match": "*"})

    def delta_url(self) -> str:
        return f"{self._base_url}/{self.fields.entity_set}?$select={self.fields.select()}"

    async def get_page(self, url: str) -> dict[str, Any]:
        return await self.request_json(
            "GET",
            url,
            headers={"Prefer": f"odata.track-changes,odata.maxpagesize={self._page_size}"},
        )
