"""Pydantic schemas for the sync engine.

Covers the canonical change event and queued job, subscriptions,
write-origin markers, resolver decisions, task snapshots from each
system, and the result models returned to HTTP callers.

Result models serialize with camelCase aliases (``secretMismatch``,
``requestId``) because cron jobs and admin tooling consume them as JSON.
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Callable
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utcnow(clock: Callable[[], float] = time.time) -> datetime:
    """Current UTC time as an aware datetime, read from ``clock``."""
    return datetime.fromtimestamp(clock(), tz=timezone.utc)


def parse_datetime(value: Any) -> datetime | None:
    """Parse an ISO-8601 string from a vendor payload; None when absent or invalid."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    # BC reports "0001-01-01T00:00:00Z" for fields that were never set
    if parsed.year <= 1:
        return None
    return parsed


def parse_date(value: Any) -> str | None:
    """Normalize a date or datetime string to ``YYYY-MM-DD``."""
    if value is None or value == "":
        return None
    if isinstance(value, date) and not isinstance(value, datetime):
        return value.isoformat()
    parsed = parse_datetime(value)
    if parsed is None:
        try:
            return date.fromisoformat(str(value)[:10]).isoformat()
        except ValueError:
            return None
    return parsed.date().isoformat()


class Source(str, Enum):
    """System of record that originated a change."""

    BC = "bc"
    PLANNER = "planner"
    PREMIUM = "premium"


class EntityState(str, Enum):
    """Per-entity resolver state."""

    UNSEEN = "unseen"
    PENDING = "pending"
    APPLIED = "applied"
    SUPPRESSED = "suppressed"
    DEFERRED = "deferred"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ── Events and jobs ─────────────────────────────────────────────────────────


class ChangeEvent(BaseModel):
    """Canonical, vendor-independent change notification.

    Attributes:
        source: System the change happened in.
        entity_set: Vendor entity set or type (``projectTasks``, ``plannerTask``).
        entity_id: Identifier in the source system's id space.
        change_type: ``created``, ``updated`` or ``deleted``.
        received_at: When the notification (or poll item) was observed.
        subscription_id: Push subscription that delivered it, if any.
        resource: Raw vendor resource path, kept for diagnostics.
    """

    model_config = ConfigDict(frozen=True)

    source: Source
    entity_set: str
    entity_id: str
    change_type: str = "updated"
    received_at: datetime = Field(default_factory=utcnow)
    subscription_id: str | None = None
    resource: str | None = None

    def identity(self) -> tuple[str, str, str, str]:
        return (self.source.value, self.entity_set.lower(), self.entity_id.lower(), self.change_type)


class Job(BaseModel):
    """A queued ChangeEvent."""

    event: ChangeEvent
    dedup_key: str
    enqueued_at: datetime
    deferrals: int = 0


class Lock(BaseModel):
    """Advisory queue lock issued by acquire_lock.

    The store expires the key after ``ttl_seconds``; release needs ``token``.
    """

    token: str
    acquired_at: datetime
    ttl_seconds: int


class Subscription(BaseModel):
    """Push subscription tracked in the local store."""

    id: str
    vendor: Source
    resource: str
    notification_url: str
    client_state: str | None = None
    expiration_date_time: datetime
    created_at: datetime
    entity_set: str | None = None

    def expires_within(self, now: datetime, buffer: timedelta) -> bool:
        return self.expiration_date_time <= now + buffer


class WriteOriginRecord(BaseModel):
    """Which system the engine last wrote an entity on behalf of."""

    entity_id: str
    updated_by: Source
    updated_at: datetime
    version: int


# ── Resolver ────────────────────────────────────────────────────────────────


class ResolveOptions(BaseModel):
    request_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    prefer_bc: bool = True
    grace_ms: int = 60_000
    dry_run: bool = False


class SyncDecision(CamelModel):
    """Resolver output. Never mutates state by itself."""

    request_id: str
    dry_run: bool
    prefer_bc: bool
    grace_ms: int
    winner: Source | None
    reason: str
    state: EntityState
    entity_id: str
    source: Source
    origin_version: int | None = None
    decided_at: datetime


# ── Task snapshots ──────────────────────────────────────────────────────────


class TaskFields(BaseModel):
    """Synced task fields in BC's vocabulary (percent 0-100, ISO dates)."""

    title: str | None = None
    percent_complete: int | None = None
    start_date: str | None = None
    end_date: str | None = None


class TaskRecord(BaseModel):
    """BC project task with its sync markers."""

    system_id: str
    etag: str | None = None
    project_no: str | None = None
    task_no: str | None = None
    description: str | None = None
    percent_complete: int | None = None
    start_date: str | None = None
    end_date: str | None = None
    planner_plan_id: str | None = None
    planner_task_id: str | None = None
    premium_task_id: str | None = None
    last_planner_etag: str | None = None
    last_sync_at: datetime | None = None
    modified_at: datetime | None = None
    sync_lock: bool = False
    has_sync_lock: bool = True

    @classmethod
    def from_bc(cls, payload: dict[str, Any]) -> TaskRecord:
        """Build from a BC ``projectTasks`` entity."""
        percent = payload.get("percentComplete")
        return cls(
            system_id=str(payload.get("systemId") or ""),
            etag=payload.get("@odata.etag"),
            project_no=payload.get("projectNo"),
            task_no=payload.get("taskNo"),
            description=payload.get("description"),
            percent_complete=int(percent) if isinstance(percent, (int, float)) else None,
            start_date=parse_date(payload.get("manualStartDate") or payload.get("startDate")),
            end_date=parse_date(payload.get("manualEndDate") or payload.get("endDate")),
            planner_plan_id=payload.get("plannerPlanId") or None,
            planner_task_id=payload.get("plannerTaskId") or None,
            premium_task_id=payload.get("premiumTaskId") or None,
            last_planner_etag=payload.get("lastPlannerEtag") or None,
            last_sync_at=parse_datetime(payload.get("lastSyncAt")),
            modified_at=parse_datetime(
                payload.get("systemModifiedAt")
                or payload.get("lastModifiedDateTime")
                or payload.get("modifiedAt")
            ),
            sync_lock=bool(payload.get("syncLock")),
            has_sync_lock="syncLock" in payload,
        )

    def fields(self) -> TaskFields:
        title = " - ".join(p for p in ((self.task_no or "").strip(), (self.description or "").strip()) if p)
        return TaskFields(
            title=title or None,
            percent_complete=self.percent_complete,
            start_date=self.start_date,
            end_date=self.end_date,
        )

    def linked_id(self, source: Source) -> str | None:
        if source == Source.PLANNER:
            return self.planner_task_id
        if source == Source.PREMIUM:
            return self.premium_task_id
        return self.system_id


class RemoteTask(BaseModel):
    """Planner or Dataverse task snapshot mapped into BC's vocabulary."""

    source: Source
    id: str
    etag: str | None = None
    fields: TaskFields = Field(default_factory=TaskFields)
    modified_at: datetime | None = None
    plan_id: str | None = None


# ── Results ─────────────────────────────────────────────────────────────────


class WebhookCounters(CamelModel):
    received: int = 0
    secret_mismatch: int = 0
    subscription_mismatch: int = 0
    missing_resource: int = 0
    invalid: int = 0
    skipped: int = 0


class NormalizedBatch(BaseModel):
    vendor: Source
    events: list[ChangeEvent] = Field(default_factory=list)
    counters: WebhookCounters = Field(default_factory=WebhookCounters)
    validation_token: str | None = None

    @property
    def all_rejected(self) -> bool:
        """True when every notification in a non-empty batch failed the secret check."""
        return self.counters.received > 0 and self.counters.secret_mismatch == self.counters.received


class EnqueueResult(CamelModel):
    enqueued: int = 0
    deduped: int = 0
    skipped: int = 0


class JobResult(CamelModel):
    entity_id: str
    source: Source
    change_type: str
    state: EntityState
    reason: str
    winner: Source | None = None
    writes: list[str] = Field(default_factory=list)
    error: str | None = None


class JobProcessSummary(CamelModel):
    request_id: str
    locked: bool = False
    jobs: int = 0
    processed: int = 0
    skipped: int = 0
    deferred: int = 0
    errors: int = 0
    results: list[JobResult] = Field(default_factory=list)


class SubscriptionFailure(CamelModel):
    resource: str
    error: str


class SubscriptionReport(CamelModel):
    created: list[str] = Field(default_factory=list)
    renewed: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)
    failed: list[SubscriptionFailure] = Field(default_factory=list)


class DeleteReport(CamelModel):
    deleted: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)
    failed: list[SubscriptionFailure] = Field(default_factory=list)


class PollResult(BaseModel):
    items: list[ChangeEvent] = Field(default_factory=list)
    next_cursor: str | None = None
    pages: int = 0
    complete: bool = True


class PollOutcome(CamelModel):
    feed: str
    scope: str
    cursor_advanced: bool = False
    pages: int = 0
    items: int = 0
    complete: bool = True
    error: str | None = None
    summary: JobProcessSummary | None = None


class WebhookLogEntry(CamelModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    vendor: Source
    received_at: datetime = Field(default_factory=utcnow)
    request_id: str | None = None
    counters: WebhookCounters = Field(default_factory=WebhookCounters)
    enqueue: EnqueueResult | None = None
    events: list[dict[str, str]] = Field(default_factory=list)
