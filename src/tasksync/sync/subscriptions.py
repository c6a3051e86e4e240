"""Push subscription lifecycle for BC and Graph/Planner.

The manager keeps at most one active subscription per (resource,
notificationUrl). Renewal is attempted in place first and falls back to a
best-effort delete plus a fresh create. Bulk deletion is limited to
resources this integration owns, since other consumers share the same
subscription APIs.
"""

from __future__ import annotations

import re
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

import structlog

from src.tasksync.core.monitoring import subscription_operations_total
from src.tasksync.errors import ExternalServiceError, SyncError
from src.tasksync.store.subscriptions import SubscriptionStore
from src.tasksync.sync.schemas import (
    DeleteReport,
    Source,
    Subscription,
    SubscriptionFailure,
    SubscriptionReport,
    parse_datetime,
    utcnow,
)

logger = structlog.get_logger(__name__)

_ODATA_SUBSCRIPTION_ID = re.compile(r"subscriptions\('?([^')]+)'?\)", re.IGNORECASE)


def pick_subscription_id(payload: dict[str, Any]) -> str | None:
    """Subscription id from the shapes BC and Graph return."""
    for key in ("id", "Id", "subscriptionId", "systemId"):
        value = payload.get(key)
        if value:
            return str(value)
    match = _ODATA_SUBSCRIPTION_ID.search(str(payload.get("@odata.id") or ""))
    return match.group(1) if match else None


def matches_resource(resource: str | None, patterns: list[str]) -> bool:
    if not resource:
        return False
    lowered = resource.lower()
    return any(pattern.lower() in lowered for pattern in patterns)


# ── Providers ───────────────────────────────────────────────────────────────


class SubscriptionProvider(ABC):
    """Vendor-specific subscription calls."""

    vendor: Source

    def __init__(self, notification_url: str, client_state: str | None = None) -> None:
        self.notification_url = notification_url
        self.client_state = client_state or None

    @abstractmethod
    def desired_resources(self) -> list[str]:
        """Resources this deployment should be subscribed to."""

    @abstractmethod
    def owns(self, resource: str | None) -> bool:
        """True for resources created by this integration."""

    def entity_set_for(self, resource: str) -> str | None:
        return None

    @abstractmethod
    async def create(self, resource: str, notification_url: str, expiration: datetime) -> dict[str, Any]: ...

    @abstractmethod
    async def renew(self, subscription: Subscription, expiration: datetime) -> dict[str, Any]: ...

    @abstractmethod
    async def delete(self, subscription_id: str) -> None: ...

    @abstractmethod
    async def list_remote(self) -> list[dict[str, Any]]: ...


class BcSubscriptionProvider(SubscriptionProvider):
    vendor = Source.BC

    def __init__(self, bc: Any, entity_sets: list[str], notification_url: str, client_state: str | None = None) -> None:
        super().__init__(notification_url, client_state)
        self._bc = bc
        self._entity_sets = entity_sets

    def desired_resources(self) -> list[str]:
        return [self._bc.subscription_resource(entity_set) for entity_set in self._entity_sets]

    def owns(self, resource: str | None) -> bool:
        if not resource or "companies(" not in resource.lower():
            return False
        tail = resource.rstrip("/").rsplit("/", 1)[-1].lower()
        return tail in {entity_set.lower() for entity_set in self._entity_sets}

    def entity_set_for(self, resource: str) -> str | None:
        return resource.rstrip("/").rsplit("/", 1)[-1] or None

    async def create(self, resource: str, notification_url: str, expiration: datetime) -> dict[str, Any]:
        # BC sets the expiry itself (three days).
        return await self._bc.create_subscription(resource, notification_url, self.client_state)

    async def renew(self, subscription: Subscription, expiration: datetime) -> dict[str, Any]:
        return await self._bc.renew_subscription(
            {
                "id": subscription.id,
                "notificationUrl": subscription.notification_url,
                "resource": subscription.resource,
                "clientState": subscription.client_state,
            }
        )

    async def delete(self, subscription_id: str) -> None:
        await self._bc.delete_subscription(subscription_id)

    async def list_remote(self) -> list[dict[str, Any]]:
        return await self._bc.list_subscriptions()


class PlannerSubscriptionProvider(SubscriptionProvider):
    vendor = Source.PLANNER

    def __init__(self, graph: Any, plan_ids: list[str], notification_url: str, client_state: str | None = None) -> None:
        super().__init__(notification_url, client_state)
        self._graph = graph
        self._plan_ids = plan_ids

    def desired_resources(self) -> list[str]:
        return [f"/planner/plans/{plan_id}/tasks" for plan_id in self._plan_ids]

    def owns(self, resource: str | None) -> bool:
        return matches_resource(resource, ["/planner/"])

    async def create(self, resource: str, notification_url: str, expiration: datetime) -> dict[str, Any]:
        return await self._graph.create_subscription(resource, notification_url, self.client_state, expiration)

    async def renew(self, subscription: Subscription, expiration: datetime) -> dict[str, Any]:
        return await self._graph.renew_subscription(subscription.id, expiration)

    async def delete(self, subscription_id: str) -> None:
        await self._graph.delete_subscription(subscription_id)

    async def list_remote(self) -> list[dict[str, Any]]:
        return await self._graph.list_subscriptions()


# ── Manager ─────────────────────────────────────────────────────────────────


class SubscriptionManager:
    """Creates, renews and deletes one vendor's subscriptions.

    Args:
        provider: Vendor adapter.
        store: Local subscription records.
        ttl_hours: Requested lifetime for new and renewed subscriptions.
        renewal_buffer_hours: Renew anything expiring within this window.
        clock: Returns the current time in seconds.
    """

    def __init__(
        self,
        provider: SubscriptionProvider,
        store: SubscriptionStore,
        ttl_hours: int = 48,
        renewal_buffer_hours: int = 6,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._provider = provider
        self._store = store
        self._ttl = timedelta(hours=ttl_hours)
        self._buffer = timedelta(hours=renewal_buffer_hours)
        self._clock = clock

    @property
    def vendor(self) -> Source:
        return self._provider.vendor

    def _expiration(self) -> datetime:
        return utcnow(self._clock) + self._ttl

    def _to_subscription(
        self,
        payload: dict[str, Any],
        resource: str,
        notification_url: str,
        fallback: Subscription | None = None,
    ) -> Subscription:
        sub_id = pick_subscription_id(payload) or (fallback.id if fallback else None)
        if not sub_id:
            raise ExternalServiceError(self.vendor.value, None, f"no subscription id returned for {resource}")
        expires = parse_datetime(payload.get("expirationDateTime")) or self._expiration()
        return Subscription(
            id=sub_id,
            vendor=self.vendor,
            resource=payload.get("resource") or resource,
            notification_url=payload.get("notificationUrl") or notification_url,
            client_state=self._provider.client_state,
            expiration_date_time=expires,
            created_at=fallback.created_at if fallback else utcnow(self._clock),
            entity_set=self._provider.entity_set_for(resource),
        )

    async def _delete_quietly(self, subscription_id: str) -> None:
        try:
            await self._provider.delete(subscription_id)
        except ExternalServiceError as exc:
            logger.warning(
                "subscriptions.stale_delete_failed",
                vendor=self.vendor.value,
                subscription_id=subscription_id,
                error=str(exc),
            )

    async def _create(
        self, resource: str, notification_url: str, force_recreate: bool, buffer: timedelta
    ) -> tuple[Subscription, str]:
        try:
            payload = await self._provider.create(resource, notification_url, self._expiration())
        except ExternalServiceError as exc:
            if not exc.is_already_exists:
                raise
            return await self._adopt_existing(resource, notification_url, force_recreate, buffer)
        sub = self._to_subscription(payload, resource, notification_url)
        await self._store.upsert(sub)
        return sub, "created"

    async def _adopt_existing(
        self, resource: str, notification_url: str, force_recreate: bool, buffer: timedelta
    ) -> tuple[Subscription, str]:
        """Resolve an "already exists" create by adopting or replacing the remote one."""
        now = utcnow(self._clock)
        for payload in await self._provider.list_remote():
            if payload.get("resource") != resource or payload.get("notificationUrl") != notification_url:
                continue
            existing = self._to_subscription(payload, resource, notification_url)
            if force_recreate or existing.expires_within(now, buffer):
                await self._delete_quietly(existing.id)
                created = await self._provider.create(resource, notification_url, self._expiration())
                sub = self._to_subscription(created, resource, notification_url)
                await self._store.upsert(sub)
                logger.info("subscriptions.recreated", vendor=self.vendor.value, resource=resource, id=sub.id)
                return sub, "created"
            await self._store.upsert(existing)
            logger.info("subscriptions.adopted", vendor=self.vendor.value, resource=resource, id=existing.id)
            return existing, "renewed"
        raise ExternalServiceError(self.vendor.value, 409, f"subscription for {resource} exists but was not listed")

    async def _ensure(
        self,
        resource: str,
        notification_url: str,
        force_recreate: bool = False,
        buffer: timedelta | None = None,
    ) -> tuple[Subscription, str]:
        buffer = buffer if buffer is not None else self._buffer
        stored = await self._store.find(self.vendor, resource, notification_url)
        now = utcnow(self._clock)

        if stored is not None and force_recreate:
            await self._delete_quietly(stored.id)
            await self._store.remove(self.vendor, stored.id)
            return await self._create(resource, notification_url, force_recreate, buffer)

        if stored is not None and not stored.expires_within(now, buffer):
            return stored, "skipped"

        if stored is not None:
            try:
                payload = await self._provider.renew(stored, self._expiration())
                renewed = self._to_subscription(payload, resource, notification_url, fallback=stored)
                await self._store.upsert(renewed)
                return renewed, "renewed"
            except ExternalServiceError as exc:
                logger.warning(
                    "subscriptions.renew_failed",
                    vendor=self.vendor.value,
                    subscription_id=stored.id,
                    error=str(exc),
                )
                await self._delete_quietly(stored.id)
                await self._store.remove(self.vendor, stored.id)

        return await self._create(resource, notification_url, force_recreate, buffer)

    async def ensure_active(
        self,
        resource: str,
        notification_url: str | None = None,
        force_recreate: bool = False,
    ) -> Subscription:
        """Return an active subscription for ``resource``, creating or renewing as needed."""
        sub, _ = await self._ensure(resource, notification_url or self._provider.notification_url, force_recreate)
        return sub

    async def ensure_all(
        self,
        resources: list[str] | None = None,
        force_recreate: bool = False,
    ) -> SubscriptionReport:
        """Ensure every resource; one failure never stops the others."""
        report = SubscriptionReport()
        url = self._provider.notification_url
        for resource in resources or self._provider.desired_resources():
            await self._record(report, resource, url, force_recreate, self._buffer)
        return report

    async def renew_all(
        self,
        buffer_hours: int | None = None,
        force_recreate: bool = False,
    ) -> SubscriptionReport:
        """Renew tracked subscriptions and create any desired ones that are missing.

        ``buffer_hours`` overrides the renewal window for this call only.
        """
        buffer = timedelta(hours=buffer_hours) if buffer_hours is not None else self._buffer
        report = SubscriptionReport()
        targets: dict[tuple[str, str], None] = {}
        for sub in await self._store.list_subscriptions(self.vendor):
            if self._provider.owns(sub.resource):
                targets[(sub.resource, sub.notification_url)] = None
        for resource in self._provider.desired_resources():
            targets.setdefault((resource, self._provider.notification_url), None)
        for resource, url in targets:
            await self._record(report, resource, url, force_recreate, buffer)
        return report

    async def _record(
        self, report: SubscriptionReport, resource: str, url: str, force_recreate: bool, buffer: timedelta
    ) -> None:
        try:
            _, outcome = await self._ensure(resource, url, force_recreate, buffer)
        except SyncError as exc:
            report.failed.append(SubscriptionFailure(resource=resource, error=str(exc)))
            subscription_operations_total.labels(vendor=self.vendor.value, outcome="failed").inc()
            logger.error("subscriptions.ensure_failed", vendor=self.vendor.value, resource=resource, error=str(exc))
            return
        getattr(report, outcome).append(resource)
        subscription_operations_total.labels(vendor=self.vendor.value, outcome=outcome).inc()

    async def delete_all(self, ids: list[str] | None = None) -> DeleteReport:
        """Delete owned subscriptions, optionally restricted to ``ids``."""
        report = DeleteReport()
        wanted = set(ids) if ids else None
        failed_ids: set[str] = set()
        for payload in await self._provider.list_remote():
            sub_id = pick_subscription_id(payload)
            if not sub_id or (wanted is not None and sub_id not in wanted):
                continue
            if not self._provider.owns(payload.get("resource")):
                report.skipped.append(sub_id)
                continue
            try:
                await self._provider.delete(sub_id)
            except ExternalServiceError as exc:
                if not exc.is_not_found:
                    failed_ids.add(sub_id)
                    report.failed.append(SubscriptionFailure(resource=payload.get("resource") or sub_id, error=str(exc)))
                    subscription_operations_total.labels(vendor=self.vendor.value, outcome="failed").inc()
                    continue
            await self._store.remove(self.vendor, sub_id)
            report.deleted.append(sub_id)
            subscription_operations_total.labels(vendor=self.vendor.value, outcome="deleted").inc()

        # Local records whose remote side is already gone.
        for sub in await self._store.list_subscriptions(self.vendor):
            if sub.id in report.deleted or sub.id in failed_ids or (wanted is not None and sub.id not in wanted):
                continue
            await self._store.remove(self.vendor, sub.id)

        logger.info(
            "subscriptions.delete_complete",
            vendor=self.vendor.value,
            deleted=len(report.deleted),
            skipped=len(report.skipped),
            failed=len(report.failed),
        )
        return report

    async def list_tracked(self) -> list[Subscription]:
        return await self._store.list_subscriptions(self.vendor)

    async def list_remote_owned(self) -> list[dict[str, Any]]:
        return [p for p in await self._provider.list_remote() if self._provider.owns(p.get("resource"))]
