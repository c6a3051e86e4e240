"""Push subscription management for BC and Graph/Planner.

Every operation reports per-item outcomes; one failing resource never fails
the whole call.
"""

from __future__ import annotations

from enum import Enum

from fastapi import APIRouter, Body, Depends, Request
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from src.tasksync.api.deps import get_app_settings, get_clients, get_clock, get_subscription_store
from src.tasksync.api.middleware.logging import get_request_id
from src.tasksync.clients import ClientBundle
from src.tasksync.config import Settings
from src.tasksync.core.security import require_cron_secret
from src.tasksync.store.subscriptions import SubscriptionStore
from src.tasksync.sync.subscriptions import (
    BcSubscriptionProvider,
    PlannerSubscriptionProvider,
    SubscriptionManager,
)

router = APIRouter(prefix="/sync/subscriptions", tags=["subscriptions"], dependencies=[Depends(require_cron_secret)])


class Vendor(str, Enum):
    bc = "bc"
    planner = "planner"


class SubscriptionRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    resources: list[str] | None = None
    entity_sets: list[str] | None = None
    plan_ids: list[str] | None = None
    ids: list[str] | None = None
    buffer_hours: int | None = Field(default=None, ge=0)
    force_recreate: bool = False


def _base_url(request: Request) -> str:
    proto = request.headers.get("x-forwarded-proto") or request.url.scheme
    host = request.headers.get("x-forwarded-host") or request.headers.get("host") or request.url.netloc
    return f"{proto}://{host}"


def build_manager(
    vendor: Vendor,
    request: Request,
    clients: ClientBundle,
    settings: Settings,
    store: SubscriptionStore,
    payload: SubscriptionRequest,
) -> SubscriptionManager:
    if vendor == Vendor.bc:
        provider = BcSubscriptionProvider(
            clients.bc,
            payload.entity_sets or settings.bc_entity_sets,
            settings.BC_WEBHOOK_NOTIFICATION_URL or f"{_base_url(request)}/webhooks/bc",
            settings.BC_WEBHOOK_SHARED_SECRET.strip() or None,
        )
    else:
        provider = PlannerSubscriptionProvider(
            clients.graph,
            payload.plan_ids or settings.planner_plan_ids,
            settings.GRAPH_NOTIFICATION_URL or f"{_base_url(request)}/webhooks/graph/planner",
            settings.GRAPH_SUBSCRIPTION_CLIENT_STATE.strip() or None,
        )
    return SubscriptionManager(
        provider,
        store,
        ttl_hours=settings.SUBSCRIPTION_TTL_HOURS,
        renewal_buffer_hours=settings.SUBSCRIPTION_RENEWAL_BUFFER_HOURS,
        clock=get_clock(request),
    )


@router.post("/{vendor}/create")
async def create_subscriptions(
    vendor: Vendor,
    request: Request,
    payload: SubscriptionRequest | None = Body(None),
    clients: ClientBundle = Depends(get_clients),
    settings: Settings = Depends(get_app_settings),
    store: SubscriptionStore = Depends(get_subscription_store),
) -> dict:
    """Ensure a subscription exists for every configured (or given) resource."""
    payload = payload or SubscriptionRequest()
    manager = build_manager(vendor, request, clients, settings, store, payload)
    report = await manager.ensure_all(payload.resources, force_recreate=payload.force_recreate)
    return {"ok": True, "requestId": get_request_id(request), **report.model_dump(mode="json", by_alias=True)}


@router.post("/{vendor}/renew")
async def renew_subscriptions(
    vendor: Vendor,
    request: Request,
    payload: SubscriptionRequest | None = Body(None),
    clients: ClientBundle = Depends(get_clients),
    settings: Settings = Depends(get_app_settings),
    store: SubscriptionStore = Depends(get_subscription_store),
) -> dict:
    """Renew subscriptions expiring within the buffer; create missing ones."""
    payload = payload or SubscriptionRequest()
    manager = build_manager(vendor, request, clients, settings, store, payload)
    report = await manager.renew_all(payload.buffer_hours, force_recreate=payload.force_recreate)
    return {"ok": True, "requestId": get_request_id(request), **report.model_dump(mode="json", by_alias=True)}


@router.post("/{vendor}/delete")
async def delete_subscriptions(
    vendor: Vendor,
    request: Request,
    payload: SubscriptionRequest | None = Body(None),
    clients: ClientBundle = Depends(get_clients),
    settings: Settings = Depends(get_app_settings),
    store: SubscriptionStore = Depends(get_subscription_store),
) -> dict:
    """Delete this integration's subscriptions (optionally only ``ids``)."""
    payload = payload or SubscriptionRequest()
    manager = build_manager(vendor, request, clients, settings, store, payload)
    report = await manager.delete_all(payload.ids)
    return {"ok": True, "requestId": get_request_id(request), **report.model_dump(mode="json", by_alias=True)}


@router.get("/{vendor}/list")
async def list_subscriptions(
    vendor: Vendor,
    request: Request,
    remote: bool = False,
    clients: ClientBundle = Depends(get_clients),
    settings: Settings = Depends(get_app_settings),
    store: SubscriptionStore = Depends(get_subscription_store),
) -> dict:
    manager = build_manager(vendor, request, clients, settings, store, SubscriptionRequest())
    content: dict = {
        "ok": True,
        "tracked": [sub.model_dump(mode="json") for sub in await manager.list_tracked()],
    }
    if remote:
        content["remote"] = await manager.list_remote_owned()
    return content
