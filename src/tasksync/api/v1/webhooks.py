"""Inbound webhook receivers for BC, Graph/Planner and Dataverse.

Each receiver echoes subscription validation tokens as text/plain, rejects
bad secrets with 401 and malformed JSON with 400, and otherwise enqueues the
normalized events and answers 202 with per-delivery counters. Processing
happens on the cron-triggered queue drain unless inline processing is
requested.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse, Response

import structlog

from src.tasksync.api.deps import (
    ClientFactory,
    build_engine,
    build_processor,
    build_resolve_options,
    get_app_settings,
    get_client_factory,
    get_normalizer,
    get_queue,
    get_subscription_store,
    get_webhook_log,
)
from src.tasksync.api.middleware.logging import get_request_id
from src.tasksync.config import Settings
from src.tasksync.core.monitoring import webhook_notifications_total
from src.tasksync.errors import InvalidPayloadError, WebhookAuthError
from src.tasksync.events.webhook_log import WebhookLog
from src.tasksync.store.queue import JobQueue
from src.tasksync.store.subscriptions import SubscriptionStore
from src.tasksync.sync.normalizer import WebhookNormalizer
from src.tasksync.sync.schemas import Source, WebhookLogEntry

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _error(status_code: int, message: str, request_id: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"ok": False, "error": message, "requestId": request_id})


async def _receive(
    request: Request,
    vendor: Source,
    normalizer: WebhookNormalizer,
    queue: JobQueue,
    webhook_log: WebhookLog,
    subscriptions: SubscriptionStore,
    open_clients: ClientFactory,
    settings: Settings,
    process: bool,
) -> Response:
    request_id = get_request_id(request)
    body = await request.body()

    try:
        batch = normalizer.normalize(request.headers, body, vendor, request.query_params)
    except WebhookAuthError:
        logger.warning("webhook.unauthorized", vendor=vendor.value)
        return _error(status.HTTP_401_UNAUTHORIZED, "Unauthorized", request_id)
    except InvalidPayloadError as exc:
        logger.warning("webhook.invalid_payload", vendor=vendor.value, error=str(exc))
        return _error(status.HTTP_400_BAD_REQUEST, str(exc), request_id)

    if batch.validation_token is not None:
        logger.info("webhook.validation", vendor=vendor.value)
        return PlainTextResponse(batch.validation_token, status_code=status.HTTP_200_OK)

    if batch.all_rejected:
        logger.warning("webhook.client_state_rejected", vendor=vendor.value, received=batch.counters.received)
        return _error(status.HTTP_401_UNAUTHORIZED, "Unauthorized", request_id)

    await normalizer.drop_untracked_subscriptions(batch, subscriptions)

    enqueue = await queue.enqueue(batch.events)
    webhook_notifications_total.labels(vendor=vendor.value, outcome="enqueued").inc(enqueue.enqueued)
    webhook_notifications_total.labels(vendor=vendor.value, outcome="deduped").inc(enqueue.deduped)

    await webhook_log.append(
        WebhookLogEntry(
            vendor=vendor,
            request_id=request_id,
            counters=batch.counters,
            enqueue=enqueue,
            events=[
                {"entitySet": e.entity_set, "entityId": e.entity_id, "changeType": e.change_type}
                for e in batch.events
            ],
        )
    )

    counters = batch.counters
    content = {
        "ok": True,
        "received": counters.received,
        "enqueued": enqueue.enqueued,
        "deduped": enqueue.deduped,
        "skipped": counters.skipped + counters.invalid + enqueue.skipped,
        "secretMismatch": counters.secret_mismatch,
        "subscriptionMismatch": counters.subscription_mismatch,
        "missingResource": counters.missing_resource,
        "requestId": request_id,
    }

    if (process or settings.WEBHOOK_PROCESS_INLINE) and enqueue.enqueued:
        # One attempt; a held lock leaves the jobs for the next cron tick.
        async with open_clients() as clients:
            processor = build_processor(request, build_engine(request, clients, settings), settings)
            summary = await processor.process(options=build_resolve_options(request, settings))
        content["processed"] = summary.model_dump(mode="json", by_alias=True)

    return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=content)


@router.api_route("/bc", methods=["GET", "POST"])
async def bc_webhook(
    request: Request,
    process: bool = Query(False),
    normalizer: WebhookNormalizer = Depends(get_normalizer),
    queue: JobQueue = Depends(get_queue),
    webhook_log: WebhookLog = Depends(get_webhook_log),
    subscriptions: SubscriptionStore = Depends(get_subscription_store),
    open_clients: ClientFactory = Depends(get_client_factory),
    settings: Settings = Depends(get_app_settings),
) -> Response:
    """Business Central webhook subscription endpoint."""
    return await _receive(
        request, Source.BC, normalizer, queue, webhook_log, subscriptions, open_clients, settings, process
    )


@router.api_route("/graph/planner", methods=["GET", "POST"])
async def planner_webhook(
    request: Request,
    process: bool = Query(False),
    normalizer: WebhookNormalizer = Depends(get_normalizer),
    queue: JobQueue = Depends(get_queue),
    webhook_log: WebhookLog = Depends(get_webhook_log),
    subscriptions: SubscriptionStore = Depends(get_subscription_store),
    open_clients: ClientFactory = Depends(get_client_factory),
    settings: Settings = Depends(get_app_settings),
) -> Response:
    """Microsoft Graph change notifications for Planner tasks."""
    return await _receive(
        request, Source.PLANNER, normalizer, queue, webhook_log, subscriptions, open_clients, settings, process
    )


@router.get("/dataverse")
async def dataverse_ping(request: Request) -> Response:
    """Reachability check used when registering the service endpoint."""
    token = request.query_params.get("validationToken")
    if token:
        return PlainTextResponse(token)
    return JSONResponse({"ok": True, "vendor": Source.PREMIUM.value})


@router.post("/dataverse")
async def dataverse_webhook(
    request: Request,
    process: bool = Query(False),
    normalizer: WebhookNormalizer = Depends(get_normalizer),
    queue: JobQueue = Depends(get_queue),
    webhook_log: WebhookLog = Depends(get_webhook_log),
    subscriptions: SubscriptionStore = Depends(get_subscription_store),
    open_clients: ClientFactory = Depends(get_client_factory),
    settings: Settings = Depends(get_app_settings),
) -> Response:
    """Dataverse service-endpoint webhook (RemoteExecutionContext payloads)."""
    return await _receive(
        request, Source.PREMIUM, normalizer, queue, webhook_log, subscriptions, open_clients, settings, process
    )
