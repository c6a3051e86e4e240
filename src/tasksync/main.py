"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, Sentry, a
lifespan that builds the store-backed services on ``app.state``, and the
v1 API router.
"""

from __future__ import annotations

import time
import traceback
from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.requests import Request
from fastapi.responses import JSONResponse, Response

from src.tasksync.api.middleware.logging import LoggingMiddleware, configure_structlog, get_request_id
from src.tasksync.api.v1.router import router as v1_router
from src.tasksync.config import Settings, StoreBackend, get_settings
from src.tasksync.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.tasksync.core.redis import close_redis
from src.tasksync.events.broker import LogBroker
from src.tasksync.events.webhook_log import WebhookLog
from src.tasksync.store import build_store
from src.tasksync.store.base import KeyValueStore
from src.tasksync.store.cursors import DeltaCursorStore
from src.tasksync.store.queue import JobQueue
from src.tasksync.store.subscriptions import SubscriptionStore
from src.tasksync.store.write_origin import WriteOriginStore
from src.tasksync.sync.normalizer import NormalizerConfig, WebhookNormalizer

logger = structlog.get_logger(__name__)


def init_app_state(
    app: FastAPI,
    settings: Settings,
    store: KeyValueStore | None = None,
    clock: Callable[[], float] = time.time,
) -> None:
    """Attach the long-lived services to ``app.state``."""
    store = store or build_store(settings, clock=clock)
    broker = LogBroker(buffer_size=settings.WEBHOOK_LOG_MAX)

    app.state.settings = settings
    app.state.clock = clock
    app.state.store = store
    app.state.queue = JobQueue(store, dedupe_window_seconds=settings.QUEUE_DEDUPE_WINDOW_SECONDS, clock=clock)
    app.state.write_origins = WriteOriginStore(
        store,
        ttl_seconds=settings.WRITE_ORIGIN_TTL_SECONDS,
        grace_ms=settings.SYNC_LOOP_GRACE_MS,
        clock=clock,
    )
    app.state.cursor_store = DeltaCursorStore(store, clock=clock)
    app.state.subscription_store = SubscriptionStore(store)
    app.state.broker = broker
    app.state.webhook_log = WebhookLog(store, broker, max_entries=settings.WEBHOOK_LOG_MAX)
    app.state.normalizer = WebhookNormalizer(
        NormalizerConfig(
            bc_shared_secret=settings.BC_WEBHOOK_SHARED_SECRET.strip(),
            graph_client_state=settings.GRAPH_SUBSCRIPTION_CLIENT_STATE.strip(),
            dataverse_secret=settings.DATAVERSE_WEBHOOK_SECRET.strip(),
            dataverse_entity_set=settings.DATAVERSE_TASK_ENTITY_SET,
            bc_queue_entity_set=settings.BC_SYNC_QUEUE_ENTITY_SET,
        ),
        clock=clock,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: build services and Sentry on startup, close the store on shutdown."""
    settings = get_settings()
    configure_structlog()

    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    init_app_state(app, settings)
    logger.info(
        "app.started",
        environment=settings.ENVIRONMENT.value,
        store_backend=settings.STORE_BACKEND.value,
        smart_polling=settings.SYNC_USE_SMART_POLLING,
    )

    yield

    await app.state.store.close()
    if settings.STORE_BACKEND == StoreBackend.redis:
        await close_redis()


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Structured 500 body; the traceback is only exposed outside production."""
    request_id = get_request_id(request)
    settings = getattr(request.app.state, "settings", None) or get_settings()
    logger.error(
        "request.unhandled_exception",
        request_id=request_id,
        path=request.url.path,
        error=str(exc),
        exc_info=exc,
    )
    content: dict = {"ok": False, "error": str(exc) or type(exc).__name__, "requestId": request_id}
    if not settings.is_production:
        content["traceback"] = traceback.format_exception(type(exc), exc, exc.__traceback__)
    return JSONResponse(status_code=500, content=content, headers={"X-Request-ID": request_id})


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Task Sync API",
        version="0.1.0",
        description="BC / Planner / Dataverse task synchronization and webhook orchestration",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)

    # Logging middleware (assigns the request id, logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(v1_router)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
