"""Health check endpoints.

Provides liveness (/health) and readiness (/health/ready). Readiness checks
the key-value store that backs the queue, lock and write-origin markers.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from src.tasksync.api.deps import get_app_settings
from src.tasksync.errors import StoreUnavailableError
from src.tasksync.store.fallback import FallbackKeyValueStore

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(request: Request):
    """Basic liveness check. No external dependencies are checked."""
    settings = get_app_settings(request)
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Readiness check: verifies the store answers.

    Returns 200 when the store is reachable (or serving from the in-memory
    fallback, reported as ``degraded``), 503 otherwise.
    """
    checks: dict = {"store": "ok"}
    store = getattr(request.app.state, "store", None)
    if store is None:
        checks["store"] = "error"
        checks["store_error"] = "store not initialized"
    else:
        try:
            pong = await store.ping()
        except StoreUnavailableError as e:
            pong = False
            checks["store_error"] = str(e)
        if not pong:
            checks["store"] = "degraded" if isinstance(store, FallbackKeyValueStore) else "error"
            checks.setdefault("store_error", "PING did not return PONG")

    healthy = checks["store"] in ("ok", "degraded")
    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "ready" if healthy else "degraded", "checks": checks},
    )
