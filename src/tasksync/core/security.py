"""Constant-time secret checks for webhooks and cron-triggered routes."""

from __future__ import annotations

import hmac
from collections.abc import Mapping

from fastapi import HTTPException, Request, status

from src.tasksync.config import get_settings

CRON_SECRET_HEADER = "x-cron-secret"
CRON_SECRET_QUERY = "cronSecret"

DATAVERSE_SECRET_HEADERS = (
    "x-dataverse-secret",
    "x-webhook-secret",
    "x-ms-dynamics-webhook-key",
)


def secrets_match(expected: str, provided: str | None) -> bool:
    """Compare two secrets in constant time. An empty expected secret never matches."""
    if not expected or provided is None:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))


def read_header_secret(headers: Mapping[str, str], names: tuple[str, ...]) -> str | None:
    """Return the first non-empty header among ``names`` (case-insensitive)."""
    lowered = {k.lower(): v for k, v in headers.items()}
    for name in names:
        value = lowered.get(name)
        if value:
            return value
    return None


async def require_cron_secret(request: Request) -> None:
    """FastAPI dependency guarding cron-triggered endpoints.

    Accepts the secret in the ``x-cron-secret`` header or the
    ``cronSecret`` query parameter.

    Raises:
        HTTPException(401): If no secret is configured or it does not match.
    """
    settings = getattr(request.app.state, "settings", None) or get_settings()
    provided = request.headers.get(CRON_SECRET_HEADER) or request.query_params.get(CRON_SECRET_QUERY)
    if not secrets_match(settings.CRON_SECRET, provided):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
        )
