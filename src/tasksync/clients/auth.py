"""OAuth2 client-credentials token acquisition for Microsoft APIs."""

from __future__ import annotations

import time
from collections.abc import Callable

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.tasksync.errors import ExternalServiceError

logger = structlog.get_logger(__name__)

TOKEN_URL = "https://login.microsoftonline.com/{tenant_id}/oauth2/v2.0/token"
EXPIRY_MARGIN_SECONDS = 60


class ClientCredentialsAuth:
    """Fetches and caches an app-only access token.

    The token is reused until 60 seconds before it expires. Only the token
    request is retried; API calls made with the token are not.

    Args:
        http: Shared httpx client for this request scope.
        tenant_id: Entra ID tenant.
        client_id: App registration id.
        client_secret: App registration secret.
        scope: ``<resource>/.default`` scope.
        service: Label used in errors and logs.
        clock: Returns the current time in seconds.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        tenant_id: str,
        client_id: str,
        client_secret: str,
        scope: str,
        service: str,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._http = http
        self._tenant_id = tenant_id
        self._client_id = client_id
        self._client_secret = client_secret
        self._scope = scope
        self._service = service
        self._clock = clock
        self._token: str | None = None
        self._expires_at = 0.0

    async def token(self) -> str:
        now = self._clock()
        if self._token and now < self._expires_at - EXPIRY_MARGIN_SECONDS:
            return self._token
        data = await self._fetch()
        access_token = data.get("access_token")
        if not access_token:
            raise ExternalServiceError(self._service, None, "token response missing access_token")
        self._token = access_token
        self._expires_at = now + float(data.get("expires_in") or 3600)
        logger.debug("auth.token_refreshed", service=self._service)
        return access_token

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _fetch(self) -> dict:
        response = await self._http.post(
            TOKEN_URL.format(tenant_id=self._tenant_id),
            data={
                "grant_type": "client_credentials",
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "scope": self._scope,
            },
        )
        if response.status_code >= 400:
            raise ExternalServiceError(self._service, response.status_code, f"token error: {response.text[:300]}")
        return response.json()
