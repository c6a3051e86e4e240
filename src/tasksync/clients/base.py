"""Shared request plumbing for the BC, Graph and Dataverse clients."""

from __future__ import annotations

from typing import Any

import httpx

from src.tasksync.clients.auth import ClientCredentialsAuth
from src.tasksync.errors import ExternalServiceError


class ApiClient:
    """Bearer-authenticated JSON client rooted at ``base_url``.

    Non-2xx responses and transport failures raise ExternalServiceError.
    No retries: a failed call is reported per item and retried on the next
    scheduled run.
    """

    service = "api"

    def __init__(self, http: httpx.AsyncClient, auth: ClientCredentialsAuth, base_url: str) -> None:
        self._http = http
        self._auth = auth
        self._base_url = base_url.rstrip("/")

    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self._base_url}/{path.lstrip('/')}"

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        token = await self._auth.token()
        merged = {"Authorization": f"Bearer {token}", "Accept": "application/json"}
        if headers:
            merged.update(headers)
        try:
            response = await self._http.request(method, self._url(path), json=json, params=params, headers=merged)
        except httpx.TransportError as exc:
            raise ExternalServiceError(self.service, None, f"{method} {path}: {exc}") from exc
        if response.status_code >= 400:
            raise ExternalServiceError(self.service, response.status_code, response.text[:500])
        return response

    async def request_json(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        response = await self.request(method, path, **kwargs)
        if response.status_code == 204 or not response.content:
            return {}
        return response.json()
