"""Exception hierarchy for the sync engine.

Auth and payload errors terminate a single request with a 4xx. Remote
errors are reported per item and never abort a batch.
"""

from __future__ import annotations

import re

_ALREADY_EXISTS = re.compile(r"subscription already exist|already exists", re.IGNORECASE)


class SyncError(Exception):
    """Base class for all tasksync errors."""


class WebhookAuthError(SyncError):
    """Shared secret or clientState did not match."""


class InvalidPayloadError(SyncError):
    """Request body could not be parsed."""


class StoreUnavailableError(SyncError):
    """The backing key-value store did not answer."""


class RecordLockedError(SyncError):
    """A record-level syncLock or etag precondition blocked a write."""


class ExternalServiceError(SyncError):
    """Non-2xx response (or transport failure) from BC, Graph or Dataverse.

    Attributes:
        service: "bc", "graph" or "dataverse".
        status_code: HTTP status, or None for transport failures.
        message: Body text or error description.
    """

    def __init__(self, service: str, status_code: int | None, message: str) -> None:
        self.service = service
        self.status_code = status_code
        self.message = message
        prefix = f"{service} {status_code}" if status_code is not None else f"{service} transport"
        super().__init__(f"{prefix}: {message}")

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404

    @property
    def is_precondition_failed(self) -> bool:
        return self.status_code == 412

    @property
    def is_already_exists(self) -> bool:
        return bool(_ALREADY_EXISTS.search(self.message))

    @property
    def is_transient(self) -> bool:
        return self.status_code is None or self.status_code == 429 or self.status_code >= 500
