"""Webhook normalization: vendor push payloads -> canonical ChangeEvents.

One small adapter per vendor maps its payload shape into ChangeEvent. The
shared part handles the validation-token handshake, secret checks and the
counters returned to the caller.

Vendors:
- BC: ``{"value": [{"subscriptionId", "clientState", "resource", "changeType"}]}``
- Planner (Graph): same envelope, task id in ``resourceData.id``
- Premium (Dataverse): a RemoteExecutionContext; secret in an HTTP header
"""

from __future__ import annotations

import json
import re
import time
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlsplit

import structlog

from src.tasksync.core.monitoring import webhook_notifications_total
from src.tasksync.core.security import DATAVERSE_SECRET_HEADERS, read_header_secret, secrets_match
from src.tasksync.errors import InvalidPayloadError, WebhookAuthError
from src.tasksync.store.subscriptions import SubscriptionStore
from src.tasksync.sync.schemas import ChangeEvent, NormalizedBatch, Source, utcnow

logger = structlog.get_logger(__name__)

_COMPANY_SEGMENT = re.compile(r"companies\([^)]+\)/([^(/]+)\(([^)]+)\)", re.IGNORECASE)
_ENTITY_SEGMENT = re.compile(r"([^/(]+)\(([^)]+)\)")
_GUID = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)

PLANNER_ENTITY_SET = "plannerTask"


# ── Resource parsing ────────────────────────────────────────────────────────


def normalize_system_id(value: str | None) -> str:
    """Strip quotes and braces from a GUID-like id."""
    return (value or "").strip().strip("'\"").strip("{}").strip()


def parse_resource(resource: str | None) -> tuple[str, str]:
    """Extract ``(entity_set, system_id)`` from a vendor resource path.

    Prefers the ``companies(id)/entitySet(guid)`` form, then the innermost
    ``name(value)`` segment. Returns empty strings when nothing matches.
    """
    raw = (resource or "").strip()
    if not raw:
        return "", ""
    cleaned = raw
    if raw.lower().startswith("http"):
        parts = urlsplit(raw)
        cleaned = parts.path + (f"?{parts.query}" if parts.query else "")
    cleaned = cleaned.lstrip("/")

    match = _COMPANY_SEGMENT.search(cleaned)
    if match:
        return match.group(1), normalize_system_id(match.group(2))

    segments = _ENTITY_SEGMENT.findall(cleaned)
    if segments:
        entity_set, value = segments[-1]
        return entity_set, normalize_system_id(value)
    return "", ""


def extract_dataverse_ids(payload: Mapping[str, Any]) -> list[str]:
    """Collect task GUIDs from a Dataverse RemoteExecutionContext payload.

    Looks at the primary id, ``Target`` and ``EntityReference``, input
    parameters and pre/post entity images, including nested ``value`` arrays.
    """
    ids: dict[str, None] = {}

    def add(value: Any) -> None:
        guid = normalize_system_id(str(value)) if value else ""
        if _GUID.match(guid):
            ids.setdefault(guid.lower(), None)

    def add_ref(value: Any) -> None:
        if isinstance(value, Mapping):
            add(value.get("Id") or value.get("id"))

    def visit(obj: Any) -> None:
        if not isinstance(obj, Mapping):
            return
        add(obj.get("Id") or obj.get("id") or obj.get("primaryEntityId") or obj.get("PrimaryEntityId"))
        add_ref(obj.get("Target") or obj.get("target"))
        add_ref(obj.get("EntityReference") or obj.get("entityReference"))

        params = obj.get("InputParameters") or obj.get("inputParameters")
        if isinstance(params, list):
            for param in params:
                if isinstance(param, Mapping):
                    add_ref(param.get("Value") or param.get("value"))
                    add_ref(param.get("Parameter") or param.get("parameter"))
        elif isinstance(params, Mapping):
            for param in params.values():
                if isinstance(param, Mapping):
                    add_ref(param.get("Value") or param.get("value") or param)

        for key in ("PreEntityImages", "PostEntityImages", "preEntityImages", "postEntityImages"):
            images = obj.get(key)
            if isinstance(images, Mapping):
                for image in images.values():
                    add_ref(image)
            elif isinstance(images, list):
                for image in images:
                    if isinstance(image, Mapping):
                        add_ref(image.get("value") or image.get("Value") or image)

    items = payload.get("value") if isinstance(payload.get("value"), list) else [payload]
    for item in items:
        visit(item)
        if isinstance(item, Mapping) and isinstance(item.get("value"), list):
            for nested in item["value"]:
                visit(nested)
    return list(ids)


# ── Normalizer ──────────────────────────────────────────────────────────────


@dataclass
class NormalizerConfig:
    bc_shared_secret: str = ""
    graph_client_state: str = ""
    dataverse_secret: str = ""
    dataverse_entity_set: str = "msdyn_projecttasks"
    bc_queue_entity_set: str = "premiumSyncQueue"


class WebhookNormalizer:
    """Validates push notifications and converts them to ChangeEvents.

    Args:
        config: Per-vendor secrets and entity-set names.
        clock: Returns the current time in seconds; stamps ``received_at``.
    """

    def __init__(self, config: NormalizerConfig, clock: Callable[[], float] = time.time) -> None:
        self._config = config
        self._clock = clock

    def normalize(
        self,
        raw_headers: Mapping[str, str],
        raw_body: bytes | str | None,
        vendor: Source,
        query_params: Mapping[str, str] | None = None,
    ) -> NormalizedBatch:
        """Normalize one webhook delivery.

        Returns a batch carrying ``validation_token`` when the request is a
        subscription handshake; the caller echoes it and stops.

        Raises:
            WebhookAuthError: Dataverse header secret mismatch.
            InvalidPayloadError: Body is not valid JSON.
        """
        query_params = query_params or {}
        batch = NormalizedBatch(vendor=vendor)

        token = query_params.get("validationToken")
        if token:
            batch.validation_token = token
            return batch

        if vendor == Source.PREMIUM:
            self._check_dataverse_secret(raw_headers)

        payload = self._parse_json(raw_body)

        if vendor == Source.BC and isinstance(payload, Mapping):
            body_token = payload.get("validationToken") or payload.get("validationtoken")
            if body_token:
                batch.validation_token = str(body_token)
                return batch

        if vendor == Source.PREMIUM:
            self._normalize_dataverse(payload, batch)
        else:
            self._normalize_push(payload, vendor, batch)

        counters = batch.counters
        webhook_notifications_total.labels(vendor=vendor.value, outcome="received").inc(counters.received)
        if counters.secret_mismatch:
            webhook_notifications_total.labels(vendor=vendor.value, outcome="secret_mismatch").inc(
                counters.secret_mismatch
            )
        if counters.missing_resource:
            webhook_notifications_total.labels(vendor=vendor.value, outcome="missing_resource").inc(
                counters.missing_resource
            )
        logger.info(
            "webhook.normalized",
            vendor=vendor.value,
            received=counters.received,
            events=len(batch.events),
            secret_mismatch=counters.secret_mismatch,
            missing_resource=counters.missing_resource,
            skipped=counters.skipped,
        )
        return batch

    async def drop_untracked_subscriptions(self, batch: NormalizedBatch, subscriptions: SubscriptionStore) -> None:
        """Drop BC events delivered by a subscription other than the tracked one.

        Stale or duplicate BC subscriptions keep delivering until they
        expire. An event passes when it names no subscription, or when no
        subscription is tracked for its entity set.
        """
        if batch.vendor != Source.BC or not batch.events:
            return
        tracked: dict[str, set[str]] = {}
        for sub in await subscriptions.list_subscriptions(Source.BC):
            entity_set = sub.entity_set or sub.resource.rstrip("/").rsplit("/", 1)[-1]
            tracked.setdefault(entity_set.lower(), set()).add(sub.id)

        kept: list[ChangeEvent] = []
        for event in batch.events:
            allowed = tracked.get(event.entity_set.lower())
            if event.subscription_id and allowed and event.subscription_id not in allowed:
                batch.counters.subscription_mismatch += 1
                continue
            kept.append(event)

        dropped = len(batch.events) - len(kept)
        if dropped:
            batch.events = kept
            webhook_notifications_total.labels(vendor=batch.vendor.value, outcome="subscription_mismatch").inc(dropped)
            logger.warning("webhook.subscription_mismatch", vendor=batch.vendor.value, dropped=dropped)

    # ── Helpers ─────────────────────────────────────────────────────────

    @staticmethod
    def _parse_json(raw_body: bytes | str | None) -> Any:
        if raw_body is None or (isinstance(raw_body, (bytes, str)) and not raw_body.strip()):
            return {}
        try:
            return json.loads(raw_body)
        except (ValueError, UnicodeDecodeError) as exc:
            raise InvalidPayloadError("Invalid JSON") from exc

    def _check_dataverse_secret(self, headers: Mapping[str, str]) -> None:
        expected = self._config.dataverse_secret.strip()
        if not expected:
            return
        provided = read_header_secret(headers, DATAVERSE_SECRET_HEADERS)
        if not secrets_match(expected, provided):
            webhook_notifications_total.labels(vendor=Source.PREMIUM.value, outcome="unauthorized").inc()
            logger.warning("webhook.dataverse_unauthorized")
            raise WebhookAuthError("Unauthorized")

    def _expected_client_state(self, vendor: Source) -> str:
        if vendor == Source.BC:
            return self._config.bc_shared_secret.strip()
        return self._config.graph_client_state.strip()

    @staticmethod
    def _notifications(payload: Any) -> Iterator[Any]:
        if isinstance(payload, Mapping):
            value = payload.get("value")
            if isinstance(value, list):
                yield from value
        elif isinstance(payload, list):
            yield from payload

    def _normalize_push(self, payload: Any, vendor: Source, batch: NormalizedBatch) -> None:
        expected = self._expected_client_state(vendor)
        counters = batch.counters
        now = utcnow(self._clock)

        for notification in self._notifications(payload):
            counters.received += 1
            if not isinstance(notification, Mapping):
                counters.invalid += 1
                continue

            if expected:
                client_state = notification.get("clientState")
                if not isinstance(client_state, str) or not secrets_match(expected, client_state):
                    counters.secret_mismatch += 1
                    continue

            if vendor == Source.BC:
                entity_set, entity_id = self._bc_identity(notification)
            else:
                entity_set, entity_id = self._planner_identity(notification)
            if not entity_set or not entity_id:
                counters.missing_resource += 1
                continue

            change_type = str(notification.get("changeType") or "updated").lower()
            if (
                vendor == Source.BC
                and change_type == "deleted"
                and entity_set.lower() == self._config.bc_queue_entity_set.lower()
            ):
                counters.skipped += 1
                continue

            batch.events.append(
                ChangeEvent(
                    source=vendor,
                    entity_set=entity_set,
                    entity_id=entity_id,
                    change_type=change_type,
                    received_at=now,
                    subscription_id=notification.get("subscriptionId"),
                    resource=notification.get("resource"),
                )
            )

    @staticmethod
    def _bc_identity(notification: Mapping[str, Any]) -> tuple[str, str]:
        entity_set, system_id = parse_resource(notification.get("resource"))
        if not system_id:
            resource_data = notification.get("resourceData")
            fallback = None
            if isinstance(resource_data, Mapping):
                fallback = resource_data.get("id")
            system_id = normalize_system_id(fallback or notification.get("id"))
        return entity_set, system_id

    @staticmethod
    def _planner_identity(notification: Mapping[str, Any]) -> tuple[str, str]:
        resource_data = notification.get("resourceData")
        task_id = resource_data.get("id") if isinstance(resource_data, Mapping) else None
        resource = str(notification.get("resource") or "")
        if not task_id and resource:
            _, parsed = parse_resource(resource)
            task_id = parsed or resource.rstrip("/").split("/")[-1]
        return (PLANNER_ENTITY_SET if task_id else ""), normalize_system_id(task_id)

    def _normalize_dataverse(self, payload: Any, batch: NormalizedBatch) -> None:
        if not isinstance(payload, Mapping):
            batch.counters.invalid += 1
            return
        now = utcnow(self._clock)
        message = str(payload.get("MessageName") or payload.get("messageName") or "update").lower()
        change_type = {"create": "created", "delete": "deleted"}.get(message, "updated")
        entity_set = self._config.dataverse_entity_set

        ids = extract_dataverse_ids(payload)
        batch.counters.received = max(len(ids), 1)
        if not ids:
            batch.counters.missing_resource += 1
            return
        for task_id in ids:
            batch.events.append(
                ChangeEvent(
                    source=Source.PREMIUM,
                    entity_set=entity_set,
                    entity_id=task_id,
                    change_type=change_type,
                    received_at=now,
                )
            )
