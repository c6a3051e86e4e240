"""Local record of the push subscriptions this deployment owns."""

from __future__ import annotations

import json

from src.tasksync.store.base import KeyValueStore
from src.tasksync.sync.schemas import Source, Subscription

SUBSCRIPTIONS_PREFIX = "sync:subscriptions:"


class SubscriptionStore:
    """Per-vendor list of Subscription records, stored as one JSON document.

    Writes are read-modify-write; the lifecycle manager is the only writer
    and runs on its own schedule.
    """

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    def _key(self, vendor: Source) -> str:
        return f"{SUBSCRIPTIONS_PREFIX}{vendor.value}"

    async def list_subscriptions(self, vendor: Source) -> list[Subscription]:
        raw = await self._store.get(self._key(vendor))
        if not raw:
            return []
        return [Subscription.model_validate(item) for item in json.loads(raw)]

    async def _save(self, vendor: Source, subscriptions: list[Subscription]) -> None:
        payload = json.dumps([s.model_dump(mode="json") for s in subscriptions])
        await self._store.set(self._key(vendor), payload)

    async def find(self, vendor: Source, resource: str, notification_url: str) -> Subscription | None:
        for sub in await self.list_subscriptions(vendor):
            if sub.resource == resource and sub.notification_url == notification_url:
                return sub
        return None

    async def upsert(self, subscription: Subscription) -> None:
        """Store ``subscription``, replacing any record for the same resource and URL."""
        existing = [
            s
            for s in await self.list_subscriptions(subscription.vendor)
            if s.id != subscription.id
            and not (
                s.resource == subscription.resource
                and s.notification_url == subscription.notification_url
            )
        ]
        existing.append(subscription)
        await self._save(subscription.vendor, existing)

    async def remove(self, vendor: Source, subscription_id: str) -> bool:
        current = await self.list_subscriptions(vendor)
        remaining = [s for s in current if s.id != subscription_id]
        if len(remaining) == len(current):
            return False
        await self._save(vendor, remaining)
        return True
