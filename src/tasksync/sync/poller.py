"""Resumable delta polling for Planner and Dataverse.

A poll walks ``@odata.nextLink`` pages until the feed hands back an
``@odata.deltaLink``. The stored cursor only moves once the whole walk has
finished and its items have been handed to the sink, so a failed page
replays from the previous position on the next tick.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from src.tasksync.core.monitoring import delta_polls_total
from src.tasksync.errors import ExternalServiceError, StoreUnavailableError
from src.tasksync.store.cursors import DeltaCursorStore
from src.tasksync.sync.schemas import ChangeEvent, PollOutcome, PollResult, Source, utcnow

logger = structlog.get_logger(__name__)

NEXT_LINK = "@odata.nextLink"
DELTA_LINK = "@odata.deltaLink"

EventSink = Callable[[list[ChangeEvent]], Awaitable[Any]]


class DeltaFeed(ABC):
    """One remote change feed."""

    name: str
    source: Source

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock

    @property
    @abstractmethod
    def scope(self) -> str:
        """Cursor scope within the feed (plan id, entity set)."""

    @abstractmethod
    def initial_url(self) -> str: ...

    @abstractmethod
    async def fetch(self, url: str) -> dict[str, Any]: ...

    @abstractmethod
    def to_event(self, item: dict[str, Any]) -> ChangeEvent | None: ...

    def to_events(self, page: dict[str, Any]) -> list[ChangeEvent]:
        events = []
        for item in page.get("value") or []:
            if not isinstance(item, dict):
                continue
            event = self.to_event(item)
            if event is not None:
                events.append(event)
        return events


class PlannerDeltaFeed(DeltaFeed):
    """Graph beta ``/planner/plans/{id}/tasks/delta``."""

    name = "planner"
    source = Source.PLANNER

    def __init__(self, graph: Any, plan_id: str, clock: Callable[[], float] = time.time) -> None:
        super().__init__(clock)
        self._graph = graph
        self._plan_id = plan_id

    @property
    def scope(self) -> str:
        return self._plan_id

    def initial_url(self) -> str:
        return self._graph.delta_url(self._plan_id)

    async def fetch(self, url: str) -> dict[str, Any]:
        return await self._graph.get_page(url)

    def to_event(self, item: dict[str, Any]) -> ChangeEvent | None:
        task_id = item.get("id")
        if not task_id:
            return None
        return ChangeEvent(
            source=Source.PLANNER,
            entity_set="plannerTask",
            entity_id=str(task_id),
            change_type="deleted" if "@removed" in item else "updated",
            received_at=utcnow(self._clock),
            resource=f"/planner/tasks/{task_id}",
        )


class DataverseDeltaFeed(DeltaFeed):
    """Dataverse change tracking on the task entity set."""

    name = "premium"
    source = Source.PREMIUM

    def __init__(self, dataverse: Any, clock: Callable[[], float] = time.time) -> None:
        super().__init__(clock)
        self._dataverse = dataverse

    @property
    def scope(self) -> str:
        return self._dataverse.fields.entity_set

    def initial_url(self) -> str:
        return self._dataverse.delta_url()

    async def fetch(self, url: str) -> dict[str, Any]:
        return await self._dataverse.get_page(url)

    def to_event(self, item: dict[str, Any]) -> ChangeEvent | None:
        fields = self._dataverse.fields
        deleted = "$deletedEntity" in str(item.get("@odata.context", ""))
        row_id = item.get("id") if deleted else item.get(fields.id_field)
        if not row_id:
            return None
        return ChangeEvent(
            source=Source.PREMIUM,
            entity_set=fields.entity_set,
            entity_id=str(row_id),
            change_type="deleted" if deleted else "updated",
            received_at=utcnow(self._clock),
        )


class DeltaPoller:
    """Walks one feed from its stored cursor.

    Args:
        feed: The remote feed.
        cursors: Cursor persistence.
        max_pages: Page cap per poll; hitting it stores the last nextLink.
    """

    def __init__(self, feed: DeltaFeed, cursors: DeltaCursorStore, max_pages: int = 10) -> None:
        self._feed = feed
        self._cursors = cursors
        self._max_pages = max(1, max_pages)

    async def poll(self, cursor: str | None) -> PollResult:
        """Fetch every page reachable from ``cursor``.

        Raises whatever the feed raises; nothing is persisted here.
        """
        url = cursor or self._feed.initial_url()
        by_identity: dict[tuple[str, str, str], ChangeEvent] = {}
        pages = 0

        while pages < self._max_pages:
            page = await self._feed.fetch(url)
            pages += 1
            for event in self._feed.to_events(page):
                # The last state of an entity in the walk wins.
                key = (event.entity_set.lower(), event.entity_id.lower(), event.change_type)
                by_identity.pop(key, None)
                by_identity[key] = event

            next_link = page.get(NEXT_LINK)
            if next_link:
                url = next_link
                continue
            return PollResult(
                items=list(by_identity.values()),
                next_cursor=page.get(DELTA_LINK) or cursor,
                pages=pages,
                complete=True,
            )

        logger.warning("poller.page_cap_reached", feed=self._feed.name, scope=self._feed.scope, pages=pages)
        return PollResult(items=list(by_identity.values()), next_cursor=url, pages=pages, complete=False)

    async def run(self, sink: EventSink | None = None) -> PollOutcome:
        """Poll from the stored cursor, hand items to ``sink``, then advance the cursor."""
        feed, scope = self._feed.name, self._feed.scope
        outcome = PollOutcome(feed=feed, scope=scope)
        cursor = await self._cursors.get(feed, scope)

        try:
            result = await self.poll(cursor)
        except (ExternalServiceError, StoreUnavailableError) as exc:
            outcome.error = str(exc)
            outcome.complete = False
            delta_polls_total.labels(feed=feed, outcome="failed").inc()
            logger.error("poller.poll_failed", feed=feed, scope=scope, error=str(exc))
            return outcome

        outcome.pages = result.pages
        outcome.items = len(result.items)
        outcome.complete = result.complete

        if sink is not None and result.items:
            await sink(result.items)

        if result.next_cursor and result.next_cursor != cursor:
            await self._cursors.set(feed, scope, result.next_cursor)
            outcome.cursor_advanced = True

        delta_polls_total.labels(feed=feed, outcome="complete" if result.complete else "partial").inc()
        logger.info(
            "poller.poll_complete",
            feed=feed,
            scope=scope,
            pages=result.pages,
            items=len(result.items),
            complete=result.complete,
            cursor_advanced=outcome.cursor_advanced,
        )
        return outcome
