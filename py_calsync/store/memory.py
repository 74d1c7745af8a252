"""In-memory event store."""

from __future__ import annotations

import asyncio
import copy
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

from ..errors import DuplicateEventError, FeedNotFoundError
from ..models import CalendarEvent, Feed
from .base import new_event


class MemoryEventStore:
    """Dict-backed store.

    Each operation yields to the event loop once before touching state, the
    way a database round trip would, so concurrent passes interleave.
    """

    def __init__(self) -> None:
        self._feeds: dict[str, Feed] = {}
        # feed id -> external id -> event
        self._events: dict[str, dict[str, CalendarEvent]] = {}
        self._lock = asyncio.Lock()

    def _feed_events(self, feed_id: str) -> dict[str, CalendarEvent]:
        return self._events.setdefault(feed_id, {})

    async def find_by_external_id(self, feed_id: str, external_id: str) -> CalendarEvent | None:
        await asyncio.sleep(0)
        async with self._lock:
            event = self._feed_events(feed_id).get(external_id)
            return copy.deepcopy(event) if event is not None else None

    async def list_feed_events(self, feed_id: str) -> list[CalendarEvent]:
        await asyncio.sleep(0)
        async with self._lock:
            return [copy.deepcopy(e) for e in self._feed_events(feed_id).values()]

    async def create(self, feed_id: str, external_id: str, fields: dict[str, Any]) -> CalendarEvent:
        await asyncio.sleep(0)
        async with self._lock:
            events = self._feed_events(feed_id)
            if external_id in events:
                raise DuplicateEventError(feed_id, external_id)
            event = new_event(feed_id, external_id, copy.deepcopy(fields), datetime.now(UTC))
            events[external_id] = event
            return copy.deepcopy(event)

    async def upsert(self, feed_id: str, external_id: str, fields: dict[str, Any]) -> CalendarEvent:
        await asyncio.sleep(0)
        async with self._lock:
            events = self._feed_events(feed_id)
            now = datetime.now(UTC)
            existing = events.get(external_id)
            if existing is None:
                event = new_event(feed_id, external_id, copy.deepcopy(fields), now)
            else:
                event = existing.with_fields(copy.deepcopy(fields), now)
            events[external_id] = event
            return copy.deepcopy(event)

    async def delete_by_external_id(self, feed_id: str, external_id: str) -> list[str]:
        await asyncio.sleep(0)
        async with self._lock:
            return self._delete(feed_id, [external_id])

    async def delete_where_feed_and_external_id_not_in(
        self, feed_id: str, keep_ids: Iterable[str]
    ) -> list[str]:
        await asyncio.sleep(0)
        keep = set(keep_ids)
        async with self._lock:
            doomed = [eid for eid in self._feed_events(feed_id) if eid not in keep]
            return self._delete(feed_id, doomed)

    def _delete(self, feed_id: str, external_ids: list[str]) -> list[str]:
        events = self._feed_events(feed_id)
        removed_ids = set()
        deleted = []
        for external_id in external_ids:
            event = events.pop(external_id, None)
            if event is None:
                continue
            deleted.append(external_id)
            removed_ids.add(event.id)

        # Cascade to instances and exceptions of deleted masters
        for external_id, event in list(events.items()):
            if event.master_event_id in removed_ids:
                del events[external_id]
                deleted.append(external_id)
        return deleted

    async def update_feed_cursor_and_last_sync(
        self, feed_id: str, cursor: str | None, timestamp: datetime
    ) -> None:
        await asyncio.sleep(0)
        async with self._lock:
            feed = self._feeds.get(feed_id)
            if feed is None:
                raise FeedNotFoundError(feed_id)
            feed.cursor = cursor
            feed.last_sync = timestamp

    async def get_feed(self, feed_id: str) -> Feed:
        await asyncio.sleep(0)
        async with self._lock:
            feed = self._feeds.get(feed_id)
            if feed is None:
                raise FeedNotFoundError(feed_id)
            return copy.copy(feed)

    async def save_feed(self, feed: Feed) -> Feed:
        await asyncio.sleep(0)
        async with self._lock:
            stored = copy.copy(feed)
            stored.credentials = None
            self._feeds[feed.id] = stored
            return copy.copy(stored)

    async def list_feeds(self) -> list[Feed]:
        await asyncio.sleep(0)
        async with self._lock:
            return [copy.copy(f) for f in self._feeds.values()]
