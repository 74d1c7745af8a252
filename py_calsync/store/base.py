"""Event store interface."""

from __future__ import annotations

import uuid
from collections.abc import Iterable
from datetime import datetime
from typing import Any, Protocol

from ..models import CalendarEvent, Feed


class EventStore(Protocol):
    """Relational persistence for feeds and their events.

    Every event operation is scoped to one feed. Deleting a master also
    deletes the rows that reference it through `master_event_id`.
    """

    async def find_by_external_id(self, feed_id: str, external_id: str) -> CalendarEvent | None:
        """Get the event with the given external id, or None."""
        ...

    async def list_feed_events(self, feed_id: str) -> list[CalendarEvent]:
        """List all events of a feed."""
        ...

    async def create(self, feed_id: str, external_id: str, fields: dict[str, Any]) -> CalendarEvent:
        """Insert a new event.

        Raises:
            DuplicateEventError: A row with this external id already exists
        """
        ...

    async def upsert(self, feed_id: str, external_id: str, fields: dict[str, Any]) -> CalendarEvent:
        """Create or replace an event.

        Replace, not merge: fields absent from `fields` are reset to their
        defaults. The local id and creation time survive a replace.
        """
        ...

    async def delete_by_external_id(self, feed_id: str, external_id: str) -> list[str]:
        """Delete an event (and its dependents if it is a master).

        Returns:
            External ids of all deleted rows
        """
        ...

    async def delete_where_feed_and_external_id_not_in(
        self, feed_id: str, keep_ids: Iterable[str]
    ) -> list[str]:
        """Delete every event of the feed whose external id is not kept.

        Returns:
            External ids of all deleted rows
        """
        ...

    async def update_feed_cursor_and_last_sync(
        self, feed_id: str, cursor: str | None, timestamp: datetime
    ) -> None:
        """Record a completed pass on the feed."""
        ...

    async def get_feed(self, feed_id: str) -> Feed:
        """Get a feed.

        Raises:
            FeedNotFoundError: No feed with this id
        """
        ...

    async def save_feed(self, feed: Feed) -> Feed:
        """Create or update a feed. Credentials are never stored."""
        ...

    async def list_feeds(self) -> list[Feed]:
        """List all feeds."""
        ...


def new_event_id() -> str:
    return uuid.uuid4().hex


def new_event(feed_id: str, external_id: str, fields: dict[str, Any], now: datetime) -> CalendarEvent:
    """Build a fresh row for `fields`, stamped with `now`."""
    event = CalendarEvent(
        id=new_event_id(),
        feed_id=feed_id,
        external_id=external_id,
        start=fields["start"],
        end=fields["end"],
        created_at=now,
    )
    return event.with_fields(fields, now)
