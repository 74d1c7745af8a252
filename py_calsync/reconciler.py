"""Merge a provider's event set into the local store."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from .config import SyncConfig
from .debug import log_context
from .errors import DuplicateEventError
from .models import CalendarEvent, EventKind, Feed, NormalizedEvent, SyncResult
from .providers.base import ProviderAdapter, sync_window
from .recurrence.overrides import substitute_exceptions
from .store.base import EventStore

logger = logging.getLogger("py_calsync.reconciler")


class SyncReconciler:
    """Run one sync pass for a feed.

    Masters are written before anything that depends on them, so every
    instance and exception can be linked to the local id of its master.
    Records that fail individually are logged and counted as skipped. A
    failing fetch aborts the pass before the store is touched.
    """

    def __init__(
        self,
        store: EventStore,
        adapter: ProviderAdapter,
        config: SyncConfig | None = None,
    ) -> None:
        self.store = store
        self.adapter = adapter
        self.config = config or SyncConfig()

    async def sync(self, feed: Feed, now: datetime | None = None) -> SyncResult:
        """Fetch the feed and reconcile the store with it.

        Args:
            feed: Feed to synchronize, with credentials attached
            now: Reference time for the sync window (defaults to now)

        Returns:
            Rows added and updated, external ids deleted, skip count

        Raises:
            ProviderError: The fetch failed; nothing was written
        """
        now = now or datetime.now(UTC)
        window_start, window_end = sync_window(now, self.config)
        context = log_context(feed_id=feed.id)

        fetch = await self.adapter.fetch(feed, window_start, window_end, cursor=feed.cursor)

        result = SyncResult(skipped=fetch.skipped, incremental=fetch.incremental)
        existing = {e.external_id: e for e in await self.store.list_feed_events(feed.id)}

        # Local ids of masters that had instances or exceptions before the pass
        linked_masters = {e.master_event_id for e in existing.values() if e.master_event_id}

        if fetch.incremental:
            await self._apply_reported_deletions(feed, fetch.deleted_external_ids, existing, result)

        events = substitute_exceptions(fetch.events)
        masters = [e for e in events if e.kind is EventKind.MASTER]
        standalone = [e for e in events if e.kind is EventKind.STANDALONE]
        dependents = [e for e in events if e.kind in (EventKind.INSTANCE, EventKind.EXCEPTION)]

        # external id -> local row id of masters that dependents may link to.
        # A full pass deletes masters it did not see, so only delta passes
        # may link to masters stored earlier.
        master_ids: dict[str, str] = {}
        if fetch.incremental:
            master_ids = {eid: row.id for eid, row in existing.items() if row.is_master}

        seen: set[str] = set()
        for event in masters + standalone:
            seen.add(event.external_id)
            row = await self._upsert_or_skip(feed, event, event.to_fields(), existing, result)
            if row is None:
                # Keep dependents linked to the stored master when its update failed
                row = existing.get(event.external_id)
            if row is not None and row.is_master and event.is_master:
                master_ids[event.external_id] = row.id

        for event in dependents:
            master_id = master_ids.get(event.recurring_external_id or "")
            if master_id is None:
                logger.warning(
                    f"Skipping {event.kind.value} {event.external_id} in feed {feed.id}: "
                    f"master {event.recurring_external_id} is unknown",
                    extra=log_context(feed.id, event.external_id),
                )
                result.skipped += 1
                continue

            seen.add(event.external_id)
            fields = event.to_fields()
            fields["master_event_id"] = master_id
            await self._upsert_or_skip(feed, event, fields, existing, result)

        if fetch.incremental:
            await self._delete_orphaned_masters(feed, linked_masters, seen, existing, result)
        else:
            deleted = await self.store.delete_where_feed_and_external_id_not_in(feed.id, seen)
            result.deleted_ids.extend(deleted)

        # Last, so an interrupted pass is simply repeated
        cursor = fetch.next_cursor if fetch.next_cursor is not None else feed.cursor
        await self.store.update_feed_cursor_and_last_sync(feed.id, cursor, now)
        feed.cursor = cursor
        feed.last_sync = now

        counts = result.counts()
        logger.info(
            f"Synced feed {feed.id} ({'delta' if result.incremental else 'full'}): "
            f"{counts['added']} added, {counts['updated']} updated, "
            f"{counts['deleted']} deleted, {counts['skipped']} skipped",
            extra=context,
        )
        return result

    async def _apply_reported_deletions(
        self,
        feed: Feed,
        external_ids: list[str],
        existing: dict[str, CalendarEvent],
        result: SyncResult,
    ) -> None:
        for external_id in external_ids:
            try:
                deleted = await self.store.delete_by_external_id(feed.id, external_id)
            except Exception as e:
                logger.warning(
                    f"Failed to delete {external_id} in feed {feed.id}: {e}",
                    extra=log_context(feed.id, external_id),
                )
                continue
            for eid in deleted:
                existing.pop(eid, None)
            result.deleted_ids.extend(deleted)

    async def _delete_orphaned_masters(
        self,
        feed: Feed,
        linked_masters: set[str],
        seen: set[str],
        existing: dict[str, CalendarEvent],
        result: SyncResult,
    ) -> None:
        """Delete masters whose last dependents were reported deleted.

        Some providers report a deleted series only through its occurrences.
        A master the pass saw again is kept.
        """
        still_linked = {e.master_event_id for e in existing.values() if e.master_event_id}
        orphans = [
            e.external_id
            for e in existing.values()
            if e.is_master
            and e.id in linked_masters
            and e.id not in still_linked
            and e.external_id not in seen
        ]
        for external_id in orphans:
            logger.info(
                f"Deleting master {external_id} in feed {feed.id}: all its occurrences were removed",
                extra=log_context(feed.id, external_id),
            )
        await self._apply_reported_deletions(feed, orphans, existing, result)

    async def _upsert_or_skip(
        self,
        feed: Feed,
        event: NormalizedEvent,
        fields: dict[str, Any],
        existing: dict[str, CalendarEvent],
        result: SyncResult,
    ) -> CalendarEvent | None:
        try:
            return await self._upsert(feed, event, fields, existing, result)
        except Exception as e:
            logger.warning(
                f"Failed to store {event.kind.value} {event.external_id} in feed {feed.id}: {e}",
                extra=log_context(feed.id, event.external_id),
            )
            result.skipped += 1
            return None

    async def _upsert(
        self,
        feed: Feed,
        event: NormalizedEvent,
        fields: dict[str, Any],
        existing: dict[str, CalendarEvent],
        result: SyncResult,
    ) -> CalendarEvent:
        external_id = event.external_id
        context = log_context(feed.id, external_id)

        current = existing.get(external_id)
        if current is None:
            # Re-check right before inserting; another writer may have won
            current = await self.store.find_by_external_id(feed.id, external_id)
            if current is not None:
                logger.info(
                    f"Event {external_id} in feed {feed.id} was created concurrently",
                    extra=context,
                )

        if current is None:
            try:
                row = await self.store.create(feed.id, external_id, fields)
            except DuplicateEventError:
                logger.info(
                    f"Event {external_id} in feed {feed.id} was created concurrently, "
                    f"not inserting it again",
                    extra=context,
                )
                current = await self.store.find_by_external_id(feed.id, external_id)
                if current is None:
                    raise
            else:
                existing[external_id] = row
                result.added.append(row)
                return row

        existing[external_id] = current
        if current.with_fields(fields, current.updated_at).field_values() == current.field_values():
            return current

        if current.is_master and not fields.get("is_master"):
            await self._drop_dependents(feed, current, existing, result)

        row = await self.store.upsert(feed.id, external_id, fields)
        existing[external_id] = row
        result.updated.append(row)
        return row

    async def _drop_dependents(
        self,
        feed: Feed,
        master: CalendarEvent,
        existing: dict[str, CalendarEvent],
        result: SyncResult,
    ) -> None:
        """Delete the instances of a master that stopped recurring."""
        dependents = [e for e in existing.values() if e.master_event_id == master.id]
        for dependent in dependents:
            deleted = await self.store.delete_by_external_id(feed.id, dependent.external_id)
            for eid in deleted:
                existing.pop(eid, None)
            result.deleted_ids.extend(deleted)
