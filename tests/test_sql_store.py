"""Tests for the SQLAlchemy event store."""

from datetime import UTC, datetime, timedelta, timezone

import pytest

from py_calsync.errors import DuplicateEventError, FeedNotFoundError
from py_calsync.models import Feed, FetchResult, ProviderType
from py_calsync.reconciler import SyncReconciler
from py_calsync.store import SQLEventStore

DAY = datetime(2024, 1, 10, 9, 0, tzinfo=UTC)


def event_fields(**overrides):
    fields = {
        "title": "Standup",
        "start": DAY,
        "end": DAY + timedelta(hours=1),
        "all_day": False,
        "is_master": False,
        "is_recurring": False,
        "attendees": [{"email": "dev@example.com", "status": "accepted"}],
    }
    fields.update(overrides)
    return fields


@pytest.fixture
async def sql_store():
    store = SQLEventStore("sqlite://")
    await store.save_feed(
        Feed(id="work", provider_type=ProviderType.CALDAV, calendar="/cal/work/", credentials=("u", "p"))
    )
    yield store
    await store.close()


class TestSQLEventStore:
    @pytest.mark.asyncio
    async def test_create_and_find(self, sql_store):
        """Test that rows round-trip with aware UTC timestamps."""
        berlin = timezone(timedelta(hours=1))
        created = await sql_store.create(
            "work", "E1", event_fields(start=datetime(2024, 1, 10, 10, 0, tzinfo=berlin))
        )

        found = await sql_store.find_by_external_id("work", "E1")

        assert found is not None
        assert found.id == created.id
        assert found.start == DAY
        assert found.start.tzinfo is not None
        assert found.attendees == [{"email": "dev@example.com", "status": "accepted"}]
        assert found.created_at is not None
        assert await sql_store.find_by_external_id("work", "nope") is None

    @pytest.mark.asyncio
    async def test_duplicate_create(self, sql_store):
        """Test that a second insert of the same external id is rejected."""
        await sql_store.create("work", "E1", event_fields())

        with pytest.raises(DuplicateEventError):
            await sql_store.create("work", "E1", event_fields())

        assert len(await sql_store.list_feed_events("work")) == 1

    @pytest.mark.asyncio
    async def test_upsert_replaces(self, sql_store):
        """Test that upsert keeps the local id and resets absent fields."""
        created = await sql_store.create("work", "E1", event_fields(location="Room 1"))

        updated = await sql_store.upsert("work", "E1", event_fields(title="Retro"))

        assert updated.id == created.id
        assert updated.title == "Retro"
        assert updated.location is None
        assert updated.created_at == created.created_at

    @pytest.mark.asyncio
    async def test_delete_master_cascades(self, sql_store):
        """Test that deleting a master deletes the rows referencing it."""
        master = await sql_store.create(
            "work", "M1", event_fields(is_master=True, is_recurring=True, recurrence_rule="FREQ=DAILY")
        )
        for n in range(2):
            await sql_store.create(
                "work",
                f"M1_{n}",
                event_fields(is_recurring=True, recurring_external_id="M1", master_event_id=master.id),
            )
        await sql_store.create("work", "S1", event_fields())

        deleted = await sql_store.delete_by_external_id("work", "M1")

        assert sorted(deleted) == ["M1", "M1_0", "M1_1"]
        assert [e.external_id for e in await sql_store.list_feed_events("work")] == ["S1"]
        assert await sql_store.delete_by_external_id("work", "M1") == []

    @pytest.mark.asyncio
    async def test_delete_not_in(self, sql_store):
        """Test deleting every row that is not kept."""
        for external_id in ("A", "B", "C"):
            await sql_store.create("work", external_id, event_fields())

        deleted = await sql_store.delete_where_feed_and_external_id_not_in("work", ["B"])

        assert sorted(deleted) == ["A", "C"]
        assert [e.external_id for e in await sql_store.list_feed_events("work")] == ["B"]

    @pytest.mark.asyncio
    async def test_feeds(self, sql_store):
        """Test feed bookkeeping; credentials are never stored."""
        await sql_store.update_feed_cursor_and_last_sync("work", "tok-1", DAY)

        feed = await sql_store.get_feed("work")

        assert feed.cursor == "tok-1"
        assert feed.last_sync == DAY
        assert feed.credentials is None
        assert [f.id for f in await sql_store.list_feeds()] == ["work"]

        with pytest.raises(FeedNotFoundError):
            await sql_store.get_feed("missing")
        with pytest.raises(FeedNotFoundError):
            await sql_store.update_feed_cursor_and_last_sync("missing", None, DAY)

    @pytest.mark.asyncio
    async def test_reconcile_twice_is_stable(self, sql_store, make_adapter, factory, config, now):
        """Test that a repeated pass over the SQL store changes nothing."""
        adapter = make_adapter(FetchResult(events=factory.series("M1") + [factory.standalone("S1")]))
        reconciler = SyncReconciler(sql_store, adapter, config)

        first = await reconciler.sync(await sql_store.get_feed("work"), now=now)
        second = await reconciler.sync(await sql_store.get_feed("work"), now=now)

        assert first.counts()["added"] == 5
        assert second.counts() == {"added": 0, "updated": 0, "deleted": 0, "skipped": 0}
        rows = await sql_store.list_feed_events("work")
        master = next(e for e in rows if e.is_master)
        assert all(e.master_event_id == master.id for e in rows if e.recurring_external_id)
