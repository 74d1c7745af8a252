"""Tests for the Graph API provider adapter."""

from datetime import UTC, datetime

import httpx
import pytest

from py_calsync.config import SyncConfig
from py_calsync.errors import AuthError, MalformedEventError, ProviderError
from py_calsync.models import EventKind, Feed, ProviderType
from py_calsync.providers.graph import (
    GraphAdapter,
    delta_token_from_link,
    normalize_graph_event,
)
from py_calsync.reconciler import SyncReconciler
from py_calsync.store import MemoryEventStore

BASE_URL = "https://graph.microsoft.com/v1.0"
DELTA_PATH = "/v1.0/me/calendars/cal-1/calendarView/delta"
WINDOW = (datetime(2023, 12, 1, tzinfo=UTC), datetime(2024, 2, 1, tzinfo=UTC))


def graph_time(value):
    return {"dateTime": f"{value}.0000000", "timeZone": "UTC"}


SINGLE = {
    "id": "S1",
    "type": "singleInstance",
    "subject": "Lunch",
    "start": graph_time("2024-01-05T12:00:00"),
    "end": graph_time("2024-01-05T13:00:00"),
    "location": {"displayName": "Cafeteria"},
    "organizer": {"emailAddress": {"name": "Boss", "address": "boss@example.com"}},
    "attendees": [
        {
            "type": "required",
            "status": {"response": "accepted"},
            "emailAddress": {"name": "Dev", "address": "dev@example.com"},
        }
    ],
}

MASTER = {
    "id": "M1",
    "type": "seriesMaster",
    "subject": "Standup",
    "start": graph_time("2024-01-01T09:00:00"),
    "end": graph_time("2024-01-01T09:15:00"),
    "recurrence": {
        "pattern": {"type": "daily", "interval": 1},
        "range": {"type": "numbered", "startDate": "2024-01-01", "numberOfOccurrences": 2},
    },
}

OCCURRENCE = {
    "id": "M1-occ-1",
    "type": "occurrence",
    "seriesMasterId": "M1",
    "originalStart": "2024-01-01T09:00:00Z",
    "start": graph_time("2024-01-01T09:00:00"),
    "end": graph_time("2024-01-01T09:15:00"),
}

EXCEPTION = {
    "id": "M1-exc-2",
    "type": "exception",
    "seriesMasterId": "M1",
    "subject": "Standup (late)",
    "originalStart": "2024-01-02T09:00:00Z",
    "start": graph_time("2024-01-02T11:00:00"),
    "end": graph_time("2024-01-02T11:15:00"),
}


def make_feed(token="token-1", cursor=None):
    return Feed(
        id="outlook",
        provider_type=ProviderType.GRAPH,
        calendar="cal-1",
        cursor=cursor,
        credentials=token,
    )


class GraphServer:
    """Fake Graph endpoint answering calendar view, event and instance requests."""

    def __init__(self):
        self.requests = []
        self.delta_pages = {
            None: {
                "value": [SINGLE, MASTER, OCCURRENCE],
                "@odata.nextLink": f"{BASE_URL}/me/calendars/cal-1/calendarView/delta?$skiptoken=page-2",
            },
            "page-2": {
                "value": [{"id": "gone-1", "@removed": {"reason": "deleted"}}],
                "@odata.deltaLink": f"{BASE_URL}/me/calendars/cal-1/calendarView/delta?$deltatoken=tok-2",
            },
        }
        self.delta_changes = {
            "value": [dict(SINGLE, subject="Late lunch"), {"id": "gone-2", "@removed": {"reason": "deleted"}}],
            "@odata.deltaLink": f"{BASE_URL}/me/calendars/cal-1/calendarView/delta?$deltatoken=tok-3",
        }
        self.events = {"M1": MASTER}
        self.instances = {"M1": [OCCURRENCE, EXCEPTION]}
        self.instance_status = {}
        self.expired_tokens = set()
        self.status = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.status is not None:
            return httpx.Response(self.status, json={"error": {"code": "Denied", "message": "nope"}})

        path = request.url.path
        params = request.url.params
        if path == DELTA_PATH:
            token = params.get("$deltatoken")
            if token in self.expired_tokens:
                return httpx.Response(410, json={"error": {"code": "SyncStateNotFound", "message": "expired"}})
            if token:
                return httpx.Response(200, json=self.delta_changes)
            return httpx.Response(200, json=self.delta_pages[params.get("$skiptoken")])

        prefix = "/v1.0/me/calendars/cal-1/events/"
        if path.startswith(prefix):
            rest = path[len(prefix):]
            if rest.endswith("/instances"):
                master_id = rest[: -len("/instances")]
                if master_id in self.instance_status:
                    status = self.instance_status[master_id]
                    return httpx.Response(status, json={"error": {"code": "Failed", "message": "gone"}})
                return httpx.Response(200, json={"value": self.instances.get(master_id, [])})
            if rest in self.events:
                return httpx.Response(200, json=self.events[rest])
            return httpx.Response(404, json={"error": {"code": "ErrorItemNotFound", "message": "not found"}})

        return httpx.Response(400, json={"error": {"code": "BadRequest", "message": path}})


@pytest.fixture
def server():
    return GraphServer()


@pytest.fixture
def adapter(server):
    return GraphAdapter(SyncConfig(graph_page_size=50), transport=httpx.MockTransport(server))


class TestGraphFetch:
    @pytest.mark.asyncio
    async def test_full_fetch(self, adapter, server):
        """Test paging through the calendar view and reading series instances."""
        result = await adapter.fetch(make_feed(), *WINDOW)

        first = server.requests[0]
        assert first.headers["Authorization"] == "Bearer token-1"
        assert 'outlook.timezone="UTC"' in first.headers["Prefer"]
        assert "odata.maxpagesize=50" in first.headers["Prefer"]
        assert first.url.params["startDateTime"] == "2023-12-01T00:00:00Z"
        assert first.url.params["endDateTime"] == "2024-02-01T00:00:00Z"

        kinds = {e.external_id: e.kind for e in result.events}
        assert kinds == {
            "S1": EventKind.STANDALONE,
            "M1": EventKind.MASTER,
            "M1-occ-1": EventKind.INSTANCE,
            "M1-exc-2": EventKind.EXCEPTION,
        }, f"unexpected events: {kinds}"
        assert result.next_cursor == "tok-2"
        assert result.deleted_external_ids == ["gone-1"]
        assert not result.incremental
        assert result.skipped == 0

        by_id = {e.external_id: e for e in result.events}
        assert by_id["M1"].recurrence_rule == "FREQ=DAILY;COUNT=2"
        assert by_id["M1-exc-2"].recurring_external_id == "M1"
        assert by_id["M1-exc-2"].recurrence_id == datetime(2024, 1, 2, 9, tzinfo=UTC)
        assert by_id["M1-exc-2"].start == datetime(2024, 1, 2, 11, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_delta_fetch(self, adapter, server):
        """Test an incremental fetch from a delta token."""
        result = await adapter.fetch(make_feed(cursor="tok-2"), *WINDOW, cursor="tok-2")

        assert server.requests[0].url.params["$deltatoken"] == "tok-2"
        assert "startDateTime" not in server.requests[0].url.params
        assert result.incremental
        assert result.next_cursor == "tok-3"
        assert result.deleted_external_ids == ["gone-2"]
        assert [e.title for e in result.events] == ["Late lunch"]

    @pytest.mark.asyncio
    async def test_expired_delta_token_falls_back_to_full_fetch(self, adapter, server):
        """Test that 410 Gone on a delta token restarts from the window."""
        server.expired_tokens.add("tok-old")

        result = await adapter.fetch(make_feed(cursor="tok-old"), *WINDOW, cursor="tok-old")

        assert not result.incremental
        assert result.next_cursor == "tok-2"
        assert "startDateTime" in server.requests[1].url.params

    @pytest.mark.asyncio
    async def test_changed_occurrence_fetches_its_master(self, adapter, server):
        """Test that an occurrence without its master in the view pulls in the master."""
        server.delta_pages[None] = {
            "value": [EXCEPTION],
            "@odata.deltaLink": f"{BASE_URL}/me/calendars/cal-1/calendarView/delta?$deltatoken=tok-9",
        }

        result = await adapter.fetch(make_feed(), *WINDOW)

        assert any(r.url.path.endswith("/events/M1") for r in server.requests)
        assert {e.external_id for e in result.events} == {"M1", "M1-occ-1", "M1-exc-2"}

    @pytest.mark.asyncio
    async def test_vanished_master_is_ignored(self, adapter, server):
        """Test that a master deleted in the meantime is only logged."""
        server.delta_pages[None] = {
            "value": [dict(EXCEPTION, seriesMasterId="M-gone")],
            "@odata.deltaLink": f"{BASE_URL}/me/calendars/cal-1/calendarView/delta?$deltatoken=tok-9",
        }

        result = await adapter.fetch(make_feed(), *WINDOW)

        assert result.events == []

    @pytest.mark.asyncio
    async def test_series_deleted_before_instances_are_read(self, adapter, server):
        """Test that a 404 on one series' instances only drops that series."""
        server.instance_status["M1"] = 404

        result = await adapter.fetch(make_feed(), *WINDOW)

        assert [e.external_id for e in result.events] == ["S1"]
        assert result.skipped == 1

    @pytest.mark.asyncio
    async def test_instance_server_error_fails_the_fetch(self, adapter, server):
        """Test that other instance failures still abort the pass."""
        server.instance_status["M1"] = 500

        with pytest.raises(ProviderError) as exc_info:
            await adapter.fetch(make_feed(), *WINDOW)

        assert exc_info.value.status_code == 500

    @pytest.mark.asyncio
    async def test_series_removed_through_its_occurrences(self, adapter, server):
        """Test that a delta removing every occurrence of a series deletes its master."""
        store = MemoryEventStore()
        feed = await store.save_feed(make_feed())
        feed.credentials = "token-1"
        reconciler = SyncReconciler(store, adapter, SyncConfig())
        await reconciler.sync(feed, now=datetime(2024, 1, 1, tzinfo=UTC))
        assert {e.external_id for e in await store.list_feed_events("outlook")} == {
            "S1",
            "M1",
            "M1-occ-1",
            "M1-exc-2",
        }

        server.delta_changes = {
            "value": [
                {"id": "M1-occ-1", "@removed": {"reason": "deleted"}},
                {"id": "M1-exc-2", "@removed": {"reason": "deleted"}},
            ],
            "@odata.deltaLink": f"{BASE_URL}/me/calendars/cal-1/calendarView/delta?$deltatoken=tok-3",
        }
        result = await reconciler.sync(feed, now=datetime(2024, 1, 1, tzinfo=UTC))

        assert result.incremental
        assert sorted(result.deleted_ids) == ["M1", "M1-exc-2", "M1-occ-1"]
        assert [e.external_id for e in await store.list_feed_events("outlook")] == ["S1"]

    @pytest.mark.asyncio
    async def test_malformed_event_is_skipped(self, adapter, server):
        """Test that a record without times is skipped and counted."""
        server.delta_pages[None] = {
            "value": [SINGLE, {"id": "broken", "subject": "No times"}],
            "@odata.deltaLink": f"{BASE_URL}/me/calendars/cal-1/calendarView/delta?$deltatoken=tok-9",
        }

        result = await adapter.fetch(make_feed(), *WINDOW)

        assert [e.external_id for e in result.events] == ["S1"]
        assert result.skipped == 1

    @pytest.mark.asyncio
    async def test_rejected_token(self, adapter, server):
        """Test that 401 becomes AuthError."""
        server.status = 401

        with pytest.raises(AuthError) as exc_info:
            await adapter.fetch(make_feed(), *WINDOW)

        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_server_error(self, adapter, server):
        """Test that 5xx becomes ProviderError."""
        server.status = 503

        with pytest.raises(ProviderError) as exc_info:
            await adapter.fetch(make_feed(), *WINDOW)

        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_missing_token(self, adapter, server):
        """Test that a feed without token fails before any request."""
        with pytest.raises(AuthError):
            await adapter.fetch(make_feed(token=None), *WINDOW)

        assert server.requests == []

    @pytest.mark.asyncio
    async def test_token_provider(self, adapter, server):
        """Test that the token may come from an async callable."""

        async def token():
            return "fresh-token"

        await adapter.fetch(make_feed(token=token), *WINDOW)

        assert server.requests[0].headers["Authorization"] == "Bearer fresh-token"


def test_all_day_graph_event():
    """Test that all-day events sit at UTC midnight."""
    item = {
        "id": "H1",
        "isAllDay": True,
        "start": {"dateTime": "2024-01-05T00:00:00.0000000", "timeZone": "UTC"},
        "end": {"dateTime": "2024-01-06T00:00:00.0000000", "timeZone": "UTC"},
    }

    event = normalize_graph_event(item, EventKind.STANDALONE)

    assert event.all_day
    assert event.start == datetime(2024, 1, 5, tzinfo=UTC)
    assert event.end == datetime(2024, 1, 6, tzinfo=UTC)


def test_graph_event_fields():
    """Test the mapping of Graph fields onto the normalized event."""
    event = normalize_graph_event(SINGLE, EventKind.STANDALONE)

    assert event.title == "Lunch"
    assert event.location == "Cafeteria"
    assert event.organizer == "boss@example.com"
    assert event.attendees == [
        {"email": "dev@example.com", "name": "Dev", "status": "accepted", "role": "required"}
    ]


def test_master_with_unsupported_pattern():
    """Test that a master whose pattern cannot be translated is malformed."""
    item = dict(MASTER, recurrence={"pattern": {"type": "hourly"}, "range": {"type": "noEnd"}})

    with pytest.raises(MalformedEventError, match="unsupported recurrence pattern"):
        normalize_graph_event(item, EventKind.MASTER)


def test_delta_token_from_link():
    """Test extracting the delta token from a delta link."""
    link = f"{BASE_URL}/me/calendarView/delta?$deltatoken=abc%3D%3D&$select=subject"

    assert delta_token_from_link(link) == "abc=="
    assert delta_token_from_link(None) is None
    assert delta_token_from_link(f"{BASE_URL}/me/calendarView/delta") is None
