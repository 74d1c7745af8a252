"""Shared fixtures for sync tests."""

import asyncio
import copy
from datetime import UTC, datetime, timedelta

import pytest

from py_calsync.config import SyncConfig
from py_calsync.models import EventKind, Feed, NormalizedEvent, ProviderType
from py_calsync.store import MemoryEventStore

NOW = datetime(2024, 1, 15, 12, 0, tzinfo=UTC)


class StaticAdapter:
    """Provider adapter replaying prepared fetch results.

    Each fetch consumes the next queued result; the last one is repeated.
    A queued exception is raised instead of returned.
    """

    def __init__(self, *results):
        self.results = list(results)
        self.calls = []
        self.gate: asyncio.Event | None = None

    async def fetch(self, feed, window_start, window_end, cursor=None):
        self.calls.append({"feed": feed, "cursor": cursor, "window": (window_start, window_end)})
        if self.gate is not None:
            await self.gate.wait()
        item = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(item, Exception):
            raise item
        return copy.deepcopy(item)


class EventFactory:
    """Build normalized events around a fixed day."""

    day = datetime(2024, 1, 10, 9, 0, tzinfo=UTC)

    def standalone(self, external_id, offset_days=0, **kwargs):
        start = self.day + timedelta(days=offset_days)
        kwargs.setdefault("title", external_id)
        return NormalizedEvent(
            external_id=external_id,
            kind=EventKind.STANDALONE,
            start=start,
            end=start + timedelta(hours=1),
            **kwargs,
        )

    def master(self, external_id, rule="FREQ=DAILY;COUNT=3", **kwargs):
        kwargs.setdefault("title", external_id)
        return NormalizedEvent(
            external_id=external_id,
            kind=EventKind.MASTER,
            start=self.day,
            end=self.day + timedelta(hours=1),
            recurrence_rule=rule,
            **kwargs,
        )

    def instance(self, master_id, offset_days, kind=EventKind.INSTANCE, shift=timedelta(0), **kwargs):
        original = self.day + timedelta(days=offset_days)
        external_id = kwargs.pop("external_id", None) or f"{master_id}_{original:%Y%m%dT%H%M%SZ}"
        return NormalizedEvent(
            external_id=external_id,
            kind=kind,
            start=original + shift,
            end=original + shift + timedelta(hours=1),
            recurring_external_id=master_id,
            recurrence_id=original,
            **kwargs,
        )

    def series(self, master_id, count=3):
        """A master followed by its first `count` daily instances."""
        return [self.master(master_id, rule=f"FREQ=DAILY;COUNT={count}")] + [
            self.instance(master_id, n) for n in range(count)
        ]


@pytest.fixture
def factory():
    return EventFactory()


@pytest.fixture
def config():
    return SyncConfig(window_past_days=30, window_future_days=30, sync_timeout=5.0)


@pytest.fixture
async def store():
    store = MemoryEventStore()
    await store.save_feed(Feed(id="work", provider_type=ProviderType.CALDAV, calendar="/cal/work/"))
    return store


@pytest.fixture
def make_adapter():
    return StaticAdapter


@pytest.fixture
def now():
    return NOW
