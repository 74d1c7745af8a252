"""Calendar synchronization data types.

Adapters produce `NormalizedEvent` objects, the reconciler maps them onto
persisted `CalendarEvent` rows. Every timestamp in this module is a
timezone-aware UTC datetime; all-day events sit at UTC midnight.
"""

from __future__ import annotations

from dataclasses import MISSING, dataclass, field, fields, replace
from datetime import UTC, date, datetime, timedelta
from enum import Enum
from typing import Any

from .errors import MalformedEventError


def ensure_utc(value: datetime | date) -> datetime:
    """Return `value` as an aware UTC datetime.

    Naive datetimes are taken to be UTC already. Plain dates become UTC
    midnight of that day.
    """
    if not isinstance(value, datetime):
        return datetime(value.year, value.month, value.day, tzinfo=UTC)
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class ProviderType(str, Enum):
    """Remote calendar protocol behind a feed."""

    CALDAV = "CALDAV"
    GRAPH = "GRAPH"


class EventKind(Enum):
    """Tagged variant of a normalized remote event."""

    MASTER = "master"
    INSTANCE = "instance"
    EXCEPTION = "exception"
    STANDALONE = "standalone"


@dataclass
class NormalizedEvent:
    """Provider-independent event shape produced by every adapter.

    Created per sync pass and never persisted directly.
    """

    external_id: str
    kind: EventKind
    start: datetime
    end: datetime
    title: str | None = None
    description: str | None = None
    location: str | None = None
    all_day: bool = False
    recurring_external_id: str | None = None
    recurrence_rule: str | None = None
    # Original start of the occurrence an instance/exception stands for
    recurrence_id: datetime | None = None
    exdates: tuple[datetime, ...] = ()
    sequence: int | None = None
    status: str | None = None
    organizer: str | None = None
    attendees: list[dict[str, Any]] = field(default_factory=list)
    # DTSTART of a master in its own timezone; expansion runs on wall-clock time
    anchor: datetime | None = None

    def __post_init__(self) -> None:
        if not self.external_id:
            raise MalformedEventError("event has no external id")

        self.start = ensure_utc(self.start)
        self.end = ensure_utc(self.end)
        if self.end < self.start:
            raise MalformedEventError(
                f"event ends ({self.end.isoformat()}) before it starts "
                f"({self.start.isoformat()})",
                self.external_id,
            )

        if self.kind is EventKind.MASTER and not self.recurrence_rule:
            raise MalformedEventError("master event has no recurrence rule", self.external_id)

        if self.kind in (EventKind.INSTANCE, EventKind.EXCEPTION):
            if not self.recurring_external_id:
                raise MalformedEventError(
                    f"{self.kind.value} has no master reference", self.external_id
                )
            if self.recurrence_id is None:
                self.recurrence_id = self.start
        else:
            self.recurring_external_id = None

        if self.kind is not EventKind.MASTER:
            self.recurrence_rule = None
            self.anchor = None
        elif self.anchor is not None:
            if self.anchor.tzinfo is None:
                self.anchor = self.anchor.replace(tzinfo=UTC)
            if ensure_utc(self.anchor) != self.start:
                raise MalformedEventError("master anchor does not match its start", self.external_id)

        if self.recurrence_id is not None:
            self.recurrence_id = ensure_utc(self.recurrence_id)
        self.exdates = tuple(ensure_utc(d) for d in self.exdates)

    @property
    def is_master(self) -> bool:
        return self.kind is EventKind.MASTER

    @property
    def is_recurring(self) -> bool:
        return self.kind is not EventKind.STANDALONE

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def to_fields(self) -> dict[str, Any]:
        """Return the persisted field set for this event.

        `master_event_id` is left out; only the reconciler can resolve it.
        """
        return {
            "recurring_external_id": self.recurring_external_id,
            "title": self.title,
            "description": self.description,
            "location": self.location,
            "start": self.start,
            "end": self.end,
            "all_day": self.all_day,
            "is_master": self.is_master,
            "is_recurring": self.is_recurring,
            "recurrence_rule": self.recurrence_rule,
            "sequence": self.sequence,
            "status": self.status,
            "organizer": self.organizer,
            "attendees": list(self.attendees),
        }


@dataclass
class CalendarEvent:
    """Persisted event row."""

    id: str
    feed_id: str
    external_id: str
    start: datetime
    end: datetime
    title: str | None = None
    description: str | None = None
    location: str | None = None
    all_day: bool = False
    is_master: bool = False
    is_recurring: bool = False
    recurrence_rule: str | None = None
    master_event_id: str | None = None
    recurring_external_id: str | None = None
    sequence: int | None = None
    status: str | None = None
    organizer: str | None = None
    attendees: list[dict[str, Any]] = field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def field_values(self) -> dict[str, Any]:
        """Return the replaceable fields (everything but identity and bookkeeping)."""
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if f.name not in _IDENTITY_FIELDS
        }

    def with_fields(self, values: dict[str, Any], updated_at: datetime) -> CalendarEvent:
        """Return a copy whose replaceable fields are exactly `values`."""
        data = _replaceable_defaults()
        data.update({k: v for k, v in values.items() if k in REPLACEABLE_FIELDS})
        return replace(self, **data, updated_at=updated_at)


_IDENTITY_FIELDS = frozenset({"id", "feed_id", "external_id", "created_at", "updated_at"})

REPLACEABLE_FIELDS: tuple[str, ...] = tuple(
    f.name for f in fields(CalendarEvent) if f.name not in _IDENTITY_FIELDS
)


def _replaceable_defaults() -> dict[str, Any]:
    defaults: dict[str, Any] = {}
    for f in fields(CalendarEvent):
        if f.name not in REPLACEABLE_FIELDS:
            continue
        if f.default_factory is not MISSING:
            defaults[f.name] = f.default_factory()
        else:
            defaults[f.name] = f.default
    return defaults


@dataclass
class Feed:
    """A remote calendar synchronized into the local store.

    `credentials` is supplied at runtime and never persisted.
    """

    id: str
    provider_type: ProviderType
    calendar: str
    url: str = ""
    cursor: str | None = None
    last_sync: datetime | None = None
    credentials: Any = field(default=None, repr=False, compare=False)


@dataclass
class FetchResult:
    """Outcome of one provider fetch."""

    events: list[NormalizedEvent] = field(default_factory=list)
    deleted_external_ids: list[str] = field(default_factory=list)
    next_cursor: str | None = None
    # True when the provider only reported changes since a cursor
    incremental: bool = False
    skipped: int = 0


@dataclass
class SyncResult:
    """Outcome of one reconciliation pass."""

    added: list[CalendarEvent] = field(default_factory=list)
    updated: list[CalendarEvent] = field(default_factory=list)
    deleted_ids: list[str] = field(default_factory=list)
    skipped: int = 0
    incremental: bool = False

    def counts(self) -> dict[str, int]:
        """Summary handed back to callers; no per-record detail."""
        return {
            "added": len(self.added),
            "updated": len(self.updated),
            "deleted": len(self.deleted_ids),
            "skipped": self.skipped,
        }
