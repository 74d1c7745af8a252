"""CalDAV provider adapter.

Fetches the calendar objects overlapping the sync window with a single
calendar-query REPORT and expands recurring masters locally. CalDAV has no
usable cursor for this purpose, so every pass is a full window fetch.
"""

from __future__ import annotations

import logging
from datetime import UTC, date, datetime, timedelta, tzinfo
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx
from icalendar import Calendar as iCalendar
from icalendar import Event as iEvent

from ..config import SyncConfig
from ..debug import log_context
from ..errors import AuthError, MalformedEventError, ProviderError
from ..internal import Client, HTTPError
from ..internal.elements import CALENDAR_DATA
from ..models import EventKind, Feed, FetchResult, NormalizedEvent, ensure_utc
from ..recurrence import RecurrenceExpander, RecurrenceRule, encode, instance_external_id
from ..recurrence import substitute_exceptions

logger = logging.getLogger("py_calsync.providers.caldav")

ONE_DAY = timedelta(days=1)


class CalDAVAdapter:
    """Provider adapter for CalDAV servers.

    Feed credentials are a ``(username, password)`` pair or an ``httpx.Auth``.
    """

    def __init__(
        self,
        config: SyncConfig | None = None,
        expander: RecurrenceExpander | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the adapter.

        Args:
            config: Sync configuration (uses default if None)
            expander: Recurrence expander for masters
            transport: HTTP transport override, mainly for tests
        """
        self.config = config or SyncConfig()
        self.expander = expander or RecurrenceExpander()
        self._transport = transport
        self._default_tz = _load_zone(self.config.default_timezone)

    def _http_client(self, feed: Feed) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            auth=_basic_auth(feed.credentials),
            timeout=self.config.request_timeout,
            transport=self._transport,
        )

    async def fetch(
        self,
        feed: Feed,
        window_start: datetime,
        window_end: datetime,
        cursor: str | None = None,
    ) -> FetchResult:
        """Fetch and normalize all events of the feed's calendar in the window.

        `cursor` is accepted for interface compatibility and ignored.
        """
        context = log_context(feed_id=feed.id)
        client = Client(self._http_client(feed), endpoint=feed.url)
        try:
            ms = await client.calendar_query(feed.calendar, window_start, window_end)
        except HTTPError as e:
            logger.error(f"CalDAV query for feed {feed.id} failed: {e}", extra=context)
            if e.is_auth_error:
                raise AuthError(f"CalDAV server rejected credentials: {e}", e.code) from e
            raise ProviderError(f"CalDAV query failed: {e}", e.code) from e
        except httpx.HTTPError as e:
            logger.error(f"CalDAV server unreachable for feed {feed.id}: {e}", extra=context)
            raise ProviderError(f"CalDAV request failed: {e}") from e
        except ValueError as e:
            logger.error(f"Unexpected CalDAV response for feed {feed.id}: {e}", extra=context)
            raise ProviderError(f"unexpected CalDAV response: {e}") from e
        finally:
            await client.close()

        result = FetchResult()
        events: list[NormalizedEvent] = []
        for response in ms.responses:
            if response.err() is not None:
                logger.warning(
                    f"Skipping {response.path} in feed {feed.id}: {response.err()}", extra=context
                )
                result.skipped += 1
                continue

            data = response.prop_text(CALENDAR_DATA)
            if not data:
                continue

            try:
                calendar = iCalendar.from_ical(data)
            except (ValueError, IndexError, KeyError) as e:
                logger.warning(
                    f"Skipping unparseable calendar object {response.path} in feed {feed.id}: {e}",
                    extra=context,
                )
                result.skipped += 1
                continue

            vevents = calendar.walk("VEVENT")
            series_all_day = _series_all_day(vevents)
            for vevent in vevents:
                try:
                    event = self.normalize(vevent, series_all_day.get(_text(vevent.get("UID"))))
                except MalformedEventError as e:
                    external_id = e.external_id or _text(vevent.get("UID"))
                    logger.warning(
                        f"Skipping malformed event {external_id or response.path} "
                        f"in feed {feed.id}: {e}",
                        extra=log_context(feed.id, external_id),
                    )
                    result.skipped += 1
                    continue

                events.append(event)
                if event.is_master:
                    events.extend(self.expander.expand(event, window_start, window_end))

        result.events = substitute_exceptions(events)
        logger.debug(
            f"Fetched {len(result.events)} events from {len(ms.responses)} calendar objects",
            extra=context,
        )
        return result

    def normalize(self, vevent: iEvent, series_all_day: bool | None = None) -> NormalizedEvent:
        """Convert one VEVENT into a normalized event.

        A VEVENT with a RECURRENCE-ID is an exception of the master with the
        same UID. A VEVENT with an RRULE is a master. Anything else is a
        standalone event.

        Args:
            vevent: Parsed VEVENT component
            series_all_day: Whether the master of this UID is all-day; an
                exception is keyed like the master's instances. Falls back
                to the RECURRENCE-ID value type when unknown.

        Returns:
            Normalized event

        Raises:
            MalformedEventError: The component cannot be normalized
        """
        uid = _text(vevent.get("UID"))
        if not uid:
            raise MalformedEventError("VEVENT has no UID")

        try:
            start, end, all_day, anchor = self._timespan(vevent)
            fields = self._fields(vevent)
            exdates = self._exdates(vevent)

            recurrence_id = vevent.get("RECURRENCE-ID")
            if recurrence_id is not None:
                original_value = recurrence_id.dt
                occurrence_all_day = (
                    series_all_day
                    if series_all_day is not None
                    else not isinstance(original_value, datetime)
                )
                if occurrence_all_day and isinstance(original_value, datetime):
                    original_value = original_value.date()
                original_start = self._to_utc(original_value)
                return NormalizedEvent(
                    external_id=instance_external_id(uid, original_start, occurrence_all_day),
                    kind=EventKind.EXCEPTION,
                    start=start,
                    end=end,
                    all_day=all_day,
                    recurring_external_id=uid,
                    recurrence_id=original_start,
                    **fields,
                )

            rrule = vevent.get("RRULE")
            if rrule is not None:
                if isinstance(rrule, list):
                    # Multiple RRULEs are not representable; the first one wins
                    rrule = rrule[0]
                rule_string = encode(RecurrenceRule.from_ical(rrule))
                if not rule_string:
                    raise MalformedEventError("invalid recurrence rule", uid)
                return NormalizedEvent(
                    external_id=uid,
                    kind=EventKind.MASTER,
                    start=start,
                    end=end,
                    all_day=all_day,
                    recurrence_rule=rule_string,
                    exdates=exdates,
                    anchor=anchor,
                    **fields,
                )

            return NormalizedEvent(
                external_id=uid,
                kind=EventKind.STANDALONE,
                start=start,
                end=end,
                all_day=all_day,
                **fields,
            )
        except MalformedEventError as e:
            if e.external_id is None:
                e.external_id = uid
            raise
        except (ValueError, TypeError, AttributeError) as e:
            raise MalformedEventError(str(e), uid) from e

    def _timespan(self, vevent: iEvent) -> tuple[datetime, datetime, bool, datetime | None]:
        """Return UTC start and end, the all-day flag and the local start.

        The local start is None for all-day events.
        """
        dtstart = vevent.get("DTSTART")
        if dtstart is None:
            raise MalformedEventError("VEVENT has no DTSTART")

        start_value = dtstart.dt
        duration = vevent.get("DURATION")
        duration_value: timedelta | None = duration.dt if duration is not None else None

        anchor = None
        all_day = _is_all_day(vevent)
        if all_day:
            if isinstance(start_value, datetime):
                start_value = start_value.date()
            start = self._to_utc(start_value)
        else:
            anchor = self._localize(start_value)
            start = ensure_utc(anchor)

        dtend = vevent.get("DTEND")
        if dtend is not None:
            end_value = dtend.dt
            if all_day and isinstance(end_value, datetime):
                end_value = end_value.date()
            end = self._to_utc(end_value)
        elif duration_value is not None:
            end = start + duration_value
        elif all_day:
            end = start + ONE_DAY
        else:
            end = start

        return start, end, all_day, anchor

    def _fields(self, vevent: iEvent) -> dict[str, Any]:
        sequence = vevent.get("SEQUENCE")
        organizer = vevent.get("ORGANIZER")

        attendees = vevent.get("ATTENDEE") or []
        if not isinstance(attendees, list):
            attendees = [attendees]

        return {
            "title": _text(vevent.get("SUMMARY")),
            "description": _text(vevent.get("DESCRIPTION")),
            "location": _text(vevent.get("LOCATION")),
            "sequence": int(sequence) if sequence is not None else None,
            "status": _text(vevent.get("STATUS")),
            "organizer": _address(organizer) if organizer is not None else None,
            "attendees": [_attendee(a) for a in attendees],
        }

    def _exdates(self, vevent: iEvent) -> tuple[datetime, ...]:
        exdate = vevent.get("EXDATE")
        if exdate is None:
            return ()
        if not isinstance(exdate, list):
            exdate = [exdate]
        return tuple(self._to_utc(value.dt) for entry in exdate for value in entry.dts)

    def _to_utc(self, value: datetime | date) -> datetime:
        """Convert an iCalendar date or date-time to UTC.

        Floating times are read in the configured default timezone.
        """
        if isinstance(value, datetime):
            value = self._localize(value)
        return ensure_utc(value)

    def _localize(self, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=self._default_tz)
        return value


def _is_all_day(vevent: iEvent) -> bool:
    dtstart = vevent.get("DTSTART")
    if dtstart is None:
        return False
    duration = vevent.get("DURATION")
    return not isinstance(dtstart.dt, datetime) or (duration is not None and duration.dt == ONE_DAY)


def _series_all_day(vevents: list[iEvent]) -> dict[str | None, bool]:
    """Map the UID of every master in a calendar object to its all-day flag."""
    flags = {}
    for vevent in vevents:
        if vevent.get("RRULE") is None or vevent.get("RECURRENCE-ID") is not None:
            continue
        try:
            flags[_text(vevent.get("UID"))] = _is_all_day(vevent)
        except (AttributeError, TypeError, ValueError):
            # The master itself is skipped as malformed later
            continue
    return flags


def _basic_auth(credentials: Any) -> httpx.Auth | None:
    if isinstance(credentials, httpx.Auth):
        return credentials
    if isinstance(credentials, (tuple, list)) and len(credentials) == 2 and credentials[0]:
        return httpx.BasicAuth(credentials[0], credentials[1])
    return None


def _load_zone(name: str) -> tzinfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone {name!r}, floating times are read as UTC")
        return UTC


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value)
    return text or None


def _address(value: Any) -> str:
    address = str(value)
    if address.lower().startswith("mailto:"):
        address = address[len("mailto:"):]
    return address


def _attendee(value: Any) -> dict[str, Any]:
    params = getattr(value, "params", {})
    attendee: dict[str, Any] = {"email": _address(value)}
    if params.get("CN"):
        attendee["name"] = str(params["CN"])
    if params.get("PARTSTAT"):
        attendee["status"] = str(params["PARTSTAT"]).lower()
    if params.get("ROLE"):
        attendee["role"] = str(params["ROLE"]).lower()
    return attendee
