"""Recurrence rule translation.

The normalized rule string (RFC 5545 RRULE value, e.g.
``FREQ=WEEKLY;BYDAY=MO,WE;COUNT=4``) is what the local store keeps.
`RecurrenceRule` is the structured form providers hand us: CalDAV gives an
`icalendar` ``vRecur``, the Graph API gives a ``patternedRecurrence`` JSON
object.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, time
from typing import Any

from dateutil.parser import isoparse

logger = logging.getLogger("py_calsync.recurrence")

UNTIL_FORMAT = "%Y%m%dT%H%M%SZ"

# Output order of the rule string; FREQ always first
KEY_ORDER = (
    "FREQ",
    "INTERVAL",
    "COUNT",
    "UNTIL",
    "BYMONTH",
    "BYMONTHDAY",
    "BYDAY",
    "BYWEEKNO",
    "BYYEARDAY",
    "BYSETPOS",
    "WKST",
)

_INT_LIST_FIELDS = ("bymonth", "bymonthday", "byweekno", "byyearday", "bysetpos")

_BYDAY_RE = re.compile(r"^([+-]?\d{1,2})?(MO|TU|WE|TH|FR|SA|SU)$")


@dataclass
class RecurrenceRule:
    """Structured recurrence rule.

    `until` is always an aware UTC datetime with whole seconds. List fields
    are empty when the rule does not constrain them.
    """

    freq: str | None = None
    interval: int = 1
    count: int | None = None
    until: datetime | None = None
    bymonth: list[int] = field(default_factory=list)
    bymonthday: list[int] = field(default_factory=list)
    byday: list[str] = field(default_factory=list)
    byweekno: list[int] = field(default_factory=list)
    byyearday: list[int] = field(default_factory=list)
    bysetpos: list[int] = field(default_factory=list)
    wkst: str | None = None

    def __post_init__(self) -> None:
        if self.freq:
            self.freq = self.freq.upper()
        self.byday = [day.upper() for day in self.byday]
        if self.wkst:
            self.wkst = self.wkst.upper()

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> RecurrenceRule:
        """Build a rule from a mapping with case-insensitive keys.

        Values may be scalars, lists or comma-separated strings. Unknown keys
        are ignored.

        Raises:
            ValueError: If a value cannot be interpreted
        """
        values = {str(k).lower(): v for k, v in data.items()}
        rule = cls()

        freq = _first(values.get("freq"))
        if freq:
            rule.freq = str(freq).upper()

        interval = _first(values.get("interval"))
        if interval:
            rule.interval = int(interval)

        count = _first(values.get("count"))
        if count:
            rule.count = int(count)

        until = _first(values.get("until"))
        if until:
            rule.until = normalize_until(until)

        for name in _INT_LIST_FIELDS:
            raw = values.get(name)
            if raw:
                setattr(rule, name, [int(v) for v in _as_list(raw)])

        byday = values.get("byday")
        if byday:
            rule.byday = [str(v).upper() for v in _as_list(byday)]

        wkst = _first(values.get("wkst"))
        if wkst:
            rule.wkst = str(wkst).upper()

        return rule

    @classmethod
    def from_ical(cls, vrecur: Mapping[str, Any]) -> RecurrenceRule:
        """Build a rule from an `icalendar` ``vRecur`` value."""
        return cls.from_mapping(vrecur)


def _first(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return value[0] if value else None
    return value


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, (list, tuple)):
        items: list[Any] = []
        for item in value:
            items.extend(_as_list(item))
        return items
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return [value]


def normalize_until(value: Any) -> datetime:
    """Normalize an UNTIL value to an aware UTC datetime without microseconds.

    Accepts datetimes (naive ones are taken as UTC), dates (UTC midnight),
    ``YYYYMMDD[THHMMSS[Z]]`` strings and ISO 8601 strings.

    Raises:
        ValueError: If the value cannot be interpreted
    """
    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=UTC)
    elif isinstance(value, date):
        dt = datetime.combine(value, time.min, tzinfo=UTC)
    elif isinstance(value, str):
        dt = _parse_until_string(value.strip())
    else:
        raise ValueError(f"unsupported UNTIL value: {value!r}")
    return dt.astimezone(UTC).replace(microsecond=0)


def _parse_until_string(value: str) -> datetime:
    compact = value.rstrip("Z")
    if compact.isdigit() and len(compact) == 8:
        return datetime.strptime(compact, "%Y%m%d").replace(tzinfo=UTC)
    if len(compact) == 15 and compact[8] == "T":
        return datetime.strptime(compact, "%Y%m%dT%H%M%S").replace(tzinfo=UTC)
    parsed = isoparse(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def encode(rule: RecurrenceRule | Mapping[str, Any] | None) -> str:
    """Encode a structured rule as a normalized rule string.

    Returns an empty string when no valid rule can be produced (missing
    FREQ or uninterpretable values); the reason is logged.
    """
    if rule is None:
        return ""

    if not isinstance(rule, RecurrenceRule):
        try:
            rule = RecurrenceRule.from_mapping(rule)
        except (TypeError, ValueError) as e:
            logger.error(f"Failed to read recurrence rule {dict(rule)!r}: {e}")
            return ""

    if not rule.freq:
        logger.warning(f"Missing frequency in recurrence rule: {rule!r}")
        return ""

    values: dict[str, str] = {"FREQ": rule.freq.upper()}

    if rule.interval and rule.interval > 1:
        values["INTERVAL"] = str(rule.interval)

    if rule.count:
        values["COUNT"] = str(rule.count)

    if rule.until is not None:
        values["UNTIL"] = normalize_until(rule.until).strftime(UNTIL_FORMAT)

    for name in _INT_LIST_FIELDS:
        items = getattr(rule, name)
        if items:
            values[name.upper()] = ",".join(str(v) for v in items)

    if rule.byday:
        values["BYDAY"] = ",".join(day.upper() for day in rule.byday)

    if rule.wkst:
        values["WKST"] = rule.wkst.upper()

    return ";".join(f"{key}={values[key]}" for key in KEY_ORDER if key in values)


def decode(rule_string: str | None) -> RecurrenceRule | None:
    """Decode a normalized rule string.

    Unknown keys are ignored. Returns None for an empty string or when a
    value cannot be parsed.
    """
    if not rule_string:
        return None

    text = rule_string.strip()
    if text.upper().startswith("RRULE:"):
        text = text[len("RRULE:"):]

    rule = RecurrenceRule()
    try:
        for part in text.split(";"):
            key, _, value = part.partition("=")
            key = key.strip().lower()
            value = value.strip()
            if not key or not value:
                continue

            if key == "freq":
                rule.freq = value.upper()
            elif key == "interval":
                rule.interval = int(value)
            elif key == "count":
                rule.count = int(value)
            elif key == "until":
                rule.until = normalize_until(value)
            elif key in _INT_LIST_FIELDS:
                setattr(rule, key, [int(v) for v in value.split(",")])
            elif key == "byday":
                rule.byday = [v.strip().upper() for v in value.split(",")]
            elif key == "wkst":
                rule.wkst = value.upper()
    except ValueError as e:
        logger.error(f"Failed to decode recurrence rule {rule_string!r}: {e}")
        return None

    return rule


# Graph API patternedRecurrence

GRAPH_WEEKDAYS = {
    "monday": "MO",
    "tuesday": "TU",
    "wednesday": "WE",
    "thursday": "TH",
    "friday": "FR",
    "saturday": "SA",
    "sunday": "SU",
}
ICAL_WEEKDAYS = {v: k for k, v in GRAPH_WEEKDAYS.items()}

GRAPH_WEEK_INDEX = {"first": 1, "second": 2, "third": 3, "fourth": 4, "last": -1}
GRAPH_INDEX_NAMES = {v: k for k, v in GRAPH_WEEK_INDEX.items()}


def graph_recurrence_to_rule(recurrence: Mapping[str, Any]) -> RecurrenceRule | None:
    """Convert a Graph ``patternedRecurrence`` object to a structured rule.

    Returns None for pattern types that have no RRULE equivalent.

    Raises:
        ValueError: If the pattern carries an unknown weekday or index
    """
    pattern = recurrence.get("pattern") or {}
    rng = recurrence.get("range") or {}
    pattern_type = pattern.get("type")

    rule = RecurrenceRule(interval=max(int(pattern.get("interval") or 1), 1))
    days = [_graph_weekday(d) for d in pattern.get("daysOfWeek") or []]

    if pattern_type == "daily":
        rule.freq = "DAILY"
    elif pattern_type == "weekly":
        rule.freq = "WEEKLY"
        rule.byday = days
        if pattern.get("firstDayOfWeek"):
            rule.wkst = _graph_weekday(pattern["firstDayOfWeek"])
    elif pattern_type == "absoluteMonthly":
        rule.freq = "MONTHLY"
        rule.bymonthday = [int(pattern["dayOfMonth"])]
    elif pattern_type == "relativeMonthly":
        rule.freq = "MONTHLY"
        rule.byday = days
        rule.bysetpos = [_graph_index(pattern.get("index"))]
    elif pattern_type == "absoluteYearly":
        rule.freq = "YEARLY"
        rule.bymonth = [int(pattern["month"])]
        rule.bymonthday = [int(pattern["dayOfMonth"])]
    elif pattern_type == "relativeYearly":
        rule.freq = "YEARLY"
        rule.bymonth = [int(pattern["month"])]
        rule.byday = days
        rule.bysetpos = [_graph_index(pattern.get("index"))]
    else:
        logger.warning(f"Unsupported Graph recurrence pattern type: {pattern_type!r}")
        return None

    range_type = rng.get("type")
    if range_type == "endDate" and rng.get("endDate"):
        # The end date is inclusive; cover the whole day
        end_date = date.fromisoformat(str(rng["endDate"])[:10])
        rule.until = datetime.combine(end_date, time(23, 59, 59), tzinfo=UTC)
    elif range_type == "numbered" and rng.get("numberOfOccurrences"):
        rule.count = int(rng["numberOfOccurrences"])

    return rule


def _graph_weekday(name: str) -> str:
    try:
        return GRAPH_WEEKDAYS[str(name).lower()]
    except KeyError:
        raise ValueError(f"unknown Graph weekday: {name!r}") from None


def _graph_index(name: str | None) -> int:
    try:
        return GRAPH_WEEK_INDEX[str(name or "first").lower()]
    except KeyError:
        raise ValueError(f"unknown Graph week index: {name!r}") from None


def rule_to_graph_recurrence(rule: RecurrenceRule, start_date: date) -> dict[str, Any]:
    """Convert a structured rule to a Graph ``patternedRecurrence`` object.

    Args:
        rule: Structured rule
        start_date: Date of the series' first occurrence (range start)

    Raises:
        ValueError: If the rule uses features Graph cannot express
    """
    freq = (rule.freq or "").upper()
    pattern: dict[str, Any] = {"interval": max(rule.interval, 1)}

    weekdays: list[str] = []
    positions: list[int] = list(rule.bysetpos)
    for value in rule.byday:
        match = _BYDAY_RE.match(value)
        if not match:
            raise ValueError(f"invalid BYDAY value: {value!r}")
        ordinal, day = match.groups()
        if ordinal:
            positions.append(int(ordinal))
        weekdays.append(ICAL_WEEKDAYS[day])

    if freq == "DAILY":
        pattern["type"] = "daily"
    elif freq == "WEEKLY":
        pattern["type"] = "weekly"
        pattern["daysOfWeek"] = weekdays or [ICAL_WEEKDAYS[_weekday_code(start_date)]]
        pattern["firstDayOfWeek"] = ICAL_WEEKDAYS[rule.wkst] if rule.wkst else "sunday"
    elif freq in ("MONTHLY", "YEARLY"):
        relative = bool(weekdays)
        prefix = "relative" if relative else "absolute"
        pattern["type"] = f"{prefix}{'Monthly' if freq == 'MONTHLY' else 'Yearly'}"
        if relative:
            pattern["daysOfWeek"] = weekdays
            pattern["index"] = _index_name(positions[0] if positions else 1)
        else:
            pattern["dayOfMonth"] = rule.bymonthday[0] if rule.bymonthday else start_date.day
        if freq == "YEARLY":
            pattern["month"] = rule.bymonth[0] if rule.bymonth else start_date.month
    else:
        raise ValueError(f"Graph recurrence cannot express FREQ={freq or '(none)'}")

    rng: dict[str, Any] = {"startDate": start_date.isoformat()}
    if rule.count:
        rng["type"] = "numbered"
        rng["numberOfOccurrences"] = rule.count
    elif rule.until is not None:
        rng["type"] = "endDate"
        rng["endDate"] = normalize_until(rule.until).date().isoformat()
    else:
        rng["type"] = "noEnd"

    return {"pattern": pattern, "range": rng}


def _weekday_code(day: date) -> str:
    return ("MO", "TU", "WE", "TH", "FR", "SA", "SU")[day.weekday()]


def _index_name(position: int) -> str:
    try:
        return GRAPH_INDEX_NAMES[position]
    except KeyError:
        raise ValueError(f"Graph recurrence cannot express week index {position}") from None
