"""Tests for local recurrence expansion."""

from datetime import UTC, date, datetime, timedelta
from zoneinfo import ZoneInfo

from py_calsync.models import EventKind, NormalizedEvent
from py_calsync.recurrence import RecurrenceExpander, instance_external_id
from py_calsync.recurrence import expander as expander_module


def make_master(rule, start, end, external_id="M1", **kwargs):
    return NormalizedEvent(
        external_id=external_id,
        kind=EventKind.MASTER,
        start=start,
        end=end,
        title="Standup",
        recurrence_rule=rule,
        **kwargs,
    )


def test_daily_week_yields_seven_instances():
    """Test a daily rule over a seven day window, both bounds inclusive."""
    day = datetime(2024, 1, 1, 9, 0, tzinfo=UTC)
    master = make_master("FREQ=DAILY;INTERVAL=1", day, day + timedelta(minutes=15))

    instances = RecurrenceExpander().expand(master, day, day + timedelta(days=6))

    assert len(instances) == 7
    assert [i.start for i in instances] == [day + timedelta(days=n) for n in range(7)]
    for instance in instances:
        assert instance.kind is EventKind.INSTANCE
        assert instance.recurring_external_id == "M1"
        assert instance.end - instance.start == timedelta(minutes=15)
        assert instance.title == "Standup"
        assert not instance.is_master


def test_weekly_count_example():
    """Test that COUNT limits a weekly rule on two weekdays."""
    master = make_master(
        "FREQ=WEEKLY;BYDAY=MO,WE;COUNT=4",
        datetime(2024, 1, 1, 9, 0, tzinfo=UTC),
        datetime(2024, 1, 1, 10, 0, tzinfo=UTC),
    )

    instances = RecurrenceExpander().expand(
        master, datetime(2024, 1, 1, tzinfo=UTC), datetime(2024, 1, 31, tzinfo=UTC)
    )

    assert [i.start.date() for i in instances] == [
        date(2024, 1, 1),
        date(2024, 1, 3),
        date(2024, 1, 8),
        date(2024, 1, 10),
    ]
    for instance in instances:
        assert (instance.start.hour, instance.end.hour) == (9, 10)


def test_instance_ids_are_deterministic():
    """Test that expanding the same window twice yields identical ids."""
    day = datetime(2024, 1, 1, 9, 0, tzinfo=UTC)
    master = make_master("FREQ=DAILY", day, day + timedelta(hours=1))
    expander = RecurrenceExpander()

    first = [i.external_id for i in expander.expand(master, day, day + timedelta(days=3))]
    second = [i.external_id for i in expander.expand(master, day, day + timedelta(days=3))]

    assert first == second
    assert first[0] == "M1_20240101T090000Z"
    assert len(set(first)) == 4


def test_all_day_instance_ids():
    """Test that all-day instances are keyed by date only."""
    start = datetime(2024, 2, 1, tzinfo=UTC)
    assert instance_external_id("M1", start, all_day=True) == "M1_20240201"
    assert instance_external_id("M1", start, all_day=False) == "M1_20240201T000000Z"


def test_exdates_are_skipped():
    """Test that excluded occurrences are not generated."""
    day = datetime(2024, 1, 1, 9, 0, tzinfo=UTC)
    master = make_master(
        "FREQ=DAILY;COUNT=5",
        day,
        day + timedelta(hours=1),
        exdates=(day + timedelta(days=2),),
    )

    instances = RecurrenceExpander().expand(master, day, day + timedelta(days=10))

    assert [i.start.day for i in instances] == [1, 2, 4, 5]


def test_window_excludes_earlier_occurrences():
    """Test that occurrences before the window are not returned."""
    day = datetime(2024, 1, 1, 9, 0, tzinfo=UTC)
    master = make_master("FREQ=WEEKLY", day, day + timedelta(hours=1))

    instances = RecurrenceExpander().expand(
        master, datetime(2024, 2, 1, tzinfo=UTC), datetime(2024, 2, 29, tzinfo=UTC)
    )

    assert [i.start.day for i in instances] == [5, 12, 19, 26]


def test_invalid_rule_yields_nothing(caplog):
    """Test that an unusable rule produces no instances and a warning."""
    day = datetime(2024, 1, 1, 9, 0, tzinfo=UTC)
    master = make_master("FREQ=SOMETIMES;COUNT=x", day, day)

    instances = RecurrenceExpander().expand(master, day, day + timedelta(days=7))

    assert instances == []
    assert "Skipping expansion of M1" in caplog.text


def test_unknown_frequency_yields_nothing(caplog):
    """Test that a syntactically valid but unknown frequency is rejected."""
    day = datetime(2024, 1, 1, 9, 0, tzinfo=UTC)
    master = make_master("FREQ=FORTNIGHTLY", day, day)

    assert RecurrenceExpander().expand(master, day, day + timedelta(days=7)) == []
    assert "Skipping expansion of M1" in caplog.text


def test_max_instances_caps_expansion():
    """Test that an unbounded rule stops at the cap."""
    day = datetime(2024, 1, 1, tzinfo=UTC)
    master = make_master("FREQ=DAILY", day, day)

    instances = RecurrenceExpander(max_instances=10).expand(master, day, day + timedelta(days=365))

    assert len(instances) == 10


def test_non_master_expands_to_nothing():
    """Test that standalone events have no instances."""
    day = datetime(2024, 1, 1, tzinfo=UTC)
    event = NormalizedEvent(external_id="S1", kind=EventKind.STANDALONE, start=day, end=day)

    assert RecurrenceExpander().expand(event, day, day + timedelta(days=7)) == []


def test_zoned_anchor_keeps_wall_clock_time_across_dst():
    """Test that a Europe/Berlin series stays at 09:00 local after the spring change."""
    berlin = ZoneInfo("Europe/Berlin")
    anchor = datetime(2024, 3, 25, 9, 0, tzinfo=berlin)
    master = make_master(
        "FREQ=WEEKLY",
        anchor,
        anchor + timedelta(hours=1),
        anchor=anchor,
        exdates=(datetime(2024, 4, 8, 7, 0, tzinfo=UTC),),
    )

    instances = RecurrenceExpander().expand(
        master, datetime(2024, 3, 20, tzinfo=UTC), datetime(2024, 4, 16, tzinfo=UTC)
    )

    assert [i.start for i in instances] == [
        datetime(2024, 3, 25, 8, 0, tzinfo=UTC),
        datetime(2024, 4, 1, 7, 0, tzinfo=UTC),
        datetime(2024, 4, 15, 7, 0, tzinfo=UTC),
    ]
    assert [i.external_id for i in instances] == [
        "M1_20240325T080000Z",
        "M1_20240401T070000Z",
        "M1_20240415T070000Z",
    ]
    assert instances[1].recurrence_id == datetime(2024, 4, 1, 7, 0, tzinfo=UTC)
    assert instances[1].duration == timedelta(hours=1)


def test_sub_hourly_rule_is_not_expanded(caplog):
    """Test that minutely rules are rejected instead of walked."""
    day = datetime(2020, 1, 1, tzinfo=UTC)
    master = make_master("FREQ=MINUTELY", day, day)

    instances = RecurrenceExpander().expand(
        master, datetime(2024, 1, 1, tzinfo=UTC), datetime(2024, 1, 2, tzinfo=UTC)
    )

    assert instances == []
    assert "MINUTELY rules are not expanded" in caplog.text


def test_occurrences_before_window_are_capped(caplog, monkeypatch):
    """Test that walking towards a distant window gives up after the cap."""
    monkeypatch.setattr(expander_module, "MAX_SKIPPED_OCCURRENCES", 100)
    day = datetime(2020, 1, 1, tzinfo=UTC)
    master = make_master("FREQ=HOURLY", day, day)

    instances = RecurrenceExpander().expand(
        master, datetime(2024, 1, 1, tzinfo=UTC), datetime(2024, 1, 2, tzinfo=UTC)
    )

    assert instances == []
    assert "Expansion stopped after 100 occurrences" in caplog.text
