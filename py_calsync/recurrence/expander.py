"""Local expansion of recurring master events into concrete instances."""

from __future__ import annotations

import logging
from datetime import datetime

from dateutil.rrule import rrulestr

from ..debug import log_context
from ..models import EventKind, NormalizedEvent, ensure_utc
from . import codec

logger = logging.getLogger("py_calsync.recurrence")

DEFAULT_MAX_INSTANCES = 5000

# Occurrences before the window are walked one by one from DTSTART
MAX_SKIPPED_OCCURRENCES = 100_000

SUB_HOURLY_FREQUENCIES = frozenset({"MINUTELY", "SECONDLY"})


def instance_external_id(master_external_id: str, occurrence_start: datetime, all_day: bool) -> str:
    """Synthetic external id of one occurrence of a master.

    Depends only on the master id and the occurrence start, so expanding
    the same window twice yields the same ids.
    """
    occurrence_start = ensure_utc(occurrence_start)
    if all_day:
        return f"{master_external_id}_{occurrence_start:%Y%m%d}"
    return f"{master_external_id}_{occurrence_start:%Y%m%dT%H%M%SZ}"


class RecurrenceExpander:
    """Expand master events over a time window.

    Pure computation: no I/O and no knowledge of exceptions. Replacing a
    generated instance by its exception happens during reconciliation.
    """

    def __init__(self, max_instances: int = DEFAULT_MAX_INSTANCES) -> None:
        self.max_instances = max_instances

    def expand(
        self, master: NormalizedEvent, window_start: datetime, window_end: datetime
    ) -> list[NormalizedEvent]:
        """Produce the instances of `master` starting within the window.

        Both window bounds are inclusive. Occurrences listed in the master's
        EXDATEs are left out. A rule that cannot be parsed yields no
        instances and a warning.

        Args:
            master: Master event carrying a normalized recurrence rule
            window_start: Earliest occurrence start to include
            window_end: Latest occurrence start to include

        Returns:
            Instances ordered by start, master excluded
        """
        if not master.is_master:
            return []

        window_start = ensure_utc(window_start)
        window_end = ensure_utc(window_end)
        context = log_context(external_id=master.external_id)

        rule = codec.decode(master.recurrence_rule)
        rule_string = codec.encode(rule) if rule is not None else ""
        if not rule_string:
            logger.warning(
                f"Skipping expansion of {master.external_id}: invalid recurrence rule "
                f"{master.recurrence_rule!r}",
                extra=context,
            )
            return []

        if rule.freq in SUB_HOURLY_FREQUENCIES:
            logger.warning(
                f"Skipping expansion of {master.external_id}: {rule.freq} rules are not expanded",
                extra=context,
            )
            return []

        # Local DTSTART keeps occurrences on the same wall-clock time across DST
        dtstart = master.anchor if master.anchor is not None and not master.all_day else master.start

        try:
            recurrence = rrulestr(rule_string, dtstart=dtstart)
            occurrences = self._occurrences(recurrence, window_start, window_end)
        except (ValueError, TypeError, KeyError) as e:
            logger.warning(
                f"Skipping expansion of {master.external_id}: {e} (rule {rule_string!r})",
                extra=context,
            )
            return []

        excluded = set(master.exdates)
        duration = master.duration
        instances = []
        for start in occurrences:
            if start in excluded:
                continue
            instances.append(
                NormalizedEvent(
                    external_id=instance_external_id(master.external_id, start, master.all_day),
                    kind=EventKind.INSTANCE,
                    start=start,
                    end=start + duration,
                    title=master.title,
                    description=master.description,
                    location=master.location,
                    all_day=master.all_day,
                    recurring_external_id=master.external_id,
                    recurrence_id=start,
                    sequence=master.sequence,
                    status=master.status,
                    organizer=master.organizer,
                    attendees=list(master.attendees),
                )
            )
        return instances

    def _occurrences(self, recurrence, window_start: datetime, window_end: datetime) -> list[datetime]:
        found: list[datetime] = []
        skipped = 0
        for start in recurrence:
            if start > window_end:
                break
            if start < window_start:
                skipped += 1
                if skipped > MAX_SKIPPED_OCCURRENCES:
                    logger.warning(
                        f"Expansion stopped after {MAX_SKIPPED_OCCURRENCES} occurrences "
                        f"before {window_start.isoformat()}"
                    )
                    break
                continue
            if len(found) >= self.max_instances:
                logger.warning(
                    f"Expansion stopped after {self.max_instances} instances "
                    f"(window {window_start.isoformat()} - {window_end.isoformat()})"
                )
                break
            found.append(ensure_utc(start))
        return found
