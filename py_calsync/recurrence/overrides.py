"""Replacement of generated instances by provider exceptions."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime

from ..models import EventKind, NormalizedEvent

logger = logging.getLogger("py_calsync.recurrence")

OccurrenceKey = tuple[str, datetime]


def occurrence_key(event: NormalizedEvent) -> OccurrenceKey | None:
    """Key identifying the occurrence an instance or exception stands for."""
    if event.kind not in (EventKind.INSTANCE, EventKind.EXCEPTION):
        return None
    return (event.recurring_external_id, event.recurrence_id)


def substitute_exceptions(events: Iterable[NormalizedEvent]) -> list[NormalizedEvent]:
    """Drop every instance that an exception overrides.

    An exception overrides the instance with the same master and original
    occurrence start. When a provider reports the same occurrence twice as
    an exception, the later one wins. Order of the remaining events is
    preserved.

    Args:
        events: Normalized events of one fetch

    Returns:
        Events with at most one entry per occurrence
    """
    events = list(events)

    exceptions: dict[OccurrenceKey, int] = {}
    for index, event in enumerate(events):
        if event.kind is EventKind.EXCEPTION:
            key = occurrence_key(event)
            if key in exceptions:
                logger.debug(f"Exception for {key[0]} at {key[1].isoformat()} reported twice")
            exceptions[key] = index

    if not exceptions:
        return events

    result = []
    for index, event in enumerate(events):
        key = occurrence_key(event)
        if key in exceptions:
            if event.kind is EventKind.INSTANCE or exceptions[key] != index:
                continue
        result.append(event)
    return result
