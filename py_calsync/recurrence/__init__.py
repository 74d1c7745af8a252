"""Recurrence rule translation and local expansion."""

from .codec import (
    RecurrenceRule,
    decode,
    encode,
    graph_recurrence_to_rule,
    rule_to_graph_recurrence,
)
from .expander import RecurrenceExpander, instance_external_id
from .overrides import occurrence_key, substitute_exceptions

__all__ = [
    "RecurrenceRule",
    "decode",
    "encode",
    "graph_recurrence_to_rule",
    "rule_to_graph_recurrence",
    "RecurrenceExpander",
    "instance_external_id",
    "occurrence_key",
    "substitute_exceptions",
]
