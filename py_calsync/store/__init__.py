"""Local event persistence."""

from .base import EventStore
from .memory import MemoryEventStore
from .sql import SQLEventStore

__all__ = ["EventStore", "MemoryEventStore", "SQLEventStore"]
