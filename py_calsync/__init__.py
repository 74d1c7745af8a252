"""Calendar synchronization and recurrence engine for CalDAV and Graph calendars."""

from .config import SyncConfig
from .errors import (
    AuthError,
    CalSyncError,
    DuplicateEventError,
    FeedNotFoundError,
    MalformedEventError,
    ProviderError,
    SyncInProgressError,
    SyncTimeoutError,
)
from .models import (
    CalendarEvent,
    EventKind,
    Feed,
    FetchResult,
    NormalizedEvent,
    ProviderType,
    SyncResult,
)
from .reconciler import SyncReconciler
from .service import SyncService

__version__ = "0.1.0"

__all__ = [
    "SyncConfig",
    "AuthError",
    "CalSyncError",
    "DuplicateEventError",
    "FeedNotFoundError",
    "MalformedEventError",
    "ProviderError",
    "SyncInProgressError",
    "SyncTimeoutError",
    "CalendarEvent",
    "EventKind",
    "Feed",
    "FetchResult",
    "NormalizedEvent",
    "ProviderType",
    "SyncResult",
    "SyncReconciler",
    "SyncService",
]
