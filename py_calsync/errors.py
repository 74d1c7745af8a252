"""Error taxonomy for calendar synchronization.

Provider-level errors are fatal for a sync pass and leave the feed cursor
untouched. Record-level errors are recovered where they occur: the record
is logged and skipped, and the pass continues.
"""

from __future__ import annotations


class CalSyncError(Exception):
    """Base class for all synchronization errors."""


class ProviderError(CalSyncError):
    """Transient provider failure (network, 5xx, timeout, bad status).

    Fatal for the current pass. Safe to retry.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)

    def __str__(self) -> str:
        message = super().__str__()
        if self.status_code is not None:
            return f"{self.status_code}: {message}"
        return message


class AuthError(ProviderError):
    """Provider rejected the credentials (401/403 or login failure)."""


class SyncTimeoutError(ProviderError):
    """A sync pass exceeded its overall deadline."""


class MalformedEventError(CalSyncError):
    """A single remote record could not be normalized."""

    def __init__(self, message: str, external_id: str | None = None) -> None:
        self.external_id = external_id
        super().__init__(message)


class DuplicateEventError(CalSyncError):
    """A row with the same (feed_id, external_id) already exists."""

    def __init__(self, feed_id: str, external_id: str) -> None:
        self.feed_id = feed_id
        self.external_id = external_id
        super().__init__(f"event {external_id!r} already exists in feed {feed_id!r}")


class SyncInProgressError(CalSyncError):
    """A sync pass for the feed is already running."""

    def __init__(self, feed_id: str) -> None:
        self.feed_id = feed_id
        super().__init__(f"sync already in progress for feed {feed_id!r}")


class FeedNotFoundError(CalSyncError):
    """No feed is registered under the given id."""

    def __init__(self, feed_id: str) -> None:
        self.feed_id = feed_id
        super().__init__(f"feed not found: {feed_id!r}")
