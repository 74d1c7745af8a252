"""Provider adapter interface."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Protocol

from ..config import SyncConfig
from ..models import Feed, FetchResult


class ProviderAdapter(Protocol):
    """Remote calendar provider.

    Implementations fetch the events of one feed and normalize them. A
    fetch never writes to the local store.
    """

    async def fetch(
        self,
        feed: Feed,
        window_start: datetime,
        window_end: datetime,
        cursor: str | None = None,
    ) -> FetchResult:
        """Fetch remote events for a feed.

        Malformed records are logged and skipped. Transport and
        authentication failures are raised.

        Args:
            feed: Feed to fetch, with credentials attached
            window_start: Start of the sync window (UTC)
            window_end: End of the sync window (UTC)
            cursor: Opaque cursor from the previous pass, if any

        Returns:
            Normalized events, reported deletions and the next cursor

        Raises:
            AuthError: Credentials were rejected
            ProviderError: Provider unreachable or answered unexpectedly
        """
        ...


def sync_window(now: datetime | None = None, config: SyncConfig | None = None) -> tuple[datetime, datetime]:
    """Get the sync window around `now`.

    Args:
        now: Reference time (defaults to the current time)
        config: Supplies the number of days before and after `now`

    Returns:
        Tuple of (window_start, window_end) in UTC
    """
    config = config or SyncConfig()
    now = now or datetime.now(UTC)
    if now.tzinfo is None:
        now = now.replace(tzinfo=UTC)
    now = now.astimezone(UTC)
    return (
        now - timedelta(days=config.window_past_days),
        now + timedelta(days=config.window_future_days),
    )
