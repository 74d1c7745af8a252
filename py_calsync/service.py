"""Per-feed sync orchestration."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable, Mapping
from typing import Any

from .config import SyncConfig, env_credentials_resolver
from .debug import log_context
from .errors import CalSyncError, SyncInProgressError, SyncTimeoutError
from .models import Feed, ProviderType, SyncResult
from .providers import ProviderAdapter, default_adapters
from .reconciler import SyncReconciler
from .store import EventStore

logger = logging.getLogger("py_calsync.service")

CredentialsResolver = Callable[[Feed], Any]


class SyncService:
    """Run sync passes, at most one per feed at a time.

    A request for a feed whose pass is still running either joins that pass
    or is rejected with `SyncInProgressError`. Every pass is bounded by the
    configured deadline.
    """

    def __init__(
        self,
        store: EventStore,
        adapters: Mapping[ProviderType, ProviderAdapter] | None = None,
        config: SyncConfig | None = None,
        credentials_resolver: CredentialsResolver = env_credentials_resolver,
    ) -> None:
        """Initialize the service.

        Args:
            store: Local event store
            adapters: Adapter per provider type (defaults to CalDAV and Graph)
            config: Sync configuration (uses default if None)
            credentials_resolver: Returns the credentials of a feed, may be async
        """
        self.store = store
        self.config = config or SyncConfig()
        self.adapters = dict(adapters) if adapters is not None else default_adapters(self.config)
        self.credentials_resolver = credentials_resolver
        self._inflight: dict[str, asyncio.Task[SyncResult]] = {}

    def is_syncing(self, feed_id: str) -> bool:
        task = self._inflight.get(feed_id)
        return task is not None and not task.done()

    async def sync(self, feed_id: str, coalesce: bool | None = None) -> SyncResult:
        """Synchronize one feed.

        Args:
            feed_id: Feed to synchronize
            coalesce: Join a running pass instead of failing (defaults to
                the configured behavior)

        Returns:
            Result of the pass (the joined one when coalescing)

        Raises:
            FeedNotFoundError: Unknown feed
            SyncInProgressError: A pass is running and coalescing is off
            SyncTimeoutError: The pass exceeded its deadline
            ProviderError: The provider fetch failed
        """
        if coalesce is None:
            coalesce = self.config.coalesce_concurrent_syncs

        task = self._inflight.get(feed_id)
        if task is not None and not task.done():
            if not coalesce:
                raise SyncInProgressError(feed_id)
            logger.info(
                f"Joining running sync of feed {feed_id}", extra=log_context(feed_id=feed_id)
            )
        else:
            task = self._start(feed_id)

        # A cancelled caller must not cancel a pass others may be waiting on
        return await asyncio.shield(task)

    def start_sync(self, feed_id: str) -> bool:
        """Start a pass in the background unless one is running.

        Fire-and-forget: the outcome is only logged. Failures of a
        background pass are not reported to anyone.

        Returns:
            True if a new pass was started
        """
        if self.is_syncing(feed_id):
            return False
        self._start(feed_id)
        return True

    def _start(self, feed_id: str) -> asyncio.Task[SyncResult]:
        task = asyncio.create_task(self._run(feed_id), name=f"sync-{feed_id}")
        self._inflight[feed_id] = task

        def finished(t: asyncio.Task[SyncResult]) -> None:
            if self._inflight.get(feed_id) is t:
                del self._inflight[feed_id]
            if not t.cancelled() and t.exception() is not None:
                # Retrieved here so background passes do not warn on exit
                logger.debug(
                    f"Sync of feed {feed_id} ended with {t.exception()!r}",
                    extra=log_context(feed_id=feed_id),
                )

        task.add_done_callback(finished)
        return task

    async def _run(self, feed_id: str) -> SyncResult:
        context = log_context(feed_id=feed_id)
        feed = await self.store.get_feed(feed_id)

        adapter = self.adapters.get(feed.provider_type)
        if adapter is None:
            raise CalSyncError(f"no adapter for provider type {feed.provider_type.value}")

        credentials = self.credentials_resolver(feed)
        if inspect.isawaitable(credentials):
            credentials = await credentials
        feed.credentials = credentials

        reconciler = SyncReconciler(self.store, adapter, self.config)
        try:
            return await asyncio.wait_for(reconciler.sync(feed), timeout=self.config.sync_timeout)
        except TimeoutError as e:
            logger.error(
                f"Sync of feed {feed_id} exceeded {self.config.sync_timeout}s", extra=context
            )
            raise SyncTimeoutError(f"sync of feed {feed_id!r} timed out") from e

    async def add_feed(self, feed: Feed) -> Feed:
        """Register or update a feed."""
        return await self.store.save_feed(feed)

    async def list_feeds(self) -> list[Feed]:
        return await self.store.list_feeds()
