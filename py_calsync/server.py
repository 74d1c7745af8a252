"""HTTP trigger for sync passes.

Endpoints:
    POST /feeds/{feed_id}/sync             run a pass and return its counts
    POST /feeds/{feed_id}/sync?wait=false  start a pass in the background
    GET  /feeds                            list feeds and their sync state

A running pass for the same feed is joined unless ``coalesce=false`` is
given, in which case the request is answered with 409.
"""

from __future__ import annotations

import logging

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from .errors import (
    AuthError,
    CalSyncError,
    FeedNotFoundError,
    ProviderError,
    SyncInProgressError,
    SyncTimeoutError,
)
from .service import SyncService

logger = logging.getLogger("py_calsync.server")


def _flag(request: Request, name: str) -> bool | None:
    value = request.query_params.get(name)
    if value is None:
        return None
    return value.strip().lower() not in ("0", "false", "no", "off")


def error_response(err: CalSyncError) -> JSONResponse:
    """Map a sync error to an HTTP response.

    The body never carries per-record details.
    """
    if isinstance(err, FeedNotFoundError):
        return JSONResponse({"ok": False, "error": str(err)}, status_code=404)
    if isinstance(err, SyncInProgressError):
        return JSONResponse({"ok": False, "error": str(err)}, status_code=409)
    if isinstance(err, AuthError):
        return JSONResponse(
            {"ok": False, "error": "provider rejected the credentials", "reauthenticate": True},
            status_code=401,
        )
    if isinstance(err, SyncTimeoutError):
        return JSONResponse({"ok": False, "error": str(err)}, status_code=504)
    if isinstance(err, ProviderError):
        return JSONResponse({"ok": False, "error": f"provider error: {err}"}, status_code=502)
    return JSONResponse({"ok": False, "error": str(err)}, status_code=500)


class SyncHandler:
    """Request handlers around a `SyncService`."""

    def __init__(self, service: SyncService) -> None:
        self.service = service

    async def handle_sync(self, request: Request) -> JSONResponse:
        """Handle POST /feeds/{feed_id}/sync."""
        feed_id = request.path_params["feed_id"]

        try:
            if _flag(request, "wait") is False:
                # Surface unknown feeds before going to the background
                await self.service.store.get_feed(feed_id)
                started = self.service.start_sync(feed_id)
                return JSONResponse({"ok": True, "started": started}, status_code=202)

            result = await self.service.sync(feed_id, coalesce=_flag(request, "coalesce"))
        except CalSyncError as e:
            logger.info(f"Sync request for feed {feed_id} failed: {e}")
            return error_response(e)

        return JSONResponse(
            {"ok": True, "incremental": result.incremental, **result.counts()}
        )

    async def handle_list_feeds(self, request: Request) -> JSONResponse:
        """Handle GET /feeds."""
        feeds = await self.service.list_feeds()
        return JSONResponse(
            [
                {
                    "id": feed.id,
                    "provider_type": feed.provider_type.value,
                    "calendar": feed.calendar,
                    "last_sync": feed.last_sync.isoformat() if feed.last_sync else None,
                    "incremental": feed.cursor is not None,
                    "syncing": self.service.is_syncing(feed.id),
                }
                for feed in feeds
            ]
        )


def create_app(service: SyncService, debug: bool = False) -> Starlette:
    """Create the Starlette application."""
    handler = SyncHandler(service)
    return Starlette(
        debug=debug,
        routes=[
            Route("/feeds/{feed_id}/sync", handler.handle_sync, methods=["POST"]),
            Route("/feeds", handler.handle_list_feeds, methods=["GET"]),
        ],
    )
