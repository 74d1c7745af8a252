"""Configuration for calendar synchronization.

Defaults come from `CALSYNC_*` environment variables. Credentials are not
part of the configuration; see `env_credentials_resolver`.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any

from .models import Feed, ProviderType


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value else default


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if not value:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


CALSYNC_WINDOW_PAST_DAYS = _env_int("CALSYNC_WINDOW_PAST_DAYS", 365)
CALSYNC_WINDOW_FUTURE_DAYS = _env_int("CALSYNC_WINDOW_FUTURE_DAYS", 365)
CALSYNC_SYNC_TIMEOUT = _env_float("CALSYNC_SYNC_TIMEOUT", 300.0)
CALSYNC_REQUEST_TIMEOUT = _env_float("CALSYNC_REQUEST_TIMEOUT", 30.0)
CALSYNC_DEFAULT_TIMEZONE = os.getenv("CALSYNC_DEFAULT_TIMEZONE", "UTC")
CALSYNC_GRAPH_BASE_URL = os.getenv("CALSYNC_GRAPH_BASE_URL", "https://graph.microsoft.com/v1.0")
CALSYNC_GRAPH_PAGE_SIZE = _env_int("CALSYNC_GRAPH_PAGE_SIZE", 200)
CALSYNC_GRAPH_MAX_CONCURRENCY = _env_int("CALSYNC_GRAPH_MAX_CONCURRENCY", 4)
CALSYNC_DATABASE_URL = os.getenv("CALSYNC_DATABASE_URL", "sqlite:///calsync.db")
CALSYNC_COALESCE = _env_bool("CALSYNC_COALESCE", True)


@dataclass
class SyncConfig:
    """Settings shared by adapters, reconciler and service."""

    # Sync window around "now"
    window_past_days: int = CALSYNC_WINDOW_PAST_DAYS
    window_future_days: int = CALSYNC_WINDOW_FUTURE_DAYS

    # Overall deadline for one pass, and per HTTP request (seconds)
    sync_timeout: float = CALSYNC_SYNC_TIMEOUT
    request_timeout: float = CALSYNC_REQUEST_TIMEOUT

    # Zone for floating (naive) iCalendar times
    default_timezone: str = CALSYNC_DEFAULT_TIMEZONE

    # Graph API
    graph_base_url: str = CALSYNC_GRAPH_BASE_URL
    graph_page_size: int = CALSYNC_GRAPH_PAGE_SIZE
    graph_max_concurrency: int = CALSYNC_GRAPH_MAX_CONCURRENCY

    # Local store
    database_url: str = CALSYNC_DATABASE_URL

    # Join an in-flight pass instead of rejecting a second request
    coalesce_concurrent_syncs: bool = CALSYNC_COALESCE


def env_credentials_resolver(feed: Feed) -> Any:
    """Resolve credentials for a feed from the process environment.

    CalDAV feeds get a (username, password) pair for basic auth, Graph
    feeds get a bearer token string.
    """
    if feed.provider_type is ProviderType.CALDAV:
        return (
            os.getenv("CALSYNC_CALDAV_USERNAME", ""),
            os.getenv("CALSYNC_CALDAV_PASSWORD", ""),
        )
    return os.getenv("CALSYNC_GRAPH_TOKEN", "")
