"""Remote calendar provider adapters."""

from __future__ import annotations

from ..config import SyncConfig
from ..models import ProviderType
from .base import ProviderAdapter, sync_window
from .caldav import CalDAVAdapter
from .graph import GraphAdapter, GraphClient


def default_adapters(config: SyncConfig | None = None) -> dict[ProviderType, ProviderAdapter]:
    """Build one adapter per supported provider type."""
    return {
        ProviderType.CALDAV: CalDAVAdapter(config),
        ProviderType.GRAPH: GraphAdapter(config),
    }


__all__ = [
    "ProviderAdapter",
    "sync_window",
    "CalDAVAdapter",
    "GraphAdapter",
    "GraphClient",
    "default_adapters",
]
