"""Sync engine for pypan - one-directional local/remote synchronization."""

from .cache import DestinationCacheEntry, SourceCacheEntry, SyncCache
from .clients import (
    LocalSourceClient,
    ReadOnlyDestinationClient,
    ReadOnlySourceClient,
    RemoteDestinationClient,
)
from .engine import SyncConfig, SyncDirection, SyncEngine, SyncStats
from .entries import (
    DestinationEntry,
    SourceEntry,
    entry_less,
    entry_sort_key,
    sort_entries,
)

__all__ = [
    "SyncEngine",
    "SyncConfig",
    "SyncDirection",
    "SyncStats",
    "SyncCache",
    "SourceCacheEntry",
    "DestinationCacheEntry",
    "LocalSourceClient",
    "RemoteDestinationClient",
    "ReadOnlySourceClient",
    "ReadOnlyDestinationClient",
    "SourceEntry",
    "DestinationEntry",
    "entry_less",
    "entry_sort_key",
    "sort_entries",
]
