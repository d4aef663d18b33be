"""Local storage for glotian: cache store, sync queue, activity log, eviction."""

from .base import (
    ActivityLogItem,
    CachedDeck,
    CachedFlashcard,
    CachedNote,
    CachedUserPreference,
    EvictionResult,
    StorageEstimate,
    SyncConflict,
    SyncQueueItem,
    SyncStats,
)

__all__ = [
    "ActivityLogItem",
    "CachedDeck",
    "CachedFlashcard",
    "CachedNote",
    "CachedUserPreference",
    "EvictionResult",
    "StorageEstimate",
    "SyncConflict",
    "SyncQueueItem",
    "SyncStats",
]
