"""
Glotian Sync - offline-first sync engine.

Keeps the local cache of notes, flashcards, decks and preferences
eventually consistent with the remote backend.
"""

from .config import Settings, SyncPolicy, get_settings
from .storage.sqlite import CacheStore
from .sync.processor import SyncProcessor

try:
    from importlib.metadata import version

    __version__ = version("glotian-sync")
except Exception:
    __version__ = "0.0.0"

__all__ = ["CacheStore", "Settings", "SyncPolicy", "SyncProcessor", "get_settings"]
