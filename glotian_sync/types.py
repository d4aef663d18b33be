"""
Shared vocabulary for glotian_sync.

Enums and table mappings used by the cache store, the sync processor and
the trigger surface.
"""

from enum import Enum
from typing import Dict


class SyncStatus(str, Enum):
    """Sync status for a cached row or activity entry."""

    PENDING = "pending"  # Local change not yet confirmed remotely
    SYNCED = "synced"  # Matches the remote row
    FAILED = "failed"  # Terminal until the user resets it


class Operation(str, Enum):
    """Remote mutation carried by a sync queue item."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class ActivityAction(str, Enum):
    NOTE_CREATED = "note_created"
    NOTE_UPDATED = "note_updated"
    PAGE_SUMMARIZED = "page_summarized"
    QA_ASKED = "qa_asked"
    FLASHCARD_CREATED = "flashcard_created"
    COACH_FIX_APPLIED = "coach_fix_applied"
    MEDIA_OCR = "media_ocr"
    MEDIA_TRANSCRIBE = "media_transcribe"
    SYNC_CONFLICT = "sync_conflict"


class ActivityEntityType(str, Enum):
    LEARNING_NOTE = "learning_note"
    FLASHCARD = "flashcard"
    QA_EXCHANGE = "qa_exchange"


VALID_SYNC_STATUS_VALUES = frozenset(s.value for s in SyncStatus)
VALID_OPERATION_VALUES = frozenset(o.value for o in Operation)

# Remote table -> local cache table
REMOTE_TO_LOCAL: Dict[str, str] = {
    "learning_notes": "notes",
    "flashcards": "flashcards",
    "flashcard_decks": "decks",
    "user_preferences": "user_preferences",
}
LOCAL_TO_REMOTE: Dict[str, str] = {v: k for k, v in REMOTE_TO_LOCAL.items()}

# Tables swept by the eviction manager
EVICTABLE_TABLES = ("notes", "flashcards", "decks")


def local_table_for(remote_table: str) -> str:
    """Map a remote table name to its local cache table."""
    try:
        return REMOTE_TO_LOCAL[remote_table]
    except KeyError:
        raise ValueError(f"Unknown remote table: {remote_table}") from None


def remote_table_for(local_table: str) -> str:
    """Map a local cache table to its remote table name."""
    try:
        return LOCAL_TO_REMOTE[local_table]
    except KeyError:
        raise ValueError(f"Unknown local table: {local_table}") from None
