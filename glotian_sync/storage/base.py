"""
Storage types for the glotian cache.

Cached entities, queue items, activity entries and the small result
records returned by the sync processor and the eviction manager.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from dateutil.parser import parse as parse_timestamp

from glotian_sync.types import SyncStatus


def utc_now() -> str:
    """Get current timestamp as ISO string in UTC."""
    return datetime.now(timezone.utc).isoformat()


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def parse_datetime(s: Optional[str]) -> Optional[datetime]:
    """Parse an ISO datetime string; naive values are taken as UTC.

    Returns None for empty or unparseable input.
    """
    if not s:
        return None
    try:
        dt = parse_timestamp(s)
    except (TypeError, ValueError, OverflowError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


# === Cached Entities ===


@dataclass
class CachedNote:
    """A learning note as held in the local cache."""

    id: str
    user_id: str
    content: str  # remote: original_text
    translated_text: str = ""
    source_language: str = ""
    target_language: str = ""
    title: Optional[str] = None
    summary: Optional[str] = None  # remote: grammar_explanation
    tags: List[str] = field(default_factory=list)
    alternative_expressions: List[Any] = field(default_factory=list)
    source_type: Optional[str] = "extension"
    source_url: Optional[str] = None
    attached_image_url: Optional[str] = None
    folder_path: Optional[str] = None
    deleted_at: Optional[str] = None
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)
    sync_status: str = SyncStatus.PENDING.value
    last_accessed_at: Optional[int] = None


@dataclass
class CachedFlashcard:
    id: str
    user_id: str
    deck_id: str
    term: str
    definition: str
    language: str
    source_note_id: Optional[str] = None
    part_of_speech: Optional[str] = None
    example_sentences: List[str] = field(default_factory=list)
    difficulty_level: str = "medium"
    deleted_at: Optional[str] = None
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)
    sync_status: str = SyncStatus.PENDING.value
    last_accessed_at: Optional[int] = None


@dataclass
class CachedDeck:
    id: str
    user_id: str
    name: str
    language: str
    description: Optional[str] = None
    card_count: float = 0
    total_study_time_seconds: float = 0
    deleted_at: Optional[str] = None
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)
    sync_status: str = SyncStatus.PENDING.value
    last_accessed_at: Optional[int] = None


@dataclass
class CachedUserPreference:
    """Per-user preferences. created_at is local bookkeeping only."""

    id: str
    user_id: str
    ui_language: str = "en"
    learning_languages: List[str] = field(default_factory=list)
    daily_goal_minutes: float = 15
    srs_algorithm: str = "sm2"
    target_cefr_level: str = "B1"
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)
    sync_status: str = SyncStatus.PENDING.value
    last_accessed_at: Optional[int] = None


# === Queue / Log Types ===


@dataclass
class SyncQueueItem:
    """A pending remote mutation."""

    id: Optional[int]
    operation: str  # 'create', 'update', 'delete'
    table_name: str  # remote table
    entity_id: str
    payload: Optional[Dict[str, Any]] = None
    timestamp: int = field(default_factory=now_ms)
    retry_count: int = 0
    last_attempt: Optional[int] = None
    error: Optional[str] = None


@dataclass
class ActivityLogItem:
    id: Optional[int]
    user_id: str
    action: str
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: int = field(default_factory=now_ms)
    sync_status: str = SyncStatus.PENDING.value


@dataclass
class ErrorLogEntry:
    id: Optional[int]
    timestamp: int
    message: str
    stack: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SyncConflict:
    """A conflict resolved in favor of the remote row.

    The discarded local payload is kept so the user can recover it.
    """

    id: str
    table: str  # remote table
    record_id: str
    local_version: Dict[str, Any]
    remote_version: Dict[str, Any]
    resolution: str  # "remote_wins"
    resolved_at: datetime
    local_summary: Optional[str] = None
    remote_summary: Optional[str] = None


# === Results ===


@dataclass
class SyncStats:
    """Outcome counts of one sync run."""

    synced: int = 0
    failed: int = 0
    conflicts: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"synced": self.synced, "failed": self.failed, "conflicts": self.conflicts}


@dataclass
class StorageEstimate:
    used: int
    quota: int

    @property
    def percent_used(self) -> float:
        if self.quota <= 0:
            return 100.0
        return self.used / self.quota * 100


@dataclass
class EvictionResult:
    evicted: bool
    items_removed: int = 0
    quota_before: float = 0.0  # percent used
    quota_after: float = 0.0
    removed_by_table: Dict[str, int] = field(default_factory=dict)
