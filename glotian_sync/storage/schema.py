"""Database schema and migration logic for the glotian cache.

Contains:
- Schema DDL (SCHEMA)
- Schema version tracking (SCHEMA_VERSION)
- Table allowlist (ALLOWED_TABLES, validate_table_name)
- Database initialization (init_db)
- Versioned migrations (migrate_schema)
"""

import logging
import sqlite3
from typing import Dict, List, Sequence, Tuple

from .base import now_ms, utc_now

logger = logging.getLogger(__name__)

# v1: base tables
# v2: composite indexes (user_id, sync_status) and queue (table_name, operation)
# v3: notes rebuilt into the normalized note shape
SCHEMA_VERSION = 3

ENTITY_TABLES = ("notes", "flashcards", "decks", "user_preferences")

# Allowed table names for SQL queries (prevents SQL injection via table names)
ALLOWED_TABLES = frozenset(
    {
        *ENTITY_TABLES,
        "sync_queue",
        "activity_log",
        "sync_meta",
        "sync_lease",
        "sync_conflicts",
        "error_log",
        "schema_version",
    }
)


def validate_table_name(table: str) -> str:
    """Validate table name against allowlist to prevent SQL injection.

    Raises:
        ValueError: If table name is not in allowlist
    """
    if table not in ALLOWED_TABLES:
        raise ValueError(f"Invalid table name: {table}")
    return table


NOTES_DDL = """
CREATE TABLE IF NOT EXISTS notes (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    content TEXT NOT NULL DEFAULT '',
    translated_text TEXT NOT NULL DEFAULT '',
    source_language TEXT NOT NULL DEFAULT '',
    target_language TEXT NOT NULL DEFAULT '',
    title TEXT,
    summary TEXT,
    tags TEXT NOT NULL DEFAULT '[]',
    alternative_expressions TEXT NOT NULL DEFAULT '[]',
    source_type TEXT DEFAULT 'extension',
    source_url TEXT,
    attached_image_url TEXT,
    folder_path TEXT,
    deleted_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    sync_status TEXT NOT NULL DEFAULT 'pending',
    last_accessed_at INTEGER
);
"""

SCHEMA = (
    """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);
"""
    + NOTES_DDL
    + """
CREATE TABLE IF NOT EXISTS flashcards (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    deck_id TEXT NOT NULL,
    term TEXT NOT NULL,
    definition TEXT NOT NULL,
    language TEXT NOT NULL,
    source_note_id TEXT,
    part_of_speech TEXT,
    example_sentences TEXT NOT NULL DEFAULT '[]',
    difficulty_level TEXT NOT NULL DEFAULT 'medium',
    deleted_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    sync_status TEXT NOT NULL DEFAULT 'pending',
    last_accessed_at INTEGER
);

CREATE TABLE IF NOT EXISTS decks (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    name TEXT NOT NULL,
    language TEXT NOT NULL,
    description TEXT,
    card_count REAL NOT NULL DEFAULT 0,
    total_study_time_seconds REAL NOT NULL DEFAULT 0,
    deleted_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    sync_status TEXT NOT NULL DEFAULT 'pending',
    last_accessed_at INTEGER
);

CREATE TABLE IF NOT EXISTS user_preferences (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    ui_language TEXT NOT NULL DEFAULT 'en',
    learning_languages TEXT NOT NULL DEFAULT '[]',
    daily_goal_minutes REAL NOT NULL DEFAULT 15,
    srs_algorithm TEXT NOT NULL DEFAULT 'sm2',
    target_cefr_level TEXT NOT NULL DEFAULT 'B1',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    sync_status TEXT NOT NULL DEFAULT 'pending',
    last_accessed_at INTEGER
);

-- Pending remote mutations, drained oldest-first
CREATE TABLE IF NOT EXISTS sync_queue (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    operation TEXT NOT NULL,
    table_name TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    payload TEXT,
    timestamp INTEGER NOT NULL,
    retry_count INTEGER NOT NULL DEFAULT 0,
    last_attempt INTEGER,
    error TEXT
);
CREATE INDEX IF NOT EXISTS idx_sync_queue_timestamp ON sync_queue(timestamp);
CREATE INDEX IF NOT EXISTS idx_sync_queue_entity ON sync_queue(table_name, entity_id);

CREATE TABLE IF NOT EXISTS activity_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    action TEXT NOT NULL,
    entity_type TEXT,
    entity_id TEXT,
    metadata TEXT,
    timestamp INTEGER NOT NULL,
    sync_status TEXT NOT NULL DEFAULT 'pending'
);
CREATE INDEX IF NOT EXISTS idx_activity_user ON activity_log(user_id);
CREATE INDEX IF NOT EXISTS idx_activity_user_time ON activity_log(user_id, timestamp);
CREATE INDEX IF NOT EXISTS idx_activity_timestamp ON activity_log(timestamp);
CREATE INDEX IF NOT EXISTS idx_activity_sync_status ON activity_log(sync_status);

-- Key/value sync metadata (last_sync_time)
CREATE TABLE IF NOT EXISTS sync_meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Run guard: one row per lease name
CREATE TABLE IF NOT EXISTS sync_lease (
    name TEXT PRIMARY KEY,
    holder TEXT NOT NULL,
    acquired_at INTEGER NOT NULL,
    heartbeat_at INTEGER NOT NULL
);

-- Local versions discarded by last-write-wins, kept for recovery
CREATE TABLE IF NOT EXISTS sync_conflicts (
    id TEXT PRIMARY KEY,
    table_name TEXT NOT NULL,
    record_id TEXT NOT NULL,
    local_version TEXT NOT NULL,
    remote_version TEXT NOT NULL,
    resolution TEXT NOT NULL,
    resolved_at TEXT NOT NULL,
    local_summary TEXT,
    remote_summary TEXT
);
CREATE INDEX IF NOT EXISTS idx_sync_conflicts_resolved ON sync_conflicts(resolved_at);

CREATE TABLE IF NOT EXISTS error_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp INTEGER NOT NULL,
    message TEXT NOT NULL,
    stack TEXT,
    context TEXT
);
"""
)

# Indexes every entity table carries (v1)
ENTITY_INDEXES = """
CREATE INDEX IF NOT EXISTS idx_{t}_user ON {t}(user_id);
CREATE INDEX IF NOT EXISTS idx_{t}_user_created ON {t}(user_id, created_at);
CREATE INDEX IF NOT EXISTS idx_{t}_last_accessed ON {t}(last_accessed_at);
"""

# Indexes introduced in v2
V2_INDEXES = """
CREATE INDEX IF NOT EXISTS idx_{t}_user_status ON {t}(user_id, sync_status);
"""
V2_QUEUE_INDEX = (
    "CREATE INDEX IF NOT EXISTS idx_sync_queue_table_op ON sync_queue(table_name, operation)"
)

# Normalized note column -> legacy column names to coalesce from, in order.
# The trailing default (if any) is bound as a parameter.
NOTE_COLUMN_SOURCES: Dict[str, Tuple[Sequence[str], object]] = {
    "id": (("id",), None),
    "user_id": (("userId", "user_id"), ""),
    "content": (("content", "original_text", "originalText"), ""),
    "translated_text": (("translated_text", "translatedText"), ""),
    "source_language": (("source_language", "sourceLanguage"), ""),
    "target_language": (("target_language", "targetLanguage"), ""),
    "title": (("title",), None),
    "summary": (("summary", "grammar_explanation", "grammarExplanation"), None),
    "tags": (("tags",), "[]"),
    "alternative_expressions": (("alternative_expressions", "alternativeExpressions"), "[]"),
    "source_type": (("source_type", "sourceType"), "extension"),
    "source_url": (("source_url", "sourceUrl"), None),
    "attached_image_url": (("attached_image_url", "attachedImageUrl"), None),
    "folder_path": (("folder_path", "folderPath"), None),
    "deleted_at": (("deleted_at", "deletedAt"), None),
    "created_at": (("createdAt", "created_at"), "<now>"),
    "updated_at": (("updatedAt", "updated_at", "createdAt", "created_at"), "<now>"),
    "sync_status": (("syncStatus", "sync_status"), "pending"),
    "last_accessed_at": (("lastAccessedAt", "last_accessed_at"), "<now_ms>"),
}


def get_table_names(conn: sqlite3.Connection) -> set:
    tables = conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
    return {t[0] for t in tables}


def get_columns(conn: sqlite3.Connection, table: str) -> set:
    validate_table_name(table)
    cols = conn.execute(f"PRAGMA table_info({table})").fetchall()
    return {c[1] for c in cols}


def get_schema_version(conn: sqlite3.Connection) -> int:
    """Stored schema version, 0 for unversioned or fresh databases."""
    if "schema_version" not in get_table_names(conn):
        return 0
    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    return row[0] or 0


def init_db(conn: sqlite3.Connection) -> None:
    """Initialize the database schema, migrating existing stores first."""
    migrate_schema(conn)

    # CREATE ... IF NOT EXISTS is safe on migrated stores
    conn.executescript(SCHEMA)
    for table in ENTITY_TABLES:
        conn.executescript(ENTITY_INDEXES.format(t=table))
    _migrate_v2(conn)

    conn.execute("DELETE FROM schema_version")
    conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
    conn.commit()


def migrate_schema(conn: sqlite3.Connection) -> None:
    """Run schema migrations for existing databases."""
    table_names = get_table_names(conn)
    if not table_names & set(ENTITY_TABLES):
        # Fresh database, no migration needed
        return

    version = get_schema_version(conn)
    if version < SCHEMA_VERSION:
        logger.info("Migrating cache schema from v%d to v%d", version, SCHEMA_VERSION)

    # Columns every cached entity carries; older stores may lack them
    for table in ("flashcards", "decks", "user_preferences"):
        if table not in table_names:
            continue
        cols = get_columns(conn, table)
        if "sync_status" not in cols:
            conn.execute(
                f"ALTER TABLE {table} ADD COLUMN sync_status TEXT NOT NULL DEFAULT 'pending'"
            )
        if "last_accessed_at" not in cols:
            conn.execute(f"ALTER TABLE {table} ADD COLUMN last_accessed_at INTEGER")
            conn.execute(
                f"UPDATE {table} SET last_accessed_at = ? WHERE last_accessed_at IS NULL",
                (now_ms(),),
            )

    if "notes" in table_names and _notes_need_rebuild(conn, version):
        _migrate_v3_notes(conn)

    conn.commit()


def _migrate_v2(conn: sqlite3.Connection) -> None:
    for table in ENTITY_TABLES:
        conn.executescript(V2_INDEXES.format(t=table))
    conn.execute(V2_QUEUE_INDEX)


def _notes_need_rebuild(conn: sqlite3.Connection, version: int) -> bool:
    cols = get_columns(conn, "notes")
    expected = set(NOTE_COLUMN_SOURCES)
    return version < 3 or cols != expected


def _coalesce_expr(
    columns: set, sources: Sequence[str], default: object, params: List[object]
) -> str:
    """Build a COALESCE over the legacy columns that actually exist."""
    parts = [f'"{name}"' for name in sources if name in columns]
    if default is not None:
        if default == "<now>":
            default = utc_now()
        elif default == "<now_ms>":
            default = now_ms()
        parts.append("?")
        params.append(default)
    if not parts:
        return "NULL"
    if len(parts) == 1:
        return parts[0]
    return f"COALESCE({', '.join(parts)})"


def _migrate_v3_notes(conn: sqlite3.Connection) -> None:
    """Rebuild notes into the normalized shape.

    Each new column is coalesced from every known legacy name present in
    the old table before the old table is dropped.
    """
    columns = get_columns(conn, "notes")
    params: List[object] = []
    exprs = []
    for name, (sources, default) in NOTE_COLUMN_SOURCES.items():
        exprs.append(_coalesce_expr(columns, sources, default, params))

    conn.execute("ALTER TABLE notes RENAME TO notes_legacy")
    # Indexes follow the renamed table; drop them so the new table can reuse the names
    for (index_name,) in conn.execute(
        "SELECT name FROM sqlite_master WHERE type='index' AND tbl_name='notes_legacy' "
        "AND sql IS NOT NULL"
    ).fetchall():
        conn.execute(f'DROP INDEX IF EXISTS "{index_name}"')
    conn.execute(NOTES_DDL.strip())
    target_cols = ", ".join(NOTE_COLUMN_SOURCES)
    cursor = conn.execute(
        f"INSERT INTO notes ({target_cols}) SELECT {', '.join(exprs)} FROM notes_legacy",
        params,
    )
    conn.execute("DROP TABLE notes_legacy")
    logger.info("Migrated %d notes to the normalized note shape", cursor.rowcount)
