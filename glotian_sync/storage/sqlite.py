"""SQLite-backed cache store for glotian.

Holds the four entity tables plus the sync queue, the activity log and
sync bookkeeping (last sync time, conflict archive, error diagnostics).
Connections are opened per operation; every method is synchronous and
safe to call from a worker thread.
"""

import contextlib
import dataclasses
import json
import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from glotian_sync.config import SyncPolicy
from glotian_sync.sync.validation import (
    CachedEntity,
    entity_to_row,
    row_to_entity,
    table_for_entity,
)
from glotian_sync.types import (
    VALID_SYNC_STATUS_VALUES,
    Operation,
    SyncStatus,
    local_table_for,
    remote_table_for,
)
from glotian_sync.utils import default_db_path

from .activity_log import ActivityLog
from .base import (
    CachedDeck,
    CachedFlashcard,
    CachedNote,
    CachedUserPreference,
    ErrorLogEntry,
    SyncConflict,
    SyncQueueItem,
    now_ms,
    parse_datetime,
    utc_now,
)
from .schema import ENTITY_TABLES, init_db, validate_table_name
from .sync_queue import SyncQueue

logger = logging.getLogger(__name__)

ENTITY_CLASSES: Dict[str, type] = {
    "notes": CachedNote,
    "flashcards": CachedFlashcard,
    "decks": CachedDeck,
    "user_preferences": CachedUserPreference,
}

# Entity fields stored as JSON text
JSON_FIELDS: Dict[str, tuple] = {
    "notes": ("tags", "alternative_expressions"),
    "flashcards": ("example_sentences",),
    "decks": (),
    "user_preferences": ("learning_languages",),
}

LAST_SYNC_KEY = "last_sync_time"


class CacheStore:
    """Local cache of user entities with queue, activity log and sync metadata.

    Args:
        db_path: SQLite file; defaults to <data_dir>/cache.db.
        policy: Retention and retry policy.
    """

    def __init__(self, db_path: Optional[Path] = None, policy: Optional[SyncPolicy] = None):
        self.db_path = Path(db_path) if db_path else default_db_path()
        self.policy = policy or SyncPolicy()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self.queue = SyncQueue(connect_fn=self._connect)
        self.activity = ActivityLog(connect_fn=self._connect)

        self._init_db()

    # === Connections ===

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        return conn

    @contextlib.contextmanager
    def _connect(self):
        """Context manager that commits on success, rolls back on error, always closes."""
        conn = self._get_conn()
        try:
            yield conn
            conn.commit()
        except Exception as e:
            logger.debug(f"Transaction failed, rolling back: {e}")
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self):
        with self._connect() as conn:
            init_db(conn)

    def connect(self):
        """Public alias of the per-operation connection context manager."""
        return self._connect()

    # === Row Helpers ===

    @staticmethod
    def _table(table: str) -> str:
        validate_table_name(table)
        if table not in ENTITY_TABLES:
            raise ValueError(f"Not an entity table: {table}")
        return table

    def _entity_to_params(self, table: str, entity: CachedEntity) -> Dict[str, Any]:
        data = dataclasses.asdict(entity)
        for name in JSON_FIELDS[table]:
            data[name] = json.dumps(data[name] or [])
        if data.get("last_accessed_at") is None:
            data["last_accessed_at"] = now_ms()
        return data

    def _row_to_entity(self, table: str, row: sqlite3.Row) -> CachedEntity:
        cls = ENTITY_CLASSES[table]
        kwargs = {}
        for f in dataclasses.fields(cls):
            value = row[f.name]
            if f.name in JSON_FIELDS[table]:
                value = json.loads(value) if value else []
            kwargs[f.name] = value
        return cls(**kwargs)

    def _upsert(self, conn: sqlite3.Connection, table: str, entity: CachedEntity) -> None:
        """Insert or replace a row; last_accessed_at never moves backwards."""
        data = self._entity_to_params(table, entity)
        cols = list(data)
        updates = ", ".join(
            f"{c} = excluded.{c}" for c in cols if c not in ("id", "last_accessed_at")
        )
        conn.execute(
            f"""INSERT INTO {table} ({', '.join(cols)})
                VALUES ({', '.join('?' for _ in cols)})
                ON CONFLICT(id) DO UPDATE SET {updates},
                    last_accessed_at = MAX(
                        COALESCE({table}.last_accessed_at, 0), excluded.last_accessed_at
                    )""",
            [data[c] for c in cols],
        )

    # === Entity Access ===

    def put(self, entity: CachedEntity) -> None:
        """Write an entity as-is (no queue item)."""
        table = local_table_for(table_for_entity(entity))
        with self._connect() as conn:
            self._upsert(conn, table, entity)

    def get(self, table: str, entity_id: str, touch: bool = True) -> Optional[CachedEntity]:
        """Fetch an entity; a hit advances its last_accessed_at."""
        table = self._table(table)
        with self._connect() as conn:
            if touch:
                self._touch(conn, table, entity_id)
            row = conn.execute(f"SELECT * FROM {table} WHERE id = ?", (entity_id,)).fetchone()
        return self._row_to_entity(table, row) if row else None

    def touch(self, table: str, entity_id: str) -> bool:
        table = self._table(table)
        with self._connect() as conn:
            return self._touch(conn, table, entity_id)

    def _touch(self, conn: sqlite3.Connection, table: str, entity_id: str) -> bool:
        cursor = conn.execute(
            f"""UPDATE {table} SET last_accessed_at = MAX(COALESCE(last_accessed_at, 0), ?)
                WHERE id = ?""",
            (now_ms(), entity_id),
        )
        return cursor.rowcount > 0

    def list(self, table: str, user_id: Optional[str] = None) -> List[CachedEntity]:
        table = self._table(table)
        with self._connect() as conn:
            if user_id is None:
                rows = conn.execute(f"SELECT * FROM {table} ORDER BY created_at").fetchall()
            else:
                rows = conn.execute(
                    f"SELECT * FROM {table} WHERE user_id = ? ORDER BY created_at", (user_id,)
                ).fetchall()
        return [self._row_to_entity(table, r) for r in rows]

    def recent(self, table: str, user_id: str, limit: int = 20) -> List[CachedEntity]:
        """Newest entities for a user by creation time."""
        table = self._table(table)
        with self._connect() as conn:
            rows = conn.execute(
                f"""SELECT * FROM {table} WHERE user_id = ?
                    ORDER BY created_at DESC LIMIT ?""",
                (user_id, limit),
            ).fetchall()
        return [self._row_to_entity(table, r) for r in rows]

    def search_notes(self, user_id: str, query: str, limit: int = 50) -> List[CachedNote]:
        """Notes whose content or any tag contains `query`, case-insensitively.

        Newest notes first. A blank query matches nothing.
        """
        needle = query.strip().lower()
        if not needle:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM notes WHERE user_id = ? ORDER BY created_at DESC", (user_id,)
            ).fetchall()
        results: List[CachedNote] = []
        for row in rows:
            note = self._row_to_entity("notes", row)
            tags = note.tags or []
            if needle in (note.content or "").lower() or any(
                needle in str(tag).lower() for tag in tags
            ):
                results.append(note)
                if len(results) >= limit:
                    break
        return results

    def pending(self, table: str, user_id: str) -> List[CachedEntity]:
        return self.with_status(table, user_id, SyncStatus.PENDING.value)

    def with_status(self, table: str, user_id: str, status: str) -> List[CachedEntity]:
        table = self._table(table)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM {table} WHERE user_id = ? AND sync_status = ?",
                (user_id, status),
            ).fetchall()
        return [self._row_to_entity(table, r) for r in rows]

    def count(self, table: str, status: Optional[str] = None) -> int:
        table = self._table(table)
        with self._connect() as conn:
            if status is None:
                return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
            return conn.execute(
                f"SELECT COUNT(*) FROM {table} WHERE sync_status = ?", (status,)
            ).fetchone()[0]

    def delete(self, table: str, entity_id: str) -> bool:
        """Remove a cached row without queueing anything."""
        table = self._table(table)
        with self._connect() as conn:
            cursor = conn.execute(f"DELETE FROM {table} WHERE id = ?", (entity_id,))
            return cursor.rowcount > 0

    # === Local Mutations (entity + queue item, one transaction) ===

    def save(self, entity: CachedEntity, operation: str = Operation.CREATE.value) -> int:
        """Store a local change as pending and queue it for the remote.

        Returns the queue item id. Any failure rolls back both writes.
        """
        if operation not in (Operation.CREATE.value, Operation.UPDATE.value):
            raise ValueError(f"save() takes create or update, not {operation}")
        remote_table = table_for_entity(entity)
        table = local_table_for(remote_table)
        entity = dataclasses.replace(
            entity, sync_status=SyncStatus.PENDING.value, last_accessed_at=now_ms()
        )
        with self._connect() as conn:
            self._upsert(conn, table, entity)
            return self.queue.enqueue_in(
                conn, operation, remote_table, entity.id, entity_to_row(entity)
            )

    def save_note(self, note: CachedNote, operation: str = Operation.CREATE.value) -> int:
        return self.save(note, operation)

    def save_flashcard(self, card: CachedFlashcard, operation: str = Operation.CREATE.value) -> int:
        return self.save(card, operation)

    def save_deck(self, deck: CachedDeck, operation: str = Operation.CREATE.value) -> int:
        return self.save(deck, operation)

    def save_preference(
        self, pref: CachedUserPreference, operation: str = Operation.UPDATE.value
    ) -> int:
        return self.save(pref, operation)

    def delete_entity(self, table: str, entity_id: str) -> int:
        """Delete locally and queue the remote delete."""
        table = self._table(table)
        remote_table = remote_table_for(table)
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT updated_at FROM {table} WHERE id = ?", (entity_id,)
            ).fetchone()
            conn.execute(f"DELETE FROM {table} WHERE id = ?", (entity_id,))
            payload = {"id": entity_id, "updated_at": row["updated_at"] if row else utc_now()}
            return self.queue.enqueue_in(
                conn, Operation.DELETE.value, remote_table, entity_id, payload
            )

    # === Sync Bookkeeping ===

    def put_from_remote(self, remote_table: str, row: Any) -> CachedEntity:
        """Overwrite the cached row with a validated remote row, marked synced."""
        entity = row_to_entity(
            remote_table, row, sync_status=SyncStatus.SYNCED.value, last_accessed_at=now_ms()
        )
        with self._connect() as conn:
            self._upsert(conn, local_table_for(remote_table), entity)
        return entity

    def mark_status(self, table: str, entity_id: str, status: str) -> bool:
        table = self._table(table)
        if status not in VALID_SYNC_STATUS_VALUES:
            raise ValueError(f"Invalid sync status: {status}")
        with self._connect() as conn:
            cursor = conn.execute(
                f"UPDATE {table} SET sync_status = ? WHERE id = ?", (status, entity_id)
            )
            return cursor.rowcount > 0

    def reset_failed(self, user_id: Optional[str] = None) -> int:
        """Return failed entities to pending so the next run retries them.

        Queue items for those entities get fresh retry bookkeeping. A failed
        entity whose queue item is already gone is re-queued as an update
        carrying its full row.
        """
        reset = 0
        with self._connect() as conn:
            for table in ENTITY_TABLES:
                remote_table = remote_table_for(table)
                sql = f"SELECT * FROM {table} WHERE sync_status = ?"
                params: list = [SyncStatus.FAILED.value]
                if user_id is not None:
                    sql += " AND user_id = ?"
                    params.append(user_id)
                for row in conn.execute(sql, params).fetchall():
                    entity = self._row_to_entity(table, row)
                    entity.sync_status = SyncStatus.PENDING.value
                    queued = conn.execute(
                        "SELECT COUNT(*) FROM sync_queue WHERE table_name = ? AND entity_id = ?",
                        (remote_table, entity.id),
                    ).fetchone()[0]
                    if queued:
                        self.queue.reset_retries_in(conn, remote_table, entity.id)
                    else:
                        self.queue.enqueue_in(
                            conn,
                            Operation.UPDATE.value,
                            remote_table,
                            entity.id,
                            entity_to_row(entity),
                        )
                    conn.execute(
                        f"UPDATE {table} SET sync_status = ? WHERE id = ?",
                        (SyncStatus.PENDING.value, entity.id),
                    )
                    reset += 1
            if user_id is None:
                self.queue.reset_retries_in(conn)
        if reset:
            logger.info("Reset %d failed entities to pending", reset)
        return reset

    # === Queue Item Settlement ===

    def get_status(self, table: str, entity_id: str) -> Optional[str]:
        table = self._table(table)
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT sync_status FROM {table} WHERE id = ?", (entity_id,)
            ).fetchone()
        return row["sync_status"] if row else None

    def _other_items(self, conn: sqlite3.Connection, item: SyncQueueItem) -> int:
        return conn.execute(
            """SELECT COUNT(*) FROM sync_queue
               WHERE table_name = ? AND entity_id = ? AND id != ?""",
            (item.table_name, item.entity_id, item.id),
        ).fetchone()[0]

    def complete_queue_item(self, item: SyncQueueItem, status: str) -> None:
        """Drop a processed queue item and settle its entity's status.

        failed always applies. synced applies only to a pending row with no
        other queued items, so a failed row stays failed until reset.
        """
        table = local_table_for(item.table_name)
        with self._connect() as conn:
            if status == SyncStatus.FAILED.value:
                conn.execute(
                    f"UPDATE {table} SET sync_status = ? WHERE id = ?",
                    (status, item.entity_id),
                )
            elif not self._other_items(conn, item):
                conn.execute(
                    f"UPDATE {table} SET sync_status = ? WHERE id = ? AND sync_status = ?",
                    (status, item.entity_id, SyncStatus.PENDING.value),
                )
            self.queue.remove_in(conn, item.id)

    def resolve_with_remote(
        self, item: SyncQueueItem, row: Any, conflict: SyncConflict
    ) -> bool:
        """Settle a conflict in favor of the remote row.

        The discarded local payload is archived. When later items for the same
        entity are still queued, the cache keeps the newer local state and
        those items decide the outcome. Returns whether the cache was overwritten.
        """
        table = local_table_for(item.table_name)
        with self._connect() as conn:
            overwrite = not self._other_items(conn, item)
            if overwrite:
                entity = row_to_entity(
                    item.table_name,
                    row,
                    sync_status=SyncStatus.SYNCED.value,
                    last_accessed_at=now_ms(),
                )
                self._upsert(conn, table, entity)
            self._insert_conflict(conn, conflict)
            self.queue.remove_in(conn, item.id)
        return overwrite

    # === Sync Metadata ===

    def _get_sync_meta(self, key: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute("SELECT value FROM sync_meta WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def _set_sync_meta(self, key: str, value: str):
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO sync_meta (key, value, updated_at) VALUES (?, ?, ?)",
                (key, value, utc_now()),
            )

    def get_last_sync_time(self) -> Optional[datetime]:
        """Get the timestamp of the last sync run."""
        return parse_datetime(self._get_sync_meta(LAST_SYNC_KEY))

    def set_last_sync_time(self, when: Optional[datetime] = None) -> None:
        self._set_sync_meta(LAST_SYNC_KEY, when.isoformat() if when else utc_now())

    # === Conflict Archive ===

    def save_sync_conflict(self, conflict: SyncConflict) -> str:
        with self._connect() as conn:
            self._insert_conflict(conn, conflict)
        return conflict.id

    def _insert_conflict(self, conn: sqlite3.Connection, conflict: SyncConflict) -> None:
        conn.execute(
            """INSERT INTO sync_conflicts
               (id, table_name, record_id, local_version, remote_version,
                resolution, resolved_at, local_summary, remote_summary)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                conflict.id,
                conflict.table,
                conflict.record_id,
                json.dumps(conflict.local_version),
                json.dumps(conflict.remote_version),
                conflict.resolution,
                conflict.resolved_at.isoformat(),
                conflict.local_summary,
                conflict.remote_summary,
            ),
        )

    def get_sync_conflicts(self, limit: int = 100) -> List[SyncConflict]:
        """Recent conflicts, newest first."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM sync_conflicts ORDER BY resolved_at DESC LIMIT ?", (limit,)
            ).fetchall()
        return [
            SyncConflict(
                id=row["id"],
                table=row["table_name"],
                record_id=row["record_id"],
                local_version=json.loads(row["local_version"]),
                remote_version=json.loads(row["remote_version"]),
                resolution=row["resolution"],
                resolved_at=parse_datetime(row["resolved_at"]),
                local_summary=row["local_summary"],
                remote_summary=row["remote_summary"],
            )
            for row in rows
        ]

    def clear_sync_conflicts(self, before: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            if before:
                cursor = conn.execute(
                    "DELETE FROM sync_conflicts WHERE resolved_at < ?", (before.isoformat(),)
                )
            else:
                cursor = conn.execute("DELETE FROM sync_conflicts")
            return cursor.rowcount

    # === Error Diagnostics ===

    def log_error(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        stack: Optional[str] = None,
    ) -> int:
        """Record a diagnostic entry, keeping only the newest N."""
        with self._connect() as conn:
            cursor = conn.execute(
                "INSERT INTO error_log (timestamp, message, stack, context) VALUES (?, ?, ?, ?)",
                (now_ms(), message, stack, json.dumps(context or {}, default=str)),
            )
            conn.execute(
                """DELETE FROM error_log WHERE id NOT IN (
                       SELECT id FROM error_log ORDER BY id DESC LIMIT ?
                   )""",
                (self.policy.error_log_retention,),
            )
            return cursor.lastrowid

    def get_error_log(self, limit: int = 100) -> List[ErrorLogEntry]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM error_log ORDER BY id DESC LIMIT ?", (limit,)
            ).fetchall()
        return [
            ErrorLogEntry(
                id=row["id"],
                timestamp=row["timestamp"],
                message=row["message"],
                stack=row["stack"],
                context=json.loads(row["context"]) if row["context"] else {},
            )
            for row in rows
        ]

    def clear_error_log(self) -> int:
        with self._connect() as conn:
            return conn.execute("DELETE FROM error_log").rowcount

    # === Status ===

    def sync_status_summary(self, user_id: Optional[str] = None) -> Dict[str, Any]:
        """Entity counts by sync status plus queue state."""
        counts = {s.value: 0 for s in SyncStatus}
        with self._connect() as conn:
            for table in ENTITY_TABLES:
                sql = f"SELECT sync_status, COUNT(*) AS n FROM {table}"
                params: tuple = ()
                if user_id is not None:
                    sql += " WHERE user_id = ?"
                    params = (user_id,)
                for row in conn.execute(sql + " GROUP BY sync_status", params).fetchall():
                    if row["sync_status"] in counts:
                        counts[row["sync_status"]] += row["n"]
        last_sync = self.get_last_sync_time()
        return {
            "pending": counts[SyncStatus.PENDING.value],
            "synced": counts[SyncStatus.SYNCED.value],
            "failed": counts[SyncStatus.FAILED.value],
            "queue": self.queue.stats(),
            "last_sync_time": last_sync.isoformat() if last_sync else None,
        }
