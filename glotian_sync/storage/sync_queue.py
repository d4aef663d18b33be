"""Sync queue for the glotian cache.

An append-only, durable log of pending remote mutations. Items are never
deduplicated; the processor re-resolves each one against the remote row.
"""

import json
import logging
import sqlite3
from typing import Any, Callable, Dict, List, Optional

from glotian_sync.types import VALID_OPERATION_VALUES

from .base import SyncQueueItem, now_ms

logger = logging.getLogger(__name__)

# Stored error text is truncated to this many characters
MAX_ERROR_LENGTH = 500


def _row_to_item(row: sqlite3.Row) -> SyncQueueItem:
    payload = json.loads(row["payload"]) if row["payload"] else None
    return SyncQueueItem(
        id=row["id"],
        operation=row["operation"],
        table_name=row["table_name"],
        entity_id=row["entity_id"],
        payload=payload,
        timestamp=row["timestamp"],
        retry_count=row["retry_count"],
        last_attempt=row["last_attempt"],
        error=row["error"],
    )


class SyncQueue:
    """Queue operations over the sync_queue table.

    Args:
        connect_fn: Callable returning a DB connection context manager.
    """

    def __init__(self, connect_fn: Callable):
        self._connect = connect_fn

    # === Append ===

    def enqueue(
        self,
        operation: str,
        table: str,
        entity_id: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Append a mutation. Errors propagate to the caller."""
        with self._connect() as conn:
            return self.enqueue_in(conn, operation, table, entity_id, payload)

    def enqueue_in(
        self,
        conn: sqlite3.Connection,
        operation: str,
        table: str,
        entity_id: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Append a mutation inside the caller's transaction."""
        if operation not in VALID_OPERATION_VALUES:
            raise ValueError(f"Invalid sync operation: {operation}")
        cursor = conn.execute(
            """INSERT INTO sync_queue
               (operation, table_name, entity_id, payload, timestamp,
                retry_count, last_attempt, error)
               VALUES (?, ?, ?, ?, ?, 0, NULL, NULL)""",
            (
                operation,
                table,
                entity_id,
                json.dumps(payload) if payload is not None else None,
                now_ms(),
            ),
        )
        logger.debug("Queued %s %s/%s as item %s", operation, table, entity_id, cursor.lastrowid)
        return cursor.lastrowid

    # === Read ===

    def list(self, limit: Optional[int] = None) -> List[SyncQueueItem]:
        """All queued items, oldest first."""
        sql = "SELECT * FROM sync_queue ORDER BY timestamp ASC, id ASC"
        params: tuple = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (limit,)
        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_row_to_item(r) for r in rows]

    def get(self, item_id: int) -> Optional[SyncQueueItem]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM sync_queue WHERE id = ?", (item_id,)).fetchone()
        return _row_to_item(row) if row else None

    def count(self) -> int:
        with self._connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM sync_queue").fetchone()[0]

    def count_failed(self) -> int:
        """Items that have failed at least once."""
        with self._connect() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM sync_queue WHERE retry_count > 0"
            ).fetchone()[0]

    def stats(self) -> Dict[str, int]:
        total = self.count()
        failed = self.count_failed()
        return {"total": total, "pending": total - failed, "failed": failed}

    def items_for(self, table: str, entity_id: str) -> List[SyncQueueItem]:
        with self._connect() as conn:
            rows = conn.execute(
                """SELECT * FROM sync_queue WHERE table_name = ? AND entity_id = ?
                   ORDER BY timestamp ASC, id ASC""",
                (table, entity_id),
            ).fetchall()
        return [_row_to_item(r) for r in rows]

    def has_other_items(self, table: str, entity_id: str, exclude_id: int) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """SELECT 1 FROM sync_queue
                   WHERE table_name = ? AND entity_id = ? AND id != ? LIMIT 1""",
                (table, entity_id, exclude_id),
            ).fetchone()
        return row is not None

    # === Mutate ===

    def remove(self, item_id: int) -> bool:
        with self._connect() as conn:
            return self.remove_in(conn, item_id)

    def remove_in(self, conn: sqlite3.Connection, item_id: int) -> bool:
        cursor = conn.execute("DELETE FROM sync_queue WHERE id = ?", (item_id,))
        return cursor.rowcount > 0

    def record_retry(self, item_id: int, error: str) -> int:
        """Persist a retryable failure and return the new retry count."""
        with self._connect() as conn:
            conn.execute(
                """UPDATE sync_queue
                   SET retry_count = retry_count + 1, last_attempt = ?, error = ?
                   WHERE id = ?""",
                (now_ms(), error[:MAX_ERROR_LENGTH], item_id),
            )
            row = conn.execute(
                "SELECT retry_count FROM sync_queue WHERE id = ?", (item_id,)
            ).fetchone()
        return row["retry_count"] if row else 0

    def reset_retries_in(
        self, conn: sqlite3.Connection, table: Optional[str] = None, entity_id: Optional[str] = None
    ) -> int:
        """Clear retry bookkeeping so items are attempted afresh."""
        sql = "UPDATE sync_queue SET retry_count = 0, last_attempt = NULL, error = NULL"
        params: tuple = ()
        if table is not None and entity_id is not None:
            sql += " WHERE table_name = ? AND entity_id = ?"
            params = (table, entity_id)
        return conn.execute(sql, params).rowcount

    def clear(self) -> int:
        with self._connect() as conn:
            return conn.execute("DELETE FROM sync_queue").rowcount
