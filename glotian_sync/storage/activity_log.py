"""Activity log for the glotian cache.

A per-user audit trail of discrete actions with its own sync status. It is
independent of the entity tables and pruned by retention count.
"""

import json
import logging
import sqlite3
from typing import Any, Callable, Dict, List, Optional

from glotian_sync.types import (
    VALID_SYNC_STATUS_VALUES,
    ActivityAction,
    ActivityEntityType,
    SyncStatus,
)

from .base import ActivityLogItem, now_ms

logger = logging.getLogger(__name__)

DEFAULT_RETENTION = 1000


def _row_to_item(row: sqlite3.Row) -> ActivityLogItem:
    return ActivityLogItem(
        id=row["id"],
        user_id=row["user_id"],
        action=row["action"],
        entity_type=row["entity_type"],
        entity_id=row["entity_id"],
        metadata=json.loads(row["metadata"]) if row["metadata"] else {},
        timestamp=row["timestamp"],
        sync_status=row["sync_status"],
    )


class ActivityLog:
    """Append, query and prune activity entries.

    Args:
        connect_fn: Callable returning a DB connection context manager.
    """

    def __init__(self, connect_fn: Callable):
        self._connect = connect_fn

    def log(
        self,
        user_id: str,
        action: str,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        sync_status: str = SyncStatus.PENDING.value,
    ) -> int:
        action = ActivityAction(action).value
        if entity_type is not None:
            entity_type = ActivityEntityType(entity_type).value
        with self._connect() as conn:
            cursor = conn.execute(
                """INSERT INTO activity_log
                   (user_id, action, entity_type, entity_id, metadata, timestamp, sync_status)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    user_id,
                    action,
                    entity_type,
                    entity_id,
                    json.dumps(metadata or {}),
                    now_ms(),
                    sync_status,
                ),
            )
            return cursor.lastrowid

    def recent(self, user_id: str, limit: int = 50) -> List[ActivityLogItem]:
        """Newest entries first."""
        with self._connect() as conn:
            rows = conn.execute(
                """SELECT * FROM activity_log WHERE user_id = ?
                   ORDER BY timestamp DESC, id DESC LIMIT ?""",
                (user_id, limit),
            ).fetchall()
        return [_row_to_item(r) for r in rows]

    def filtered(
        self,
        user_id: str,
        action: Optional[str] = None,
        sync_status: Optional[str] = None,
        start: Optional[int] = None,
        end: Optional[int] = None,
        limit: int = 100,
    ) -> List[ActivityLogItem]:
        """Entries matching every given filter; start/end are epoch ms, inclusive."""
        clauses = ["user_id = ?"]
        params: List[Any] = [user_id]
        if action:
            clauses.append("action = ?")
            params.append(action)
        if sync_status:
            clauses.append("sync_status = ?")
            params.append(sync_status)
        if start is not None:
            clauses.append("timestamp >= ?")
            params.append(start)
        if end is not None:
            clauses.append("timestamp <= ?")
            params.append(end)
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(
                f"""SELECT * FROM activity_log WHERE {' AND '.join(clauses)}
                    ORDER BY timestamp DESC, id DESC LIMIT ?""",
                params,
            ).fetchall()
        return [_row_to_item(r) for r in rows]

    def counts(self, user_id: str) -> Dict[str, int]:
        with self._connect() as conn:
            rows = conn.execute(
                """SELECT sync_status, COUNT(*) AS n FROM activity_log
                   WHERE user_id = ? GROUP BY sync_status""",
                (user_id,),
            ).fetchall()
        counts = {"total": 0, "pending": 0, "synced": 0, "failed": 0}
        for row in rows:
            counts["total"] += row["n"]
            if row["sync_status"] in counts:
                counts[row["sync_status"]] = row["n"]
        return counts

    def update_status(self, entry_id: int, sync_status: str) -> bool:
        if sync_status not in VALID_SYNC_STATUS_VALUES:
            raise ValueError(f"Invalid sync status: {sync_status}")
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE activity_log SET sync_status = ? WHERE id = ?", (sync_status, entry_id)
            )
            return cursor.rowcount > 0

    def count(self) -> int:
        with self._connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM activity_log").fetchone()[0]

    def prune(self, keep: int = DEFAULT_RETENTION) -> int:
        """Keep only the newest `keep` entries regardless of sync status."""
        with self._connect() as conn:
            return self.prune_in(conn, keep)

    def prune_in(self, conn: sqlite3.Connection, keep: int = DEFAULT_RETENTION) -> int:
        cursor = conn.execute(
            """DELETE FROM activity_log WHERE id NOT IN (
                   SELECT id FROM activity_log ORDER BY timestamp DESC, id DESC LIMIT ?
               )""",
            (keep,),
        )
        if cursor.rowcount:
            logger.info("Pruned %d activity log entries (keeping %d)", cursor.rowcount, keep)
        return cursor.rowcount
