"""Persisted run guard for the sync processor.

A single row in sync_lease names the current holder and its last heartbeat.
Acquisition is one atomic UPSERT, so independent processes sharing the cache
file cannot both hold the lease. A holder that stops heart-beating loses the
lease once the TTL passes.
"""

import logging
from typing import Callable, Optional

from .base import now_ms

logger = logging.getLogger(__name__)

DEFAULT_LEASE_NAME = "sync_processor"


class SyncLease:
    """Heartbeat lease over a sync_lease row.

    Args:
        connect_fn: Callable returning a DB connection context manager.
        ttl_seconds: Heartbeat age after which the lease may be taken over.
        name: Lease row name.
    """

    def __init__(
        self, connect_fn: Callable, ttl_seconds: float = 120.0, name: str = DEFAULT_LEASE_NAME
    ):
        self._connect = connect_fn
        self.ttl_ms = int(ttl_seconds * 1000)
        self.name = name

    def acquire(self, holder: str) -> bool:
        """Take the lease if it is free, stale, or already ours."""
        now = now_ms()
        stale_before = now - self.ttl_ms
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO sync_lease (name, holder, acquired_at, heartbeat_at)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(name) DO UPDATE SET
                       holder = excluded.holder,
                       acquired_at = CASE WHEN sync_lease.holder = excluded.holder
                                          THEN sync_lease.acquired_at
                                          ELSE excluded.acquired_at END,
                       heartbeat_at = excluded.heartbeat_at
                   WHERE sync_lease.holder = excluded.holder
                      OR sync_lease.heartbeat_at < ?""",
                (self.name, holder, now, now, stale_before),
            )
            row = conn.execute(
                "SELECT holder FROM sync_lease WHERE name = ?", (self.name,)
            ).fetchone()
        acquired = row is not None and row["holder"] == holder
        if not acquired:
            logger.debug("Sync lease %s held by %s", self.name, row["holder"] if row else None)
        return acquired

    def heartbeat(self, holder: str) -> bool:
        """Refresh the heartbeat; False if the lease is no longer ours."""
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE sync_lease SET heartbeat_at = ? WHERE name = ? AND holder = ?",
                (now_ms(), self.name, holder),
            )
            return cursor.rowcount > 0

    def release(self, holder: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM sync_lease WHERE name = ? AND holder = ?", (self.name, holder)
            )
            return cursor.rowcount > 0

    def current_holder(self) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT holder FROM sync_lease WHERE name = ?", (self.name,)
            ).fetchone()
        return row["holder"] if row else None
