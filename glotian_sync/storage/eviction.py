"""Quota-driven LRU eviction for the glotian cache.

When the store is close to its storage quota, the least recently accessed
rows that are already synced (never pending) and have not been touched for
a while are removed from every entity table in one pass. The activity log
is trimmed to its retention count in the same pass.
"""

import asyncio
import logging
import math
from typing import Dict, Optional, Protocol

from glotian_sync.config import SyncPolicy
from glotian_sync.logging_config import log_eviction
from glotian_sync.types import EVICTABLE_TABLES, SyncStatus

from .base import EvictionResult, StorageEstimate, now_ms

logger = logging.getLogger(__name__)

DAY_MS = 24 * 60 * 60 * 1000


class QuotaProbe(Protocol):
    """Host storage estimate. None means the estimate is unavailable."""

    async def estimate(self) -> Optional[StorageEstimate]: ...


class SqliteQuotaProbe:
    """Estimate usage from the SQLite page counts against a fixed quota.

    Args:
        store: CacheStore whose database is measured.
        quota_bytes: Storage budget; None or 0 disables the estimate.
    """

    def __init__(self, store, quota_bytes: Optional[int]):
        self._store = store
        self.quota_bytes = quota_bytes

    async def estimate(self) -> Optional[StorageEstimate]:
        if not self.quota_bytes:
            return None
        return await asyncio.to_thread(self._estimate)

    def _estimate(self) -> StorageEstimate:
        with self._store.connect() as conn:
            page_count = conn.execute("PRAGMA page_count").fetchone()[0]
            freelist = conn.execute("PRAGMA freelist_count").fetchone()[0]
            page_size = conn.execute("PRAGMA page_size").fetchone()[0]
        return StorageEstimate(used=(page_count - freelist) * page_size, quota=self.quota_bytes)


def eviction_count(eligible: int, fraction: float) -> int:
    """ceil(eligible * fraction), immune to float noise like 15 * 0.2."""
    return math.ceil(round(eligible * fraction, 9))


class EvictionManager:
    """Reclaims cache space under quota pressure.

    Args:
        store: CacheStore to evict from.
        probe: Storage estimate source.
        policy: Threshold, staleness window and fraction.
    """

    def __init__(self, store, probe: QuotaProbe, policy: Optional[SyncPolicy] = None):
        self._store = store
        self._probe = probe
        self.policy = policy or store.policy

    async def _estimate(self) -> Optional[StorageEstimate]:
        try:
            return await self._probe.estimate()
        except Exception as e:
            logger.warning("Storage estimate unavailable: %s", e)
            return None

    async def evict_lru_if_needed(self) -> EvictionResult:
        """Run one eviction pass if usage is at or above the quota threshold."""
        before = await self._estimate()
        if before is None:
            logger.info("Skipping eviction: no storage estimate")
            return EvictionResult(evicted=False)

        percent_before = before.percent_used
        if percent_before < self.policy.quota_threshold * 100:
            return EvictionResult(
                evicted=False, quota_before=percent_before, quota_after=percent_before
            )

        logger.info("Storage at %.1f%% of quota, evicting stale synced rows", percent_before)
        removed = await asyncio.to_thread(self.evict_stale)

        after = await self._estimate()
        percent_after = after.percent_used if after else percent_before
        total = sum(removed.values())
        log_eviction(total, percent_before, percent_after)
        logger.info(
            "Evicted %d rows (%s); quota %.1f%% -> %.1f%%",
            total,
            ", ".join(f"{t}={n}" for t, n in removed.items()),
            percent_before,
            percent_after,
        )
        return EvictionResult(
            evicted=True,
            items_removed=total,
            quota_before=percent_before,
            quota_after=percent_after,
            removed_by_table=removed,
        )

    def evict_stale(self, now: Optional[int] = None) -> Dict[str, int]:
        """Remove the oldest eligible share of every entity table and trim the activity log.

        Sweeps every table even if usage has already dropped below the threshold.
        """
        now = now if now is not None else now_ms()
        cutoff = now - self.policy.stale_after_days * DAY_MS
        excluded = [SyncStatus.PENDING.value]
        if self.policy.protect_failed:
            excluded.append(SyncStatus.FAILED.value)
        marks = ", ".join("?" for _ in excluded)

        removed: Dict[str, int] = {}
        with self._store.connect() as conn:
            for table in EVICTABLE_TABLES:
                where = (
                    f"sync_status NOT IN ({marks}) "
                    "AND (last_accessed_at IS NULL OR last_accessed_at <= ?)"
                )
                params = [*excluded, cutoff]
                eligible = conn.execute(
                    f"SELECT COUNT(*) FROM {table} WHERE {where}", params
                ).fetchone()[0]
                to_remove = eviction_count(eligible, self.policy.eviction_fraction)
                if to_remove == 0:
                    removed[table] = 0
                    continue
                cursor = conn.execute(
                    f"""DELETE FROM {table} WHERE id IN (
                            SELECT id FROM {table} WHERE {where}
                            ORDER BY COALESCE(last_accessed_at, 0) ASC, id ASC
                            LIMIT ?
                        )""",
                    [*params, to_remove],
                )
                removed[table] = cursor.rowcount

            removed["activity_log"] = self._store.activity.prune_in(
                conn, self.policy.activity_log_retention
            )
        return removed
