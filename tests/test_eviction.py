"""Tests for quota-driven LRU eviction."""

from unittest.mock import AsyncMock

import pytest

from glotian_sync.config import SyncPolicy
from glotian_sync.storage.base import StorageEstimate, now_ms
from glotian_sync.storage.eviction import (
    DAY_MS,
    EvictionManager,
    SqliteQuotaProbe,
    eviction_count,
)


class StubProbe:
    """Returns queued estimates in order, repeating the last one."""

    def __init__(self, *estimates):
        self._estimates = list(estimates)

    async def estimate(self):
        if len(self._estimates) > 1:
            return self._estimates.pop(0)
        return self._estimates[0]


def _stale(days=31):
    return now_ms() - days * DAY_MS


@pytest.fixture
def populate(store, make_note):
    def _populate(count, prefix, sync_status="synced", last_accessed=None, start=0):
        for n in range(count):
            accessed = last_accessed if last_accessed is not None else _stale() - (start + n) * 1000
            store.put(
                make_note(
                    f"{prefix}{n}",
                    sync_status=sync_status,
                    last_accessed_at=accessed,
                )
            )

    return _populate


class TestTrigger:
    @pytest.mark.asyncio
    async def test_below_threshold_does_nothing(self, store, populate):
        populate(10, "s")
        manager = EvictionManager(store, StubProbe(StorageEstimate(used=50, quota=100)))
        result = await manager.evict_lru_if_needed()
        assert result.evicted is False
        assert result.quota_before == 50.0
        assert store.count("notes") == 10

    @pytest.mark.asyncio
    async def test_exactly_at_threshold_evicts(self, store, populate):
        populate(10, "s")
        manager = EvictionManager(store, StubProbe(StorageEstimate(used=90, quota=100)))
        result = await manager.evict_lru_if_needed()
        assert result.evicted is True
        assert store.count("notes") == 8

    @pytest.mark.asyncio
    async def test_unavailable_estimate_skips(self, store, populate):
        populate(10, "s")
        manager = EvictionManager(store, StubProbe(None))
        result = await manager.evict_lru_if_needed()
        assert result.evicted is False
        assert store.count("notes") == 10

    @pytest.mark.asyncio
    async def test_probe_error_skips(self, store, populate):
        populate(10, "s")
        probe = AsyncMock()
        probe.estimate.side_effect = OSError("no estimate")
        result = await EvictionManager(store, probe).evict_lru_if_needed()
        assert result.evicted is False
        assert store.count("notes") == 10


class TestScenarioD:
    @pytest.mark.asyncio
    async def test_removes_twenty_oldest_of_hundred(self, store, populate):
        populate(100, "old")
        populate(40, "pending", sync_status="pending", last_accessed=_stale(400))
        populate(40, "recent", last_accessed=now_ms() - DAY_MS)
        probe = StubProbe(StorageEstimate(95, 100), StorageEstimate(80, 100))

        result = await EvictionManager(store, probe).evict_lru_if_needed()

        assert result.evicted is True
        assert result.items_removed == 20
        assert result.removed_by_table["notes"] == 20
        assert result.quota_before == 95.0
        assert result.quota_after == 80.0

        remaining = {n.id for n in store.list("notes")}
        # The oldest rows are the highest-numbered "old" rows
        assert not {f"old{n}" for n in range(80, 100)} & remaining
        assert {f"old{n}" for n in range(80)} <= remaining
        assert {f"pending{n}" for n in range(40)} <= remaining
        assert {f"recent{n}" for n in range(40)} <= remaining


class TestEvictionProperties:
    @pytest.mark.parametrize(
        "eligible,expected", [(1, 1), (4, 1), (5, 1), (6, 2), (15, 3), (99, 20)]
    )
    def test_eviction_count_is_ceiling(self, eligible, expected):
        assert eviction_count(eligible, 0.2) == expected

    def test_pending_and_recent_never_evicted(self, store, populate):
        populate(7, "pending", sync_status="pending", last_accessed=_stale(365))
        populate(7, "recent", last_accessed=now_ms())
        policy = SyncPolicy(eviction_fraction=1.0)
        manager = EvictionManager(store, StubProbe(None), policy=policy)
        removed = manager.evict_stale()
        assert removed["notes"] == 0
        assert store.count("notes") == 14

    def test_failed_rows_are_eligible_unless_protected(self, store, populate):
        populate(5, "failed", sync_status="failed")
        everything = SyncPolicy(eviction_fraction=1.0)
        protected = SyncPolicy(eviction_fraction=1.0, protect_failed=True)
        kept = EvictionManager(store, StubProbe(None), policy=protected).evict_stale()
        assert kept["notes"] == 0
        swept = EvictionManager(store, StubProbe(None), policy=everything).evict_stale()
        assert swept["notes"] == 5

    def test_sweeps_every_table(self, store, make_flashcard, make_deck):
        for n in range(5):
            store.put(make_flashcard(f"f{n}", sync_status="synced", last_accessed_at=_stale()))
            store.put(make_deck(f"d{n}", sync_status="synced", last_accessed_at=_stale()))
        removed = EvictionManager(store, StubProbe(None)).evict_stale()
        assert removed["flashcards"] == 1
        assert removed["decks"] == 1

    def test_activity_log_trimmed_to_retention(self, store):
        for _ in range(12):
            store.activity.log("user-1", "note_created", sync_status="pending")
        policy = SyncPolicy(activity_log_retention=5)
        removed = EvictionManager(store, StubProbe(None), policy=policy).evict_stale()
        assert removed["activity_log"] == 7
        assert store.activity.count() == 5

    def test_custom_fraction_and_window(self, store, populate):
        populate(10, "s", last_accessed=now_ms() - 3 * DAY_MS)
        policy = SyncPolicy(eviction_fraction=0.5, stale_after_days=2)
        removed = EvictionManager(store, StubProbe(None), policy=policy).evict_stale()
        assert removed["notes"] == 5


class TestSqliteQuotaProbe:
    @pytest.mark.asyncio
    async def test_no_quota_means_no_estimate(self, store):
        assert await SqliteQuotaProbe(store, None).estimate() is None

    @pytest.mark.asyncio
    async def test_reports_used_bytes(self, store):
        estimate = await SqliteQuotaProbe(store, 10_000_000).estimate()
        assert estimate.quota == 10_000_000
        assert 0 < estimate.used < estimate.quota
