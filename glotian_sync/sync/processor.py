"""Sync processor: drains the sync queue against the remote backend.

Items are handled strictly oldest-first, one at a time. For each item the
processor checks the remote row for a newer version, applies the mutation,
and settles the cached entity's status. Conflicts resolve last-write-wins
in favor of the remote row; the discarded local payload is archived.

Runs are guarded twice: overlapping calls in this process join the run
already in flight, and a persisted lease keeps other processes sharing the
cache file out while a run is active.
"""

import asyncio
import logging
import os
import socket
import traceback
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set, Tuple

from glotian_sync.config import SyncPolicy
from glotian_sync.logging_config import log_sync, log_sync_event
from glotian_sync.storage.base import SyncConflict, SyncQueueItem, SyncStats, parse_datetime
from glotian_sync.storage.lease import SyncLease
from glotian_sync.types import (
    ActivityAction,
    ActivityEntityType,
    Operation,
    SyncStatus,
    local_table_for,
)

from .remote import RemoteBackend, RemoteError
from .validation import (
    PayloadValidationError,
    is_full_row,
    summarize_row,
    validate_changes,
    validate_row,
)

logger = logging.getLogger(__name__)

# Per-item outcomes
SYNCED = "synced"
CONFLICT = "conflict"
RETRY = "retry"
FAILED = "failed"
HELD = "held"

ACTIVITY_ENTITY_TYPES = {
    "learning_notes": ActivityEntityType.LEARNING_NOTE.value,
    "flashcards": ActivityEntityType.FLASHCARD.value,
}


def remote_is_newer(remote_updated_at: Optional[str], local_updated_at: Optional[str]) -> bool:
    """True when the remote timestamp exists and is later than the local one.

    A payload without a usable timestamp loses to any timestamped remote row.
    """
    remote_ts = parse_datetime(remote_updated_at)
    if remote_ts is None:
        return False
    local_ts = parse_datetime(local_updated_at)
    if local_ts is None:
        return True
    return remote_ts > local_ts


def _default_holder() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class SyncProcessor:
    """Drains the sync queue.

    Args:
        store: CacheStore holding the queue and the cached entities.
        remote: Remote backend the queue is applied to.
        policy: Retry policy; defaults to the store's.
        remote_timeout: Seconds allowed per remote call.
        lease_ttl_seconds: Heartbeat age after which a stuck lease is taken over.
        holder: Lease holder name; unique per processor by default.
    """

    def __init__(
        self,
        store,
        remote: RemoteBackend,
        policy: Optional[SyncPolicy] = None,
        remote_timeout: float = 10.0,
        lease_ttl_seconds: float = 120.0,
        holder: Optional[str] = None,
    ):
        self._store = store
        self._remote = remote
        self.policy = policy or store.policy
        self.remote_timeout = remote_timeout
        self.holder = holder or _default_holder()
        self._lease = SyncLease(store.connect, ttl_seconds=lease_ttl_seconds)
        self._inflight: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    async def process_sync_queue(self, user_id: Optional[str] = None) -> SyncStats:
        """Drain the queue once and return {synced, failed, conflicts}.

        Never raises for sync failures. A call made while a run is in flight
        returns that run's result instead of starting another.
        """
        if self.is_running:
            logger.debug("Sync already running, joining in-flight run")
        else:
            self._inflight = asyncio.ensure_future(self._guarded_run(user_id))
        return await asyncio.shield(self._inflight)

    async def _guarded_run(self, user_id: Optional[str]) -> SyncStats:
        stats = SyncStats()
        try:
            acquired = await asyncio.to_thread(self._lease.acquire, self.holder)
        except Exception as e:
            await self._diagnose("Could not acquire sync lease", e, {"holder": self.holder})
            return stats
        if not acquired:
            logger.info("Sync skipped: another process holds the sync lease")
            return stats

        try:
            await self._run(user_id, stats)
        except Exception as e:
            await self._diagnose("Sync run aborted", e, {"user_id": user_id})
        finally:
            try:
                await asyncio.to_thread(self._lease.release, self.holder)
            except Exception as e:
                logger.warning("Could not release sync lease: %s", e)
        return stats

    async def _run(self, user_id: Optional[str], stats: SyncStats) -> None:
        items = await asyncio.to_thread(self._store.queue.list)
        if not items:
            await asyncio.to_thread(self._store.set_last_sync_time)
            return

        logger.info("Processing %d queued sync items", len(items))
        # Entities with a failure this run; their later items wait for the next run
        blocked: Set[Tuple[str, str]] = set()

        for item in items:
            key = (item.table_name, item.entity_id)
            if key in blocked:
                continue
            try:
                outcome = await self._process_item(item, user_id)
            except Exception as e:
                # Bookkeeping itself failed; leave the item for the next run
                await self._diagnose("Sync item bookkeeping failed", e, self._context(item))
                outcome = FAILED

            if outcome == SYNCED:
                stats.synced += 1
            elif outcome == CONFLICT:
                stats.conflicts += 1
            elif outcome in (RETRY, FAILED):
                stats.failed += 1
                blocked.add(key)
            elif outcome == HELD:
                blocked.add(key)

            if not await asyncio.to_thread(self._lease.heartbeat, self.holder):
                logger.warning(
                    "Sync lease lost to %s, stopping run after %d synced",
                    await asyncio.to_thread(self._lease.current_holder),
                    stats.synced,
                )
                return

        await asyncio.to_thread(self._store.set_last_sync_time)
        logger.info(
            "Sync finished: synced=%d failed=%d conflicts=%d",
            stats.synced,
            stats.failed,
            stats.conflicts,
        )
        log_sync(user_id, stats.synced, stats.failed, stats.conflicts)

    # === Per-Item Algorithm ===

    async def _process_item(self, item: SyncQueueItem, user_id: Optional[str]) -> str:
        try:
            local_table = local_table_for(item.table_name)
        except ValueError as e:
            await self._fail_permanently(item, None, e)
            return FAILED

        status = await asyncio.to_thread(self._store.get_status, local_table, item.entity_id)
        if status == SyncStatus.FAILED.value:
            # Failed is terminal until the user resets it
            return HELD

        payload = item.payload or {}
        try:
            remote_exists = None
            if item.operation in (Operation.UPDATE.value, Operation.DELETE.value):
                version = await self._call(
                    self._remote.fetch_version(item.table_name, item.entity_id)
                )
                remote_exists = version is not None
                if remote_exists and remote_is_newer(
                    version.get("updated_at"), payload.get("updated_at")
                ):
                    return await self._resolve_conflict(item, user_id)
                if not remote_exists and item.operation == Operation.DELETE.value:
                    await asyncio.to_thread(
                        self._store.complete_queue_item, item, SyncStatus.SYNCED.value
                    )
                    return SYNCED

            await self._apply(item, payload, remote_exists)
        except PayloadValidationError as e:
            await self._fail_permanently(item, local_table, e)
            return FAILED
        except (RemoteError, asyncio.TimeoutError) as e:
            return await self._record_retry(item, e)
        except Exception as e:
            # Unclassified failures are treated as transient so they stay bounded
            logger.warning(
                "Unexpected sync error for %s/%s: %s", item.table_name, item.entity_id, e
            )
            return await self._record_retry(item, e)

        await asyncio.to_thread(self._store.complete_queue_item, item, SyncStatus.SYNCED.value)
        logger.debug("Synced %s %s/%s", item.operation, item.table_name, item.entity_id)
        return SYNCED

    async def _apply(
        self, item: SyncQueueItem, payload: Dict[str, Any], remote_exists: Optional[bool]
    ) -> None:
        table = item.table_name
        if item.operation == Operation.CREATE.value:
            row = validate_row(table, payload)
            await self._call(self._remote.insert(table, row.model_dump()))
        elif item.operation == Operation.UPDATE.value:
            if remote_exists is False:
                if not is_full_row(table, payload):
                    raise PayloadValidationError(
                        table, ["row is missing remotely and the payload is not a full row"]
                    )
                row = validate_row(table, payload)
                await self._call(self._remote.insert(table, row.model_dump()))
            else:
                changes = validate_changes(table, payload)
                await self._call(self._remote.update(table, item.entity_id, changes))
        elif item.operation == Operation.DELETE.value:
            await self._call(self._remote.delete(table, item.entity_id))
        else:
            raise PayloadValidationError(table, [f"unknown operation {item.operation!r}"])

    async def _resolve_conflict(self, item: SyncQueueItem, user_id: Optional[str]) -> str:
        """Remote row is newer: it wins, the local payload is archived."""
        row = await self._call(self._remote.fetch_row(item.table_name, item.entity_id))
        if row is None:
            raise RemoteError(f"{item.table_name}/{item.entity_id} vanished during conflict check")
        validated = validate_row(item.table_name, row)
        remote_row = validated.model_dump()

        conflict = SyncConflict(
            id=str(uuid.uuid4()),
            table=item.table_name,
            record_id=item.entity_id,
            local_version=item.payload or {},
            remote_version=remote_row,
            resolution="remote_wins",
            resolved_at=datetime.now(timezone.utc),
            local_summary=summarize_row(item.table_name, item.payload),
            remote_summary=summarize_row(item.table_name, remote_row),
        )
        overwritten = await asyncio.to_thread(
            self._store.resolve_with_remote, item, validated, conflict
        )

        owner = user_id or remote_row.get("user_id") or ""
        await asyncio.to_thread(
            self._store.activity.log,
            owner,
            ActivityAction.SYNC_CONFLICT.value,
            ACTIVITY_ENTITY_TYPES.get(item.table_name),
            item.entity_id,
            {
                "table": item.table_name,
                "operation": item.operation,
                "local_updated_at": (item.payload or {}).get("updated_at"),
                "remote_updated_at": remote_row.get("updated_at"),
                "conflict_id": conflict.id,
            },
        )
        log_sync_event(
            "conflict",
            f"{item.table_name}/{item.entity_id} remote_wins overwritten={overwritten}",
            user_id=owner,
        )
        logger.info(
            "Conflict on %s/%s resolved in favor of remote", item.table_name, item.entity_id
        )
        return CONFLICT

    # === Failure Bookkeeping ===

    async def _record_retry(self, item: SyncQueueItem, error: Exception) -> str:
        message = str(error) or type(error).__name__
        retry_count = item.retry_count + 1
        if retry_count >= self.policy.max_retries:
            logger.warning(
                "Giving up on %s %s/%s after %d attempts: %s",
                item.operation,
                item.table_name,
                item.entity_id,
                retry_count,
                message,
            )
            await asyncio.to_thread(self._store.complete_queue_item, item, SyncStatus.FAILED.value)
            await self._diagnose(
                "Sync item failed permanently", error, self._context(item, retry_count)
            )
            return RETRY

        await asyncio.to_thread(self._store.queue.record_retry, item.id, message)
        logger.info(
            "Retryable failure %d/%d for %s/%s: %s",
            retry_count,
            self.policy.max_retries,
            item.table_name,
            item.entity_id,
            message,
        )
        return RETRY

    async def _fail_permanently(
        self, item: SyncQueueItem, local_table: Optional[str], error: Exception
    ) -> None:
        if local_table is None:
            await asyncio.to_thread(self._store.queue.remove, item.id)
        else:
            await asyncio.to_thread(self._store.complete_queue_item, item, SyncStatus.FAILED.value)
        await self._diagnose("Sync payload rejected", error, self._context(item))

    async def _call(self, coro):
        """Await one remote call under the per-call timeout."""
        try:
            return await asyncio.wait_for(coro, self.remote_timeout)
        except asyncio.TimeoutError as e:
            raise RemoteError(f"remote call timed out after {self.remote_timeout}s") from e

    @staticmethod
    def _context(item: SyncQueueItem, retry_count: Optional[int] = None) -> Dict[str, Any]:
        return {
            "queue_id": item.id,
            "operation": item.operation,
            "table": item.table_name,
            "entity_id": item.entity_id,
            "retry_count": item.retry_count if retry_count is None else retry_count,
        }

    async def _diagnose(self, message: str, error: Exception, context: Dict[str, Any]) -> None:
        """Side-channel diagnostics: the error log table plus logging."""
        logger.warning("%s: %s (%s)", message, error, context)
        stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        try:
            await asyncio.to_thread(
                self._store.log_error, f"{message}: {error}", context, stack
            )
        except Exception:
            logger.exception("Could not write sync diagnostic")
