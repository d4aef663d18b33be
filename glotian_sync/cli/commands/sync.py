"""Sync commands: status, sync, evict, reset-failed, conflicts, activity, errors."""

import asyncio
import json
import logging
from datetime import datetime, timezone

from glotian_sync.storage.eviction import EvictionManager, SqliteQuotaProbe
from glotian_sync.sync.processor import SyncProcessor
from glotian_sync.sync.remote import SupabaseRemote

logger = logging.getLogger(__name__)


def _print_json(data):
    print(json.dumps(data, indent=2, default=str))


def _elapsed(when: datetime) -> str:
    seconds = int((datetime.now(timezone.utc) - when).total_seconds())
    if seconds < 60:
        return "just now"
    if seconds < 3600:
        return f"{seconds // 60} minutes ago"
    if seconds < 86400:
        return f"{seconds // 3600} hours ago"
    return f"{seconds // 86400} days ago"


def cmd_status(args, store, settings):
    summary = store.sync_status_summary(args.user)
    if args.json:
        _print_json(summary)
        return 0

    queue = summary["queue"]
    pending_icon = "🟡" if queue["total"] else "🟢"
    print("Sync Status")
    print("=" * 50)
    print(f"{pending_icon} Queued operations: {queue['total']}")
    if queue["failed"]:
        print(f"   Retrying: {queue['failed']}")
    print(f"✓ Synced entities: {summary['synced']}")
    print(f"… Pending entities: {summary['pending']}")
    if summary["failed"]:
        print(f"🔴 Failed entities: {summary['failed']} (run `reset-failed` to retry)")
    last_sync = store.get_last_sync_time()
    if last_sync:
        print(f"🕐 Last sync: {_elapsed(last_sync)}")
        print(f"   ({last_sync.isoformat()[:19]})")
    else:
        print("🕐 Last sync: never")
    return 0


def cmd_sync(args, store, settings):
    user_id = args.user or settings.user_id
    try:
        remote = SupabaseRemote.from_settings(settings)
    except ValueError as e:
        print(f"✗ {e}")
        return 1

    processor = SyncProcessor(
        store,
        remote,
        policy=settings.policy,
        remote_timeout=settings.remote_timeout_seconds,
        lease_ttl_seconds=settings.lease_ttl_seconds,
    )
    stats = asyncio.run(processor.process_sync_queue(user_id))
    if args.json:
        _print_json(stats.to_dict())
        return 0
    print(f"✓ Synced {stats.synced}")
    if stats.conflicts:
        print(f"⚠️  {stats.conflicts} conflicts resolved in favor of the remote copy")
    if stats.failed:
        print(f"✗ {stats.failed} failed (see `errors`)")
    return 0 if stats.failed == 0 else 2


def cmd_evict(args, store, settings):
    quota = args.quota or settings.storage_quota_bytes
    manager = EvictionManager(store, SqliteQuotaProbe(store, quota), policy=settings.policy)
    result = asyncio.run(manager.evict_lru_if_needed())
    if args.json:
        _print_json(
            {
                "evicted": result.evicted,
                "itemsRemoved": result.items_removed,
                "quotaBefore": result.quota_before,
                "quotaAfter": result.quota_after,
                "removedByTable": result.removed_by_table,
            }
        )
        return 0
    if not quota:
        print("No storage quota configured, eviction skipped")
    elif result.evicted:
        print(f"✓ Evicted {result.items_removed} rows")
        print(f"   Usage: {result.quota_before:.1f}% -> {result.quota_after:.1f}%")
    else:
        print(f"Usage {result.quota_before:.1f}% is below the eviction threshold")
    return 0


def cmd_reset_failed(args, store, settings):
    count = store.reset_failed(args.user)
    if args.json:
        _print_json({"reset": count})
    else:
        print(f"✓ Reset {count} failed entities to pending")
    return 0


def cmd_conflicts(args, store, settings):
    if args.clear:
        cleared = store.clear_sync_conflicts()
        print(f"✓ Cleared {cleared} conflict records")
        return 0
    conflicts = store.get_sync_conflicts(limit=args.limit)
    if args.json:
        _print_json(
            [
                {
                    "id": c.id,
                    "table": c.table,
                    "record_id": c.record_id,
                    "resolution": c.resolution,
                    "resolved_at": c.resolved_at,
                    "local_version": c.local_version,
                    "remote_version": c.remote_version,
                }
                for c in conflicts
            ]
        )
        return 0
    if not conflicts:
        print("No sync conflicts")
        return 0
    for c in conflicts:
        print(f"⚠️  {c.table}/{c.record_id} ({c.resolution}) at {c.resolved_at}")
        print(f"   local:  {c.local_summary}")
        print(f"   remote: {c.remote_summary}")
    return 0


def cmd_activity(args, store, settings):
    user_id = args.user or settings.user_id
    if not user_id:
        print("✗ --user is required (or set GLOTIAN_USER_ID)")
        return 1
    if args.counts:
        counts = store.activity.counts(user_id)
        if args.json:
            _print_json(counts)
        else:
            print(", ".join(f"{k}={v}" for k, v in counts.items()))
        return 0
    entries = store.activity.filtered(
        user_id, action=args.action, sync_status=args.status, limit=args.limit
    )
    if args.json:
        _print_json([e.__dict__ for e in entries])
        return 0
    for e in entries:
        when = datetime.fromtimestamp(e.timestamp / 1000, tz=timezone.utc).isoformat()[:19]
        target = f" {e.entity_type}/{e.entity_id}" if e.entity_id else ""
        print(f"{when} [{e.sync_status}] {e.action}{target}")
    return 0


def cmd_errors(args, store, settings):
    if args.clear:
        print(f"✓ Cleared {store.clear_error_log()} error entries")
        return 0
    entries = store.get_error_log(limit=args.limit)
    if args.json:
        _print_json([e.__dict__ for e in entries])
        return 0
    if not entries:
        print("No errors logged")
    for e in entries:
        when = datetime.fromtimestamp(e.timestamp / 1000, tz=timezone.utc).isoformat()[:19]
        print(f"{when} {e.message}")
    return 0
