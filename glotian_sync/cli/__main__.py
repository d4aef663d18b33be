"""glotian-sync command line."""

import argparse
import logging
import sys

from glotian_sync.config import get_settings
from glotian_sync.logging_config import setup_logging
from glotian_sync.storage.sqlite import CacheStore

from .commands.sync import (
    cmd_activity,
    cmd_conflicts,
    cmd_errors,
    cmd_evict,
    cmd_reset_failed,
    cmd_status,
    cmd_sync,
)

logger = logging.getLogger(__name__)

COMMANDS = {
    "status": cmd_status,
    "sync": cmd_sync,
    "evict": cmd_evict,
    "reset-failed": cmd_reset_failed,
    "conflicts": cmd_conflicts,
    "activity": cmd_activity,
    "errors": cmd_errors,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="glotian-sync",
        description="Offline-first sync for Glotian notes, flashcards and decks",
    )
    parser.add_argument("--user", "-u", help="User ID (defaults to GLOTIAN_USER_ID)")
    parser.add_argument("--json", "-j", action="store_true", help="Output JSON")

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("status", help="Show sync status")
    subparsers.add_parser("sync", help="Drain the sync queue now")

    p_evict = subparsers.add_parser("evict", help="Evict stale synced rows if over quota")
    p_evict.add_argument("--quota", type=int, help="Storage quota in bytes")

    subparsers.add_parser("reset-failed", help="Reset failed entities to pending")

    p_conflicts = subparsers.add_parser("conflicts", help="Show resolved sync conflicts")
    p_conflicts.add_argument("--limit", "-l", type=int, default=20)
    p_conflicts.add_argument("--clear", action="store_true", help="Clear conflict history")

    p_activity = subparsers.add_parser("activity", help="Show the activity log")
    p_activity.add_argument("--action", help="Filter by action")
    p_activity.add_argument("--status", choices=["pending", "synced", "failed"])
    p_activity.add_argument("--limit", "-l", type=int, default=20)
    p_activity.add_argument("--counts", action="store_true", help="Show counts by status")

    p_errors = subparsers.add_parser("errors", help="Show sync diagnostics")
    p_errors.add_argument("--limit", "-l", type=int, default=20)
    p_errors.add_argument("--clear", action="store_true", help="Clear the error log")

    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    settings = get_settings()
    setup_logging(args.user or settings.user_id or "default", settings.log_level)
    store = CacheStore(settings.resolved_db_path(), policy=settings.policy)

    try:
        return COMMANDS[args.command](args, store, settings)
    except KeyboardInterrupt:
        print("\nInterrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
