"""Sync triggers.

Every trigger (explicit request, reconnect, periodic timer, inbound web app
message) funnels into SyncProcessor.process_sync_queue, which coalesces
overlapping runs.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from glotian_sync.storage.base import SyncStats
from glotian_sync.types import SyncStatus, local_table_for

from .processor import SyncProcessor, remote_is_newer
from .validation import validate_row

logger = logging.getLogger(__name__)

# syncEvent entity token -> (remote table, id key, row key)
WEB_APP_ENTITIES = {
    "FLASHCARD": ("flashcards", "flashcardId", "flashcard"),
    "NOTE": ("learning_notes", "noteId", "note"),
    "DECK": ("flashcard_decks", "deckId", "deck"),
}


def _entity_for_event(event_type: str):
    for token, spec in WEB_APP_ENTITIES.items():
        if f"{token}_" in event_type:
            return spec
    return None


def _empty_status() -> Dict[str, Any]:
    return {
        "type": "SYNC_STATUS",
        "pendingCount": 0,
        "syncedCount": 0,
        "failedCount": 0,
        "conflictCount": 0,
        "lastSyncTime": None,
    }


class SyncTriggers:
    """Trigger surface around a SyncProcessor.

    Args:
        processor: The processor every trigger calls.
        store: CacheStore, for status reporting and inbound cache updates.
        user_id: Current user; None while signed out.
        interval_minutes: Periodic sync cadence.
        online: Initial network state.
    """

    def __init__(
        self,
        processor: SyncProcessor,
        store,
        user_id: Optional[str] = None,
        interval_minutes: float = 5.0,
        online: bool = True,
    ):
        self._processor = processor
        self._store = store
        self.user_id = user_id
        self.interval_seconds = interval_minutes * 60
        self.online = online

    async def request_sync(self, user_id: Optional[str] = None) -> SyncStats:
        """Explicit sync request."""
        return await self._processor.process_sync_queue(user_id or self.user_id)

    async def on_reconnect(self) -> Optional[SyncStats]:
        self.online = True
        if not self.user_id:
            return None
        logger.info("Network back online, syncing")
        return await self.request_sync()

    def on_disconnect(self) -> None:
        self.online = False
        logger.info("Network offline, sync paused")

    async def periodic_tick(self) -> Optional[SyncStats]:
        """One timer tick: syncs only when online and signed in."""
        if not self.online or not self.user_id:
            return None
        return await self.request_sync()

    async def run_periodic(self, stop_event: asyncio.Event) -> None:
        """Tick every interval until stop_event is set."""
        while not stop_event.is_set():
            await self.periodic_tick()
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue

    # === Messages ===

    async def handle_message(self, message: Dict[str, Any]) -> Dict[str, Any]:
        """Answer one runtime message; store and sync errors become error replies."""
        msg_type = message.get("type")
        if msg_type == "SYNC_NOW":
            try:
                return await self._sync_now()
            except Exception as e:
                await self._report("handleSyncNow", e, {})
                return _empty_status()
        if msg_type == "WEB_APP_SYNC":
            sync_event = message.get("syncEvent") or {}
            try:
                await self._handle_web_app_sync(sync_event)
            except Exception as e:
                await self._report("handleWebAppSync", e, {"eventType": sync_event.get("type")})
                return {"success": False, "error": str(e)}
            return {"success": True}
        return {"success": False, "error": f"Unknown message type: {msg_type}"}

    async def _report(self, handler: str, error: Exception, context: Dict[str, Any]) -> None:
        logger.warning("%s failed: %s", handler, error)
        try:
            await asyncio.to_thread(self._store.log_error, f"{handler}: {error}", context)
        except Exception:
            logger.exception("Could not write %s diagnostic", handler)

    async def _sync_now(self) -> Dict[str, Any]:
        if not self.user_id:
            return _empty_status()
        stats = await self.request_sync()
        pending = await asyncio.to_thread(self._store.queue.count)
        failed = await asyncio.to_thread(self._store.queue.count_failed)
        last_sync = await asyncio.to_thread(self._store.get_last_sync_time)
        return {
            "type": "SYNC_STATUS",
            "pendingCount": pending,
            "syncedCount": stats.synced,
            "failedCount": failed,
            "conflictCount": stats.conflicts,
            "lastSyncTime": last_sync.isoformat() if last_sync else None,
        }

    async def _handle_web_app_sync(self, sync_event: Dict[str, Any]) -> None:
        event_type = str(sync_event.get("type", ""))
        if "BULK_SYNC" in event_type:
            if self.user_id:
                await self.request_sync()
            return

        spec = _entity_for_event(event_type)
        if spec is None:
            raise ValueError(f"Unknown sync event type: {event_type}")
        remote_table, id_key, row_key = spec

        if event_type.endswith("_DELETED"):
            entity_id = sync_event.get(id_key)
            if entity_id:
                await asyncio.to_thread(
                    self._store.delete, local_table_for(remote_table), entity_id
                )
                logger.info("Deleted %s/%s from cache", remote_table, entity_id)
            return

        if event_type.endswith(("_CREATED", "_UPDATED")):
            row = sync_event.get(row_key)
            if not row:
                return
            validated = validate_row(remote_table, row)
            await asyncio.to_thread(self._apply_inbound, remote_table, validated)
            return

        raise ValueError(f"Unknown sync event type: {event_type}")

    def _apply_inbound(self, remote_table: str, validated) -> None:
        """Cache an inbound row unless a newer local edit is still pending."""
        table = local_table_for(remote_table)
        local = self._store.get(table, validated.id, touch=False)
        if (
            local is not None
            and local.sync_status == SyncStatus.PENDING.value
            and not remote_is_newer(validated.updated_at, local.updated_at)
        ):
            logger.info("Kept pending local %s/%s over older inbound row", table, validated.id)
            return
        self._store.put_from_remote(remote_table, validated)
