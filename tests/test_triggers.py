"""Tests for sync triggers and the message surface."""

import asyncio
import sqlite3
from unittest.mock import AsyncMock, patch

import pytest

from glotian_sync.storage.base import SyncStats
from glotian_sync.sync.processor import SyncProcessor
from glotian_sync.sync.triggers import SyncTriggers


@pytest.fixture
def processor(store, remote):
    return SyncProcessor(store, remote)


@pytest.fixture
def triggers(processor, store):
    return SyncTriggers(processor, store, user_id="user-1")


def _card_row(card_id="f1", updated="2026-01-01T00:00:00+00:00", **kwargs):
    row = {
        "id": card_id,
        "user_id": "user-1",
        "deck_id": "d1",
        "term": "chien",
        "definition": "dog",
        "language": "fr",
        "created_at": "2026-01-01T00:00:00+00:00",
        "updated_at": updated,
    }
    row.update(kwargs)
    return row


class TestSyncNow:
    @pytest.mark.asyncio
    async def test_signed_out_does_not_sync(self, processor, store, remote, make_note):
        store.save(make_note("n1"))
        triggers = SyncTriggers(processor, store, user_id=None)

        reply = await triggers.handle_message({"type": "SYNC_NOW"})

        assert reply == {
            "type": "SYNC_STATUS",
            "pendingCount": 0,
            "syncedCount": 0,
            "failedCount": 0,
            "conflictCount": 0,
            "lastSyncTime": None,
        }
        assert store.queue.count() == 1
        assert remote.calls == []

    @pytest.mark.asyncio
    async def test_failed_count_is_queue_items_with_retries(self, triggers, store, make_note):
        item_id = store.save(make_note("n1"))
        store.queue.record_retry(item_id, "insert unavailable")
        store.mark_status("notes", "n1", "failed")

        reply = await triggers.handle_message({"type": "SYNC_NOW"})

        assert reply["pendingCount"] == 1
        assert reply["failedCount"] == 1

    @pytest.mark.asyncio
    async def test_store_error_returns_empty_status(self, triggers, store):
        with patch.object(
            store.queue, "count", side_effect=sqlite3.OperationalError("database is locked")
        ):
            reply = await triggers.handle_message({"type": "SYNC_NOW"})

        assert reply["type"] == "SYNC_STATUS"
        assert reply["pendingCount"] == 0
        assert reply["lastSyncTime"] is None
        assert store.get_error_log()[0].message == "handleSyncNow: database is locked"

    @pytest.mark.asyncio
    async def test_reports_status(self, triggers, store, make_note):
        store.save(make_note("n1"))

        reply = await triggers.handle_message({"type": "SYNC_NOW"})

        assert reply["type"] == "SYNC_STATUS"
        assert reply["pendingCount"] == 0
        assert reply["syncedCount"] == 1
        assert reply["failedCount"] == 0
        assert reply["conflictCount"] == 0
        assert reply["lastSyncTime"] is not None

    @pytest.mark.asyncio
    async def test_pending_count_reflects_retries(self, triggers, store, remote, make_note):
        store.save(make_note("n1"))
        remote.fail("insert")
        reply = await triggers.handle_message({"type": "SYNC_NOW"})
        assert reply["pendingCount"] == 1
        assert reply["failedCount"] == 1

    @pytest.mark.asyncio
    async def test_unknown_message(self, triggers):
        reply = await triggers.handle_message({"type": "PING"})
        assert reply == {"success": False, "error": "Unknown message type: PING"}


class TestWebAppSync:
    @pytest.mark.asyncio
    async def test_created_row_cached_as_synced(self, triggers, store):
        event = {"type": "FLASHCARD_CREATED", "flashcard": _card_row()}
        reply = await triggers.handle_message({"type": "WEB_APP_SYNC", "syncEvent": event})
        assert reply == {"success": True}
        card = store.get("flashcards", "f1")
        assert card.term == "chien"
        assert card.sync_status == "synced"

    @pytest.mark.asyncio
    async def test_note_row_renamed_into_cache(self, triggers, store, note_row):
        event = {"type": "NOTE_UPDATED", "note": note_row("n1", grammar_explanation="tip")}
        await triggers.handle_message({"type": "WEB_APP_SYNC", "syncEvent": event})
        note = store.get("notes", "n1")
        assert note.content == "la pomme"
        assert note.summary == "tip"

    @pytest.mark.asyncio
    async def test_deleted_event_removes_row(self, triggers, store, make_deck):
        store.put(make_deck("d1", sync_status="synced"))
        event = {"type": "DECK_DELETED", "deckId": "d1"}
        reply = await triggers.handle_message({"type": "WEB_APP_SYNC", "syncEvent": event})
        assert reply == {"success": True}
        assert store.get("decks", "d1") is None
        assert store.queue.count() == 0

    @pytest.mark.asyncio
    async def test_invalid_row_rejected(self, triggers, store):
        row = _card_row()
        del row["term"]
        event = {"type": "FLASHCARD_UPDATED", "flashcard": row}

        reply = await triggers.handle_message({"type": "WEB_APP_SYNC", "syncEvent": event})

        assert reply["success"] is False
        assert "term" in reply["error"]
        assert store.get("flashcards", "f1") is None
        assert store.get_error_log()[0].context == {"eventType": "FLASHCARD_UPDATED"}

    @pytest.mark.asyncio
    async def test_store_error_becomes_error_reply(self, triggers, store):
        event = {"type": "DECK_DELETED", "deckId": "d1"}
        with patch.object(
            store, "delete", side_effect=sqlite3.OperationalError("database is locked")
        ):
            reply = await triggers.handle_message({"type": "WEB_APP_SYNC", "syncEvent": event})

        assert reply == {"success": False, "error": "database is locked"}
        entry = store.get_error_log()[0]
        assert entry.message == "handleWebAppSync: database is locked"
        assert entry.context == {"eventType": "DECK_DELETED"}

    @pytest.mark.asyncio
    async def test_unknown_event_rejected(self, triggers):
        event = {"type": "SOMETHING_ELSE"}
        reply = await triggers.handle_message({"type": "WEB_APP_SYNC", "syncEvent": event})
        assert reply["success"] is False
        assert "Unknown sync event type" in reply["error"]

    @pytest.mark.asyncio
    async def test_pending_local_edit_kept_over_older_row(
        self, triggers, store, make_flashcard
    ):
        store.save(make_flashcard("f1", updated=10, term="mine"), "update")
        event = {"type": "FLASHCARD_UPDATED", "flashcard": _card_row(term="theirs")}

        await triggers.handle_message({"type": "WEB_APP_SYNC", "syncEvent": event})

        card = store.get("flashcards", "f1")
        assert card.term == "mine"
        assert card.sync_status == "pending"

    @pytest.mark.asyncio
    async def test_newer_inbound_row_replaces_pending_edit(
        self, triggers, store, make_flashcard
    ):
        store.save(make_flashcard("f1", updated=0, term="mine"), "update")
        row = _card_row(term="theirs", updated="2026-01-02T00:00:00+00:00")
        event = {"type": "FLASHCARD_UPDATED", "flashcard": row}

        await triggers.handle_message({"type": "WEB_APP_SYNC", "syncEvent": event})

        assert store.get("flashcards", "f1").term == "theirs"

    @pytest.mark.asyncio
    async def test_bulk_sync_runs_processor(self, triggers, store, remote, make_note):
        store.save(make_note("n1"))
        reply = await triggers.handle_message(
            {"type": "WEB_APP_SYNC", "syncEvent": {"type": "BULK_SYNC"}}
        )
        assert reply == {"success": True}
        assert "n1" in remote.tables["learning_notes"]


class TestLifecycleTriggers:
    @pytest.mark.asyncio
    async def test_periodic_tick_skips_when_offline(self, triggers):
        triggers.on_disconnect()
        assert await triggers.periodic_tick() is None

    @pytest.mark.asyncio
    async def test_periodic_tick_skips_without_user(self, processor, store):
        triggers = SyncTriggers(processor, store, user_id=None)
        assert await triggers.periodic_tick() is None

    @pytest.mark.asyncio
    async def test_reconnect_syncs(self, triggers, store, make_note):
        store.save(make_note("n1"))
        triggers.on_disconnect()
        stats = await triggers.on_reconnect()
        assert triggers.online is True
        assert stats.synced == 1

    @pytest.mark.asyncio
    async def test_reconnect_without_user(self, processor, store):
        triggers = SyncTriggers(processor, store, user_id=None, online=False)
        assert await triggers.on_reconnect() is None
        assert triggers.online is True

    @pytest.mark.asyncio
    async def test_run_periodic_stops(self, store):
        processor = AsyncMock()
        processor.process_sync_queue.return_value = SyncStats()
        triggers = SyncTriggers(processor, store, user_id="user-1", interval_minutes=0.0001)
        stop = asyncio.Event()

        task = asyncio.ensure_future(triggers.run_periodic(stop))
        await asyncio.sleep(0.05)
        stop.set()
        await asyncio.wait_for(task, timeout=1)

        assert processor.process_sync_queue.await_count >= 1
        processor.process_sync_queue.assert_awaited_with("user-1")
