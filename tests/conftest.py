"""
Pytest fixtures and test configuration for glotian_sync tests.
"""

import copy
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from unittest.mock import Mock

import pytest

from glotian_sync.config import get_settings
from glotian_sync.storage.base import CachedDeck, CachedFlashcard, CachedNote
from glotian_sync.storage.sqlite import CacheStore
from glotian_sync.sync.remote import RemoteError
from glotian_sync.sync.validation import ROW_MODELS

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def iso(offset_minutes: int = 0) -> str:
    return (T0 + timedelta(minutes=offset_minutes)).isoformat()


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """Point the data dir at tmp_path and reset cached settings and log handlers."""
    monkeypatch.setenv("GLOTIAN_DATA_DIR", str(tmp_path / "data"))
    for name in ("GLOTIAN_USER_ID", "GLOTIAN_SUPABASE_URL", "GLOTIAN_SUPABASE_KEY"):
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    logger = logging.getLogger("glotian_sync")
    logger.handlers.clear()
    yield
    for handler in logger.handlers:
        handler.close()
    logger.handlers.clear()
    get_settings.cache_clear()


@pytest.fixture
def temp_db(tmp_path):
    return tmp_path / "cache.db"


@pytest.fixture
def store(temp_db):
    return CacheStore(db_path=temp_db)


class FakeRemote:
    """In-memory RemoteBackend with scriptable failures."""

    def __init__(self):
        self.tables: Dict[str, Dict[str, Dict[str, Any]]] = {t: {} for t in ROW_MODELS}
        self.calls: List[tuple] = []
        self._failures: Dict[str, List[Exception]] = {}

    def fail(self, op: str, times: int = 1, exc: Optional[Exception] = None):
        """Make the next `times` calls of `op` raise."""
        self._failures.setdefault(op, []).extend(
            [exc or RemoteError(f"{op} unavailable")] * times
        )

    def _maybe_fail(self, op: str):
        pending = self._failures.get(op)
        if pending:
            raise pending.pop(0)

    def seed(self, table: str, row: Dict[str, Any]):
        self.tables[table][row["id"]] = copy.deepcopy(row)

    async def fetch_version(self, table, entity_id):
        self.calls.append(("fetch_version", table, entity_id))
        self._maybe_fail("fetch_version")
        row = self.tables[table].get(entity_id)
        return {"id": row["id"], "updated_at": row.get("updated_at")} if row else None

    async def fetch_row(self, table, entity_id):
        self.calls.append(("fetch_row", table, entity_id))
        self._maybe_fail("fetch_row")
        row = self.tables[table].get(entity_id)
        return copy.deepcopy(row) if row else None

    async def insert(self, table, row):
        self.calls.append(("insert", table, row["id"]))
        self._maybe_fail("insert")
        if row["id"] in self.tables[table]:
            raise RemoteError("duplicate key value violates unique constraint")
        self.tables[table][row["id"]] = copy.deepcopy(row)

    async def update(self, table, entity_id, changes):
        self.calls.append(("update", table, entity_id))
        self._maybe_fail("update")
        if entity_id in self.tables[table]:
            self.tables[table][entity_id].update(copy.deepcopy(changes))

    async def delete(self, table, entity_id):
        self.calls.append(("delete", table, entity_id))
        self._maybe_fail("delete")
        self.tables[table].pop(entity_id, None)


@pytest.fixture
def remote():
    return FakeRemote()


@pytest.fixture
def make_note():
    def _make(note_id="n1", user_id="user-1", updated=0, **kwargs):
        defaults = dict(
            id=note_id,
            user_id=user_id,
            content="la pomme",
            translated_text="the apple",
            source_language="fr",
            target_language="en",
            title="Fruit",
            tags=["food"],
            created_at=iso(0),
            updated_at=iso(updated),
        )
        defaults.update(kwargs)
        return CachedNote(**defaults)

    return _make


@pytest.fixture
def make_flashcard():
    def _make(card_id="f1", user_id="user-1", updated=0, **kwargs):
        defaults = dict(
            id=card_id,
            user_id=user_id,
            deck_id="d1",
            term="pomme",
            definition="apple",
            language="fr",
            example_sentences=["Je mange une pomme."],
            created_at=iso(0),
            updated_at=iso(updated),
        )
        defaults.update(kwargs)
        return CachedFlashcard(**defaults)

    return _make


@pytest.fixture
def make_deck():
    def _make(deck_id="d1", user_id="user-1", **kwargs):
        defaults = dict(
            id=deck_id,
            user_id=user_id,
            name="French",
            language="fr",
            created_at=iso(0),
            updated_at=iso(0),
        )
        defaults.update(kwargs)
        return CachedDeck(**defaults)

    return _make


@pytest.fixture
def note_row():
    """Full learning_notes remote row."""

    def _make(note_id="n1", user_id="user-1", updated=0, **kwargs):
        row = {
            "id": note_id,
            "user_id": user_id,
            "original_text": "la pomme",
            "translated_text": "the apple",
            "source_language": "fr",
            "target_language": "en",
            "title": "Fruit",
            "grammar_explanation": None,
            "alternative_expressions": [],
            "tags": ["food"],
            "source_type": "extension",
            "source_url": None,
            "attached_image_url": None,
            "folder_path": None,
            "deleted_at": None,
            "created_at": iso(0),
            "updated_at": iso(updated),
        }
        row.update(kwargs)
        return row

    return _make


@pytest.fixture
def mock_supabase_client():
    """Mock supabase Client recording the query chain of each call."""
    client = Mock()
    client.result = Mock()
    client.result.data = []

    def table(name):
        query = Mock()
        query.table_name = name
        for method in ("select", "eq", "limit", "insert", "update", "delete"):
            getattr(query, method).return_value = query
        query.execute.side_effect = lambda: client.result
        client.last_query = query
        return query

    client.table.side_effect = table
    return client


@pytest.fixture
def ts():
    """ISO timestamp `minutes` after a fixed epoch."""
    return iso
