"""Tests for glotian_sync.logging_config module."""

import logging

import pytest

from glotian_sync.logging_config import log_eviction, log_sync, log_sync_event, setup_logging


@pytest.fixture
def log_dir(tmp_path, monkeypatch):
    """Set GLOTIAN_DATA_DIR so logs go to a temp directory."""
    monkeypatch.setenv("GLOTIAN_DATA_DIR", str(tmp_path))
    return tmp_path / "logs"


def _read_events(log_dir):
    files = list(log_dir.glob("sync-events-*.log"))
    assert len(files) == 1
    return files[0].read_text(encoding="utf-8").splitlines()


class TestSetupLogging:
    """Tests for setup_logging."""

    def test_returns_package_logger(self, log_dir):
        logger = setup_logging(user_id="user-1")
        assert isinstance(logger, logging.Logger)
        assert logger.name == "glotian_sync"

    def test_creates_dated_log_file(self, log_dir):
        assert not log_dir.exists()
        setup_logging(user_id="user-1")
        log_files = list(log_dir.glob("local-*.log"))
        assert len(log_files) == 1

    def test_default_level_info(self, log_dir):
        assert setup_logging().level == logging.INFO

    def test_level_case_insensitive(self, log_dir):
        assert setup_logging(level="warning").level == logging.WARNING

    def test_invalid_level_falls_back_to_info(self, log_dir):
        """Unknown level names should not raise."""
        assert setup_logging(level="LOUD").level == logging.INFO

    def test_no_duplicate_handlers(self, log_dir):
        """Calling twice should keep a single file handler."""
        setup_logging()
        logger = setup_logging()
        file_handlers = [h for h in logger.handlers if isinstance(h, logging.FileHandler)]
        assert len(file_handlers) == 1

    def test_stream_handler_only_at_debug(self, log_dir):
        logger = setup_logging(level="INFO")
        assert not [h for h in logger.handlers if type(h) is logging.StreamHandler]
        logger = setup_logging(level="DEBUG")
        assert len([h for h in logger.handlers if type(h) is logging.StreamHandler]) == 1

    def test_module_loggers_write_to_file(self, log_dir):
        setup_logging()
        logging.getLogger("glotian_sync.sync.processor").info("hello from processor")
        for handler in logging.getLogger("glotian_sync").handlers:
            handler.flush()
        content = next(log_dir.glob("local-*.log")).read_text(encoding="utf-8")
        assert "hello from processor" in content
        assert "| INFO | glotian_sync.sync.processor |" in content


class TestSyncEventLog:
    """Tests for the sync events log helpers."""

    def test_log_sync_event_format(self, log_dir):
        log_sync_event("conflict", "notes/n1 remote_wins", user_id="user-1")
        (line,) = _read_events(log_dir)
        parts = line.split(" | ")
        assert parts[1:] == ["conflict", "user=user-1", "notes/n1 remote_wins"]

    def test_default_user(self, log_dir):
        log_sync_event("sync", "x")
        assert "user=default" in _read_events(log_dir)[0]

    def test_log_sync_counts(self, log_dir):
        log_sync("user-1", synced=3, failed=1, conflicts=2)
        assert _read_events(log_dir)[0].endswith("synced=3 failed=1 conflicts=2")

    def test_log_eviction(self, log_dir):
        log_eviction(12, 95.0, 71.0)
        assert _read_events(log_dir)[0].endswith("removed=12 before=95.0% after=71.0%")

    def test_appends(self, log_dir):
        log_sync("user-1", 1)
        log_sync("user-1", 2)
        assert len(_read_events(log_dir)) == 2
