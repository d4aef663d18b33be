"""Filesystem helpers."""

import os
from pathlib import Path


def get_data_home() -> Path:
    """Return the glotian data directory.

    Honors GLOTIAN_DATA_DIR, otherwise ~/.glotian.
    """
    override = os.environ.get("GLOTIAN_DATA_DIR")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".glotian"


def default_db_path() -> Path:
    return get_data_home() / "cache.db"
