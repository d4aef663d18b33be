"""Command-line interface for glotian_sync."""
