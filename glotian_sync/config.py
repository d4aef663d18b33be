"""Configuration settings for glotian_sync."""

from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .utils import default_db_path, get_data_home


class SyncPolicy(BaseModel):
    """Tunable policy knobs for retry and eviction."""

    model_config = ConfigDict(frozen=True)

    # Retryable failures allowed before an item becomes a permanent failure
    max_retries: int = Field(default=5, ge=1)
    # Share of eligible rows removed per table once eviction triggers
    eviction_fraction: float = Field(default=0.2, gt=0.0, le=1.0)
    # Usage ratio at which eviction runs
    quota_threshold: float = Field(default=0.9, gt=0.0, le=1.0)
    # Rows touched more recently than this are never evicted
    stale_after_days: int = Field(default=30, ge=0)
    activity_log_retention: int = Field(default=1000, ge=0)
    error_log_retention: int = Field(default=100, ge=1)
    # Keep failed rows out of eviction too (pending rows are never evicted)
    protect_failed: bool = False


class Settings(BaseSettings):
    """Settings loaded from environment (GLOTIAN_*) and .env."""

    model_config = SettingsConfigDict(
        env_prefix="GLOTIAN_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Supabase
    supabase_url: str | None = None
    supabase_key: str | None = None
    remote_timeout_seconds: float = 10.0

    # Local cache
    data_dir: Path | None = None
    db_path: Path | None = None
    storage_quota_bytes: int | None = None  # None disables quota-driven eviction

    # Session
    user_id: str | None = None

    # Triggers
    sync_interval_minutes: float = 5.0
    lease_ttl_seconds: float = 120.0

    log_level: str = "INFO"

    policy: SyncPolicy = SyncPolicy()

    def resolved_data_dir(self) -> Path:
        return self.data_dir or get_data_home()

    def resolved_db_path(self) -> Path:
        if self.db_path:
            return self.db_path
        if self.data_dir:
            return self.data_dir / "cache.db"
        return default_db_path()


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
