"""
Configuration settings for the SlimCal sync engine.

Uses environment variables (prefix ``SLIMCAL_``) with sensible defaults for
development.
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class SyncSettings(BaseSettings):
    """Sync engine settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="SLIMCAL_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Remote store (PostgREST-compatible)
    remote_url: str = Field(default="http://localhost:54321/rest/v1")
    remote_api_key: str = Field(default="")
    remote_timeout: float = 15.0
    remote_max_retries: int = 2
    remote_base_retry_delay: float = 0.5
    remote_max_retry_delay: float = 8.0

    # Rate limiting
    requests_per_minute: int = 120
    requests_per_hour: int = 3000

    # Local cache
    cache_dir: Path = Field(default_factory=lambda: Path.home() / ".slimcal")
    cache_db_name: str = "local_store.db"

    # Queue backoff (milliseconds)
    backoff_base_ms: int = 1000
    backoff_cap_ms: int = 30000
    max_retry_count: Optional[int] = None
    queue_lease_ms: int = 8000

    # Flush / bootstrap timing (seconds)
    flush_retry_delay: float = 1.2
    bootstrap_throttle: float = 2.5

    # Hydration
    recent_history_days: int = 14

    @field_validator("max_retry_count", mode="before")
    @classmethod
    def parse_retry_ceiling(cls, v):
        """Treat empty strings and non-positive ceilings as "retry forever"."""
        if v in (None, ""):
            return None
        v = int(v)
        return v if v > 0 else None

    @property
    def cache_db_path(self) -> Path:
        """Full path to the local store database."""
        return Path(self.cache_dir) / self.cache_db_name


@lru_cache
def get_settings() -> SyncSettings:
    """Get cached settings instance."""
    return SyncSettings()
