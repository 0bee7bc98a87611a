"""
Configuration management using Pydantic Settings.

All configuration is loaded from environment variables with sensible defaults.
"""

from pathlib import Path
from typing import Optional
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Database
    database_url: Optional[str] = Field(None, description="PostgreSQL URL (leave empty for SQLite)")
    database_path: str = Field("./data/idea_queue.db", description="SQLite file path")

    # Feed fetching
    fetch_timeout_seconds: float = Field(15.0, description="Timeout for a single feed fetch (seconds)")
    user_agent: str = Field("IdeaQueue/1.0 (news aggregator)", description="User-Agent for feed requests")
    ingest_concurrency: int = Field(1, ge=1, description="Feeds fetched at once during a pass (1 = sequential)")
    summary_rules: str = Field(
        "aggregator_points_comments",
        description="Comma-separated summary normalization rules to apply",
    )

    # Ingestion policy
    recency_hours: int = Field(24, description="Only distribute items published in the last N hours")
    max_items_per_feed: int = Field(10, description="Max candidates taken from one feed per pass")
    retention_days: int = Field(7, description="Undecided queue entries older than this are pruned")

    # Protocol server
    keepalive_seconds: float = Field(30.0, description="Interval between stream keepalive pings")
    public_base_url: Optional[str] = Field(None, description="Base URL announced to stream clients")
    protocol_version: str = Field("2024-11-05", description="Protocol version reported on initialize")

    # Server
    port: int = Field(8000, description="HTTP server port")

    # Scheduler
    enable_scheduler: bool = Field(False, description="Enable built-in scheduler")
    schedule_hours: str = Field("0,4,8,12,16,20", description="Hours to run at (UTC), comma-separated")

    # Logging
    log_level: str = Field("INFO", description="Log level")
    log_json: bool = Field(False, description="Output logs as JSON")

    @field_validator("schedule_hours")
    @classmethod
    def parse_schedule_hours(cls, v: str) -> str:
        """Validate schedule hours format."""
        try:
            hours = [int(h.strip()) for h in v.split(",")]
            for h in hours:
                if not 0 <= h <= 23:
                    raise ValueError(f"Hour {h} not in range 0-23")
        except Exception as e:
            raise ValueError(f"Invalid schedule_hours format: {e}")
        return v

    @property
    def schedule_hours_list(self) -> list[int]:
        """Get schedule hours as a list of integers."""
        return [int(h.strip()) for h in self.schedule_hours.split(",")]

    @property
    def summary_rules_list(self) -> list[str]:
        """Get enabled summary rule names."""
        return [r.strip() for r in self.summary_rules.split(",") if r.strip()]

    @property
    def effective_database_url(self) -> str:
        """Get the effective database URL (PostgreSQL or SQLite)."""
        if self.database_url:
            return self.database_url

        # Read-only filesystems fall back to /tmp
        db_path = Path(self.database_path)
        try:
            db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError:
            db_path = Path("/tmp") / db_path.name
            db_path.parent.mkdir(parents=True, exist_ok=True)

        return f"sqlite:///{db_path.absolute()}"

    @property
    def is_postgres(self) -> bool:
        """Check if using PostgreSQL."""
        return bool(self.database_url and "postgres" in self.database_url.lower())


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def clear_settings_cache():
    """Clear the settings cache (useful for tests)."""
    get_settings.cache_clear()
