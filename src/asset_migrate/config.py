"""
Migration Configuration

Uses pydantic-settings for environment variable loading with validation.
Volume layout, storage credentials and engine tuning live here.
"""

from functools import lru_cache
from pathlib import Path

from pydantic import Field, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Migration settings loaded from environment variables.

    Environment variables can be set directly or via .env file.
    Storage credentials should be provided via environment variables.
    """

    model_config = SettingsConfigDict(
        env_prefix="ASSET_MIGRATE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    debug: bool = Field(default=False, description="Enable debug logging")

    # ==========================================================================
    # Paths
    # ==========================================================================
    storage_dir: Path = Field(
        default=Path("./storage"),
        description="Root directory for checkpoints, change logs and reports",
    )

    # ==========================================================================
    # Asset Repository / Lock Table
    # ==========================================================================
    database_url: str = Field(
        default="sqlite+aiosqlite:///./storage/assets.db",
        description="Async SQLAlchemy URL of the asset metadata store",
    )

    reference_fields: str = Field(
        default="",
        description="Comma-separated table.column pairs that may embed file references",
    )

    # ==========================================================================
    # Volumes
    # ==========================================================================
    volumes: dict[str, str] = Field(
        default_factory=dict,
        description="Volume id to storage URI (file:///path or s3://bucket/prefix), as JSON",
    )

    source_volumes: str = Field(
        default="", description="Comma-separated volume ids to migrate from"
    )

    target_volume: str = Field(default="", description="Volume id to consolidate into")

    target_folder: str = Field(
        default="", description="Folder path inside the target volume ('' is root)"
    )

    quarantine_volume: str = Field(
        default="quarantine", description="Volume id holding quarantined files"
    )

    optimised_volume: str | None = Field(
        default=None,
        description="Volume id whose root-level assets are relocated before discovery",
    )

    @property
    def source_volume_ids(self) -> list[str]:
        """Parse source volumes into a list."""
        return [v.strip() for v in self.source_volumes.split(",") if v.strip()]

    @property
    def reference_field_specs(self) -> list[tuple[str, str]]:
        """Parse reference fields into (table, column) pairs."""
        specs: list[tuple[str, str]] = []
        for item in self.reference_fields.split(","):
            item = item.strip()
            if not item:
                continue
            table, _, column = item.partition(".")
            if table and column:
                specs.append((table, column))
        return specs

    # ==========================================================================
    # S3 Storage
    # ==========================================================================
    s3_endpoint: str | None = Field(
        default=None, description="S3-compatible endpoint URL (None for AWS)"
    )

    s3_access_key: str | None = Field(
        default=None, description="S3 access key (required for s3:// volumes)"
    )

    s3_secret_key: str | None = Field(
        default=None, description="S3 secret key (required for s3:// volumes)"
    )

    s3_region: str = Field(default="us-east-1", description="S3 region")

    @computed_field
    @property
    def s3_configured(self) -> bool:
        """Check if S3 storage is properly configured."""
        return self.s3_access_key is not None and self.s3_secret_key is not None

    # ==========================================================================
    # Batching / Checkpointing
    # ==========================================================================
    batch_size: int = Field(default=100, ge=1, description="Assets per batch")

    checkpoint_every_batches: int = Field(
        default=5, ge=1, description="Write a full checkpoint every N batches"
    )

    changelog_flush_threshold: int = Field(
        default=5, ge=1, description="Buffered change log entries before a flush"
    )

    checkpoint_retention_hours: int = Field(
        default=72, description="Checkpoints older than this are removed during cleanup"
    )

    # ==========================================================================
    # Locking
    # ==========================================================================
    lock_name: str = Field(default="asset_migration", description="Lock resource name")

    lock_ttl_seconds: int = Field(
        default=43200, description="Lock lifetime before it is considered stale (12h)"
    )

    lock_timeout_seconds: float = Field(
        default=3.0, description="How long to wait for a held lock"
    )

    lock_refresh_interval_seconds: float = Field(
        default=60.0, description="Minimum seconds between lock refreshes"
    )

    # ==========================================================================
    # Error Recovery
    # ==========================================================================
    max_retries: int = Field(default=3, ge=1, description="Attempts per operation")

    retry_delay_seconds: float = Field(
        default=1.0, description="Base delay for exponential backoff"
    )

    error_threshold: int = Field(
        default=50, description="Unexpected errors tolerated before halting"
    )

    critical_error_threshold: int = Field(
        default=20, description="Critical errors tolerated before halting"
    )

    # ==========================================================================
    # Matching / Verification
    # ==========================================================================
    min_match_confidence: float = Field(
        default=0.70, ge=0.0, le=1.0, description="Minimum confidence for fuzzy matches"
    )

    verification_sample_size: int | None = Field(
        default=None, description="Assets to verify during cleanup (None verifies all)"
    )

    # ==========================================================================
    # Computed Properties
    # ==========================================================================
    @property
    def checkpoint_dir(self) -> Path:
        """Directory for checkpoint and quick-state files."""
        return self.storage_dir / "checkpoints"

    @property
    def changelog_dir(self) -> Path:
        """Directory for change log files."""
        return self.storage_dir / "changelogs"

    @property
    def report_dir(self) -> Path:
        """Directory for discovery reports, snapshots and issue lists."""
        return self.storage_dir / "reports"

    def validate_paths(self) -> None:
        """
        Create the storage directories if they don't exist.
        """
        for path in (self.checkpoint_dir, self.changelog_dir, self.report_dir):
            path.mkdir(parents=True, exist_ok=True)


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    Settings are loaded from environment variables via pydantic-settings.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache (useful for testing)."""
    get_settings.cache_clear()
