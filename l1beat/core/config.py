"""Configuration management using Pydantic BaseSettings.

All knobs of the teleporter ingestion pipeline (upstream API, pagination,
pacing, retry, staleness thresholds, storage and observability) are loaded
from environment variables or a ``.env`` file with type validation.
"""

from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# The daemon kicks the weekly job once per UTC day
WEEKLY_RUN_INTERVAL_HOURS = 24


class IngestConfig(BaseSettings):
    """Ingestion service configuration with Pydantic validation.

    Defaults mirror the pacing the upstream Glacier API tolerates in
    production; tests override the delays to zero.
    """

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=False, extra="ignore"
    )

    # === Glacier API ===
    glacier_api_base: str = Field(
        default="https://glacier-api.avax.network/v1",
        description="Base URL of the Glacier REST API (without trailing slash)",
    )
    glacier_api_key: Optional[str] = Field(
        default=None, description="Optional API key sent as x-glacier-api-key"
    )
    glacier_timeout_seconds: float = Field(
        default=30.0, gt=0, le=300, description="Per-request HTTP timeout"
    )
    glacier_network: str = Field(
        default="mainnet",
        pattern=r"^(mainnet|fuji|testnet)$",
        description="Network query parameter for ICM message listing",
    )
    user_agent: str = Field(
        default="l1beat-backend", description="User-Agent header for upstream calls"
    )

    # === Pagination ===
    page_size: int = Field(
        default=50, ge=1, le=100, description="Messages per page for daily runs"
    )
    max_pages_per_window: int = Field(
        default=10,
        ge=1,
        le=1000,
        description="Page ceiling per time window before bisecting (daily runs)",
    )
    bulk_page_size: int = Field(
        default=100, ge=1, le=100, description="Messages per page for bulk weekly runs"
    )
    bulk_max_pages_per_window: int = Field(
        default=100,
        ge=1,
        le=1000,
        description="Page ceiling per time window for bulk weekly runs",
    )
    min_window_hours: float = Field(
        default=2.0,
        gt=0,
        le=24,
        description="Windows at or below this span are never bisected",
    )

    # === Retry Settings ===
    max_retries: int = Field(
        default=5, ge=0, le=10, description="Retries for 429 and network errors"
    )
    initial_backoff_seconds: float = Field(
        default=5.0, ge=0, le=120, description="First backoff delay, doubled per retry"
    )
    page_delay_seconds: float = Field(
        default=2.0, ge=0, le=60, description="Pacing delay before follow-up pages"
    )

    # === Chunk Pacing ===
    chunk_delay_seconds: float = Field(
        default=8.0, ge=0, le=300, description="Delay between successful chunks"
    )
    bulk_chunk_delay_seconds: float = Field(
        default=5.0, ge=0, le=300, description="Delay between bulk weekly chunks"
    )
    chunk_error_delay_seconds: float = Field(
        default=10.0, ge=0, le=600, description="Delay after a failed chunk"
    )
    day_delay_seconds: float = Field(
        default=10.0, ge=0, le=600, description="Delay between incremental weekly days"
    )

    # === Job Shape ===
    daily_total_hours: int = Field(default=24, ge=1, le=168)
    daily_chunk_hours: int = Field(default=4, ge=1, le=24)
    weekly_bulk_chunk_hours: int = Field(default=48, ge=1, le=168)
    weekly_days: int = Field(default=7, ge=1, le=31)

    # === Job State Staleness ===
    stale_job_minutes: float = Field(
        default=10.0,
        gt=0,
        description="Writer threshold: in_progress without updates is abandoned",
    )
    read_stale_job_minutes: float = Field(
        default=5.0,
        gt=0,
        description="Reader threshold used when serving snapshots",
    )
    weekly_resume_max_age_hours: float = Field(
        default=48.0,
        gt=0,
        description=(
            "Failed weekly runs older than this restart instead of resuming; "
            "must exceed the 24h gap between scheduled weekly runs"
        ),
    )

    # === Read-side Freshness ===
    recent_snapshot_minutes: float = Field(
        default=5.0, gt=0, description="Age under which a snapshot counts as recent"
    )
    daily_refresh_minutes: float = Field(
        default=30.0,
        gt=0,
        description="Daily snapshots older than this trigger a background refresh",
    )
    weekly_refresh_hours: float = Field(
        default=24.0,
        gt=0,
        description="Weekly snapshots older than this trigger a background refresh",
    )
    refresh_cooldown_minutes: float = Field(
        default=5.0,
        ge=0,
        description="Minimum gap between two background refreshes of one data type",
    )

    # === Backfill ===
    backfill_delay_seconds: float = Field(
        default=5.0, ge=0, le=600, description="Delay between backfilled dates"
    )

    # === Storage (MongoDB) ===
    mongo_url: str = Field(
        default="mongodb://localhost:27017",
        description="MongoDB connection string (e.g., mongodb://localhost:27017)",
    )
    mongo_db: str = Field(default="l1beat", description="MongoDB database name")
    snapshots_collection: str = Field(default="teleportermessages")
    job_states_collection: str = Field(default="teleporterupdatestates")
    chains_collection: str = Field(default="chains")

    # === Daemon Schedule ===
    daily_interval_minutes: float = Field(
        default=60.0, gt=0, description="Interval between daily ingestion runs"
    )
    weekly_run_hour_utc: int = Field(
        default=0, ge=0, le=23, description="UTC hour of the daily weekly-job kick"
    )
    run_on_start: bool = Field(
        default=True, description="Run the daily job immediately when the daemon starts"
    )

    # === Logging ===
    log_level: str = Field(
        default="INFO",
        pattern=r"^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$",
        description="Logging level",
    )
    log_format: str = Field(
        default="json",
        pattern=r"^(json|text)$",
        description="Log output format: json or text",
    )
    loki_url: Optional[str] = Field(
        default=None, description="Loki URL for log shipping (e.g., http://loki:3100)"
    )
    service_name: str = Field(
        default="l1beat-ingest",
        description="Service name to include in logs and metrics",
    )

    # === Observability ===
    enable_metrics: bool = Field(
        default=True, description="Enable Prometheus metrics export"
    )
    metrics_port: int = Field(
        default=9090, ge=1024, le=65535, description="Port for metrics HTTP server"
    )

    @field_validator("glacier_api_base", mode="after")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Normalize the API base so paths can be appended verbatim."""
        v = v.strip().rstrip("/")
        if not v.startswith(("http://", "https://")):
            raise ValueError("glacier_api_base must be an http(s) URL")
        return v

    @field_validator("log_level", mode="before")
    @classmethod
    def upper_log_level(cls, v: str) -> str:
        """Accept lower-case log levels from the environment."""
        return v.upper() if isinstance(v, str) else v

    def validate_requirements(self) -> None:
        """Validate cross-field requirements.

        Raises:
            ValueError: If the job shape or thresholds are inconsistent
        """
        if self.daily_chunk_hours > self.daily_total_hours:
            raise ValueError("daily_chunk_hours must not exceed daily_total_hours")
        if self.weekly_bulk_chunk_hours > self.weekly_days * 24:
            raise ValueError("weekly_bulk_chunk_hours must not exceed the weekly span")
        if self.read_stale_job_minutes > self.stale_job_minutes:
            raise ValueError(
                "read_stale_job_minutes must be less than or equal to stale_job_minutes"
            )
        if self.weekly_resume_max_age_hours <= WEEKLY_RUN_INTERVAL_HOURS:
            raise ValueError(
                "weekly_resume_max_age_hours must exceed the "
                f"{WEEKLY_RUN_INTERVAL_HOURS}h weekly run interval"
            )

    @property
    def weekly_total_hours(self) -> int:
        """Total span of the weekly window in hours."""
        return self.weekly_days * 24
