"""Result models for service operations.

Defines Pydantic models used as return types for fetchers, jobs and read
operations to keep contracts explicit.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from l1beat.models.schemas import (
    ChainPairCount,
    ChunkError,
    DataType,
    JobProgress,
    MessageCountSnapshot,
    TeleporterMessage,
)


class MessagePage(BaseModel):
    """One upstream page."""

    messages: list[TeleporterMessage] = Field(default_factory=list)
    next_page_token: Optional[str] = Field(
        None, description="Continuation token; None when pagination is exhausted"
    )


class FetchRangeResult(BaseModel):
    """Messages collected for a time range plus pagination diagnostics."""

    messages: list[TeleporterMessage] = Field(default_factory=list)
    hit_page_limit: bool = Field(
        False, description="True if any window reached the page ceiling"
    )
    reached_time_limit: bool = Field(
        False, description="Reserved; pagination has no wall-clock cap"
    )
    pages_fetched: int = 0
    windows_fetched: int = 0
    excluded_out_of_range: int = Field(
        0, description="Messages dropped because their timestamp fell outside"
    )


class ChunkCollection(BaseModel):
    """Messages gathered over a sequence of chunks."""

    messages: list[TeleporterMessage] = Field(default_factory=list)
    chunk_errors: list[ChunkError] = Field(default_factory=list)
    hit_page_limit: bool = False
    chunks_total: int = 0
    chunks_succeeded: int = 0


class IngestionResult(BaseModel):
    """Outcome of a daily or bulk weekly ingestion run."""

    success: bool
    data_type: DataType
    status: str = Field(..., description="completed, failed or in_progress")
    total_messages: int = 0
    chain_pair_count: int = 0
    error: Optional[str] = None
    chunk_errors: list[ChunkError] = Field(default_factory=list)
    snapshot_updated_at: Optional[datetime] = None


class WeeklyJobOutcome(IngestionResult):
    """Outcome of one advance() call of the incremental weekly runner."""

    resumed_from_day: Optional[int] = Field(
        None, description="First day processed when a checkpoint was resumed"
    )
    days_processed: list[int] = Field(default_factory=list)


class SnapshotMetadata(BaseModel):
    """Summary of the snapshot served to readers."""

    total_messages: int
    time_window: int
    time_window_unit: str = "hours"
    updated_at: datetime


class UpdateStatus(BaseModel):
    """Visible state of a refresh currently running."""

    state: str
    started_at: datetime
    last_updated_at: datetime
    progress: Optional[JobProgress] = None


class SnapshotView(BaseModel):
    """Read-side response for message counts of one data type."""

    data_type: DataType
    data: list[ChainPairCount] = Field(default_factory=list)
    metadata: Optional[SnapshotMetadata] = None
    update_status: Optional[UpdateStatus] = None
    refresh_triggered: bool = False

    @classmethod
    def from_snapshot(
        cls,
        data_type: DataType,
        snapshot: Optional[MessageCountSnapshot],
        *,
        update_status: Optional[UpdateStatus] = None,
        refresh_triggered: bool = False,
    ) -> "SnapshotView":
        """Build a view; an absent snapshot yields empty data and no metadata."""
        if snapshot is None:
            return cls(
                data_type=data_type,
                update_status=update_status,
                refresh_triggered=refresh_triggered,
            )
        return cls(
            data_type=data_type,
            data=snapshot.message_counts,
            metadata=SnapshotMetadata(
                total_messages=snapshot.total_messages,
                time_window=snapshot.time_window_hours,
                updated_at=snapshot.updated_at,
            ),
            update_status=update_status,
            refresh_triggered=refresh_triggered,
        )


class BackfillResult(BaseModel):
    """Summary of a backfill run."""

    days_checked: int
    missing_dates: list[str] = Field(default_factory=list)
    filled_dates: list[str] = Field(default_factory=list)
    empty_dates: list[str] = Field(default_factory=list)
    failed_dates: list[str] = Field(default_factory=list)
