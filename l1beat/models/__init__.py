"""Data models package.

Exports the Pydantic models for upstream messages and persisted documents.
"""

from l1beat.models.schemas import (
    ChainPairCount,
    ChunkError,
    DataType,
    DayResult,
    JobError,
    JobProgress,
    JobState,
    JobStatus,
    MessageCountSnapshot,
    TeleporterMessage,
)

__all__ = [
    "TeleporterMessage",
    "ChainPairCount",
    "MessageCountSnapshot",
    "DataType",
    "JobStatus",
    "JobState",
    "JobProgress",
    "JobError",
    "ChunkError",
    "DayResult",
]
