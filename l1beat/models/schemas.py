"""Pydantic models for upstream messages and persisted documents.

Persisted models serialize with camelCase aliases so stored documents keep the
field names other consumers of the ``teleportermessages`` and
``teleporterupdatestates`` collections already read.
"""

from __future__ import annotations

import traceback
from datetime import datetime
from enum import Enum
from typing import Any, Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

# Unix timestamps above this value are in milliseconds
MILLISECONDS_THRESHOLD = 10**12


def normalize_timestamp(value: Any) -> Optional[float]:
    """Return a unix timestamp in seconds, or None if not derivable.

    Args:
        value: Raw timestamp (seconds, milliseconds, numeric string or None)

    Returns:
        Seconds since epoch, or None for missing/unparseable values
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        ts = float(value)
    except (TypeError, ValueError):
        return None
    if ts <= 0:
        return None
    if ts > MILLISECONDS_THRESHOLD:
        ts = ts / 1000
    return ts


class DataType(str, Enum):
    """Kind of aggregation window."""

    DAILY = "daily"
    WEEKLY = "weekly"


class JobStatus(str, Enum):
    """Lifecycle state of a JobState record."""

    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class _Document(BaseModel):
    """Base for models stored in MongoDB."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=True,
        validate_assignment=True,
    )

    def to_document(self) -> dict[str, Any]:
        """Dump to a Mongo-ready dict (aliases, native datetimes)."""
        return self.model_dump(by_alias=True)


class TransactionRef(BaseModel):
    """Subset of an upstream transaction object."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    tx_hash: Optional[str] = Field(default=None, alias="txHash")
    timestamp: Optional[Any] = Field(default=None)


class TeleporterMessage(BaseModel):
    """Cross-chain ICM message as returned by the Glacier API.

    Only the fields needed for attribution and time filtering are modelled;
    everything else in the payload is ignored.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    message_id: Optional[str] = Field(default=None, alias="messageId")
    source_blockchain_id: Optional[str] = Field(
        default=None, alias="sourceBlockchainId"
    )
    destination_blockchain_id: Optional[str] = Field(
        default=None, alias="destinationBlockchainId"
    )
    source_evm_chain_id: Optional[str] = Field(default=None, alias="sourceEvmChainId")
    destination_evm_chain_id: Optional[str] = Field(
        default=None, alias="destinationEvmChainId"
    )
    source_transaction: Optional[TransactionRef] = Field(
        default=None, alias="sourceTransaction"
    )
    destination_transaction: Optional[TransactionRef] = Field(
        default=None, alias="destinationTransaction"
    )
    timestamp: Optional[Any] = Field(default=None)
    created_at: Optional[Any] = Field(default=None, alias="createdAt")

    @field_validator("source_evm_chain_id", "destination_evm_chain_id", mode="before")
    @classmethod
    def coerce_chain_id(cls, v: Any) -> Optional[str]:
        """EVM chain ids arrive as strings or integers; store them as strings."""
        if v is None or v == "":
            return None
        return str(v)

    def resolved_timestamp(self) -> Optional[float]:
        """Return the message time in unix seconds, or None.

        Precedence: source transaction, destination transaction, top-level
        ``timestamp``, then ``createdAt``. Millisecond values are normalized.
        """
        candidates = (
            self.source_transaction.timestamp if self.source_transaction else None,
            (
                self.destination_transaction.timestamp
                if self.destination_transaction
                else None
            ),
            self.timestamp,
            self.created_at,
        )
        for raw in candidates:
            ts = normalize_timestamp(raw)
            if ts is not None:
                return ts
        return None


class ChainPairCount(_Document):
    """Number of messages sent from one chain to another."""

    source_chain: str = Field(..., description="Resolved source chain name")
    destination_chain: str = Field(..., description="Resolved destination chain name")
    message_count: int = Field(..., ge=0)


class MessageCountSnapshot(_Document):
    """One persisted result of an ingestion run.

    Invariant: ``total_messages`` equals the sum of ``message_counts``.
    """

    updated_at: datetime
    data_type: DataType
    time_window_hours: int = Field(..., ge=1, alias="timeWindow")
    total_messages: int = Field(..., ge=0)
    message_counts: list[ChainPairCount] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_total(self) -> "MessageCountSnapshot":
        counted = sum(c.message_count for c in self.message_counts)
        if counted != self.total_messages:
            raise ValueError(
                f"totalMessages ({self.total_messages}) does not match the sum "
                f"of messageCounts ({counted})"
            )
        return self

    @classmethod
    def from_counts(
        cls,
        *,
        data_type: DataType,
        time_window_hours: int,
        counts: Iterable[ChainPairCount],
        updated_at: datetime,
    ) -> "MessageCountSnapshot":
        """Build a snapshot whose total is derived from the counts."""
        counts = list(counts)
        return cls(
            updated_at=updated_at,
            data_type=data_type,
            time_window_hours=time_window_hours,
            total_messages=sum(c.message_count for c in counts),
            message_counts=counts,
        )


class ChunkError(_Document):
    """Failure of a single chunk; recorded and skipped."""

    chunk: int = Field(..., ge=1)
    day: Optional[int] = Field(default=None)
    error: str
    timestamp: datetime


class JobError(_Document):
    """Error attached to a JobState record."""

    message: str
    details: Optional[str] = None
    stack: Optional[str] = None
    chunk_errors: list[ChunkError] = Field(default_factory=list)

    @classmethod
    def from_exception(cls, exc: BaseException) -> "JobError":
        """Capture message and formatted traceback of an exception."""
        return cls(
            message=str(exc) or type(exc).__name__,
            details=type(exc).__name__,
            stack="".join(
                traceback.format_exception(type(exc), exc, exc.__traceback__)
            ),
        )


class JobProgress(_Document):
    """Progress counters of a running job.

    Daily and bulk runs use the chunk counters; the incremental weekly run
    additionally tracks days.
    """

    current_chunk: Optional[int] = None
    total_chunks: Optional[int] = None
    current_day: Optional[int] = None
    total_days: Optional[int] = None
    days_completed: Optional[int] = None
    messages_collected: int = 0
    status: Optional[str] = None


class DayResult(_Document):
    """Aggregated counts of one completed day of the weekly run."""

    day: int = Field(..., ge=1)
    message_counts: list[ChainPairCount] = Field(
        default_factory=list, alias="messageCount"
    )
    total_messages: int = Field(default=0, ge=0)
    time_window_hours: int = Field(default=24, alias="timeWindow")
    start_hours_ago: int
    end_hours_ago: int
    processed_at: datetime


class JobState(_Document):
    """Live job record, one per data type.

    Acts as a cooperative lock and as the checkpoint the weekly runner
    resumes from. ``run_id`` identifies the owning run so a superseded writer
    can detect it no longer owns the record.
    """

    update_type: DataType
    state: JobStatus
    run_id: Optional[str] = None
    started_at: datetime
    last_updated_at: datetime
    anchor_at: Optional[datetime] = None
    progress: JobProgress = Field(default_factory=JobProgress)
    partial_results: list[DayResult] = Field(default_factory=list)
    error: Optional[JobError] = None

    @property
    def window_anchor(self) -> datetime:
        """Reference time all hours-ago windows of this run are measured from."""
        return self.anchor_at or self.started_at
