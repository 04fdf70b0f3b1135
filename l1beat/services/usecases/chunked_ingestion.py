"""Chunked ingestion over a long time span.

One engine serves the daily run, the bulk weekly run and every day of the
incremental weekly run: the span is cut into fixed-size chunks fetched
strictly one after another with pacing delays. A failing chunk is recorded
and skipped; the run only fails when no chunk produced a message.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Optional, Protocol

from l1beat.core.exceptions import StaleJobState
from l1beat.models.results import ChunkCollection, FetchRangeResult, IngestionResult
from l1beat.models.schemas import (
    ChainPairCount,
    ChunkError,
    DataType,
    JobError,
    JobProgress,
    JobState,
    MessageCountSnapshot,
    TeleporterMessage,
)
from l1beat.observability.metrics_adapter import MetricsAdapter
from l1beat.repositories.protocols import (
    ChainDirectoryProtocol,
    SnapshotRepositoryProtocol,
)
from l1beat.utils.clock import Clock, Sleeper, pause
from l1beat.utils.correlation import CorrelationContext, log_context

logger = logging.getLogger(__name__)

NO_MESSAGES = "No messages found"
PAGE_LIMIT_NOTE = "Hit page limit in some chunks, some messages may be missing"

ChunkHook = Callable[[int, int, int], Awaitable[None]]


class _Paginator(Protocol):
    async def fetch_range(
        self,
        start_hours_ago: float,
        end_hours_ago: float,
        *,
        anchor: Optional[datetime] = None,
    ) -> FetchRangeResult: ...


class _Aggregator(Protocol):
    def aggregate(self, messages: list[TeleporterMessage], chain_names: dict[str, str]) -> list[ChainPairCount]: ...


class _JobStates(Protocol):
    def try_begin(self, update_type: DataType, *, progress: JobProgress) -> Optional[JobState]: ...
    def checkpoint(self, state: JobState) -> JobState: ...
    def complete(self, state: JobState, *, error: Optional[JobError] = None) -> JobState: ...
    def fail(self, state: JobState, error: JobError) -> JobState: ...


def chunk_windows(
    total_hours: int, chunk_hours: int, offset_hours: int = 0
) -> list[tuple[int, int]]:
    """Split ``[offset, offset + total]`` hours-ago into chunks, oldest first.

    Example: ``chunk_windows(168, 48)`` gives (168, 120), (120, 72), (72, 24),
    (24, 0); the last chunk is truncated at the offset.

    Raises:
        ValueError: If the sizes are not positive or the offset is negative
    """
    if total_hours <= 0 or chunk_hours <= 0:
        raise ValueError("total_hours and chunk_hours must be positive")
    if offset_hours < 0:
        raise ValueError("offset_hours must be >= 0")
    windows: list[tuple[int, int]] = []
    start = offset_hours + total_hours
    while start > offset_hours:
        end = max(start - chunk_hours, offset_hours)
        windows.append((start, end))
        start = end
    return windows


@dataclass
class IngestionProfile:
    """Shape and pacing of one kind of run."""

    data_type: DataType
    total_hours: int
    chunk_hours: int
    chunk_delay_seconds: float
    error_delay_seconds: float
    note_page_limit: bool = False

    @property
    def name(self) -> str:
        return f"{self.data_type.value}:{self.total_hours}h"


@dataclass
class ChunkedIngestionDeps:
    """Dependencies required by ChunkedIngestionJob."""

    paginator: _Paginator
    aggregator: _Aggregator
    chain_directory: ChainDirectoryProtocol
    snapshots: SnapshotRepositoryProtocol
    job_states: _JobStates
    metrics: MetricsAdapter
    clock: Clock
    sleep: Sleeper


class ChunkedIngestionJob:
    """Run a profile end-to-end and persist one snapshot."""

    def __init__(self, deps: ChunkedIngestionDeps, profile: IngestionProfile) -> None:
        """Initialize job with dependencies and the profile it runs."""
        self.d = deps
        self.profile = profile

    async def collect(
        self,
        windows: list[tuple[int, int]],
        *,
        anchor: datetime,
        on_chunk_start: Optional[ChunkHook] = None,
        day: Optional[int] = None,
    ) -> ChunkCollection:
        """Fetch every chunk in order, recording failures instead of raising.

        Args:
            windows: (start_hours_ago, end_hours_ago) chunks, oldest first
            anchor: Reference time for the hours-ago offsets
            on_chunk_start: Awaited with (index, total, collected) before each
                chunk; used for checkpointing
            day: Day number stamped on chunk errors (weekly runs)

        Raises:
            StaleJobState: If a checkpoint finds the run superseded
        """
        collection = ChunkCollection(chunks_total=len(windows))
        last = len(windows) - 1
        for index, (start_h, end_h) in enumerate(windows):
            if on_chunk_start is not None:
                await on_chunk_start(index, len(windows), len(collection.messages))
            logger.info(
                "Fetching chunk",
                extra=log_context(
                    chunk=index + 1,
                    total_chunks=len(windows),
                    start_hours_ago=start_h,
                    end_hours_ago=end_h,
                    day=day,
                ),
            )
            try:
                result = await self.d.paginator.fetch_range(start_h, end_h, anchor=anchor)
            except StaleJobState:
                raise
            except Exception as e:
                collection.chunk_errors.append(
                    ChunkError(
                        chunk=index + 1,
                        day=day,
                        error=str(e) or type(e).__name__,
                        timestamp=self.d.clock(),
                    )
                )
                self.d.metrics.inc_chunk_error(self.profile.data_type.value)
                logger.error(
                    "Chunk failed, continuing with next chunk",
                    extra=log_context(
                        chunk=index + 1,
                        day=day,
                        error_type=type(e).__name__,
                        error=str(e),
                    ),
                    exc_info=True,
                )
                if index < last:
                    await pause(self.d.sleep, self.profile.error_delay_seconds)
                continue

            collection.messages.extend(result.messages)
            collection.hit_page_limit = collection.hit_page_limit or result.hit_page_limit
            collection.chunks_succeeded += 1
            if index < last:
                await pause(self.d.sleep, self.profile.chunk_delay_seconds)
        return collection

    def aggregate(self, messages: list[TeleporterMessage]) -> list[ChainPairCount]:
        """Aggregate messages with the current chain directory."""
        return self.d.aggregator.aggregate(messages, self.d.chain_directory.chain_names())

    async def run(
        self, total_hours: Optional[int] = None, chunk_hours: Optional[int] = None
    ) -> IngestionResult:
        """Execute one run of the profile.

        Args:
            total_hours: Span override (defaults to the profile)
            chunk_hours: Chunk size override (defaults to the profile)

        Returns:
            Outcome; ``status="in_progress"`` when another run owns the record
        """
        total = total_hours or self.profile.total_hours
        size = chunk_hours or self.profile.chunk_hours
        data_type = self.profile.data_type
        windows = chunk_windows(total, size)

        with CorrelationContext(job=data_type.value):
            state = self.d.job_states.try_begin(
                data_type,
                progress=JobProgress(
                    current_chunk=0, total_chunks=len(windows), messages_collected=0
                ),
            )
            if state is None:
                return IngestionResult(
                    success=False, data_type=data_type, status="in_progress"
                )

            started = time.perf_counter()
            logger.info(
                "Ingestion run started",
                extra=log_context(
                    total_hours=total, chunk_hours=size, chunks=len(windows)
                ),
            )

            async def _checkpoint(index: int, total_chunks: int, collected: int) -> None:
                state.progress.current_chunk = index + 1
                state.progress.total_chunks = total_chunks
                state.progress.messages_collected = collected
                self.d.job_states.checkpoint(state)

            try:
                collection = await self.collect(
                    windows, anchor=state.window_anchor, on_chunk_start=_checkpoint
                )
                state.progress.messages_collected = len(collection.messages)

                if not collection.messages:
                    self.d.job_states.fail(
                        state,
                        JobError(
                            message=NO_MESSAGES,
                            details=f"{len(collection.chunk_errors)} of {len(windows)} chunks failed",
                            chunk_errors=collection.chunk_errors,
                        ),
                    )
                    self._observe(started, "empty")
                    logger.warning(
                        "Ingestion run found no messages",
                        extra=log_context(chunk_errors=len(collection.chunk_errors)),
                    )
                    return IngestionResult(
                        success=False,
                        data_type=data_type,
                        status="failed",
                        error=NO_MESSAGES,
                        chunk_errors=collection.chunk_errors,
                    )

                counts = self.aggregate(collection.messages)
                snapshot = MessageCountSnapshot.from_counts(
                    data_type=data_type,
                    time_window_hours=total,
                    counts=counts,
                    updated_at=self.d.clock(),
                )
                self.d.snapshots.save(snapshot)

                error = self._summarize(collection)
                self.d.job_states.complete(state, error=error)
                self.d.metrics.inc_messages(data_type.value, snapshot.total_messages)
                self._observe(started, "completed")
                logger.info(
                    "Ingestion run completed",
                    extra=log_context(
                        total_messages=snapshot.total_messages,
                        chain_pairs=len(counts),
                        chunk_errors=len(collection.chunk_errors),
                        hit_page_limit=collection.hit_page_limit,
                    ),
                )
                return IngestionResult(
                    success=True,
                    data_type=data_type,
                    status="completed",
                    total_messages=snapshot.total_messages,
                    chain_pair_count=len(counts),
                    error=error.message if error else None,
                    chunk_errors=collection.chunk_errors,
                    snapshot_updated_at=snapshot.updated_at,
                )
            except StaleJobState:
                self._observe(started, "superseded")
                logger.warning("Ingestion run superseded by another run", extra=log_context())
                raise
            except Exception as e:
                self.d.job_states.fail(state, JobError.from_exception(e))
                self._observe(started, "failed")
                logger.error(
                    "Ingestion run failed",
                    extra=log_context(error_type=type(e).__name__, error=str(e)),
                    exc_info=True,
                )
                raise

    def _summarize(self, collection: ChunkCollection) -> Optional[JobError]:
        notes = []
        if collection.chunk_errors:
            notes.append(f"Completed with {len(collection.chunk_errors)} chunk errors")
        if self.profile.note_page_limit and collection.hit_page_limit:
            notes.append(PAGE_LIMIT_NOTE)
        if not notes:
            return None
        return JobError(message="; ".join(notes), chunk_errors=collection.chunk_errors)

    def _observe(self, started: float, outcome: str) -> None:
        self.d.metrics.observe_job_duration(
            self.profile.data_type.value, outcome, time.perf_counter() - started
        )
