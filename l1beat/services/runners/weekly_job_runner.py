"""Incremental weekly job driven by the weekly JobState checkpoint.

The week is processed one 24h day at a time, newest day first. After every
chunk and every day the record is checkpointed, so a crashed or redeployed
process resumes from the recorded day instead of refetching completed days.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional, Protocol

from l1beat.core.exceptions import StaleJobState
from l1beat.models.results import WeeklyJobOutcome
from l1beat.models.schemas import (
    ChainPairCount,
    DataType,
    DayResult,
    JobError,
    JobProgress,
    JobState,
    JobStatus,
    MessageCountSnapshot,
)
from l1beat.observability.metrics_adapter import MetricsAdapter
from l1beat.repositories.protocols import SnapshotRepositoryProtocol
from l1beat.services.progress.job_state_service import JobStateService
from l1beat.services.usecases.chunked_ingestion import (
    ChunkedIngestionJob,
    chunk_windows,
)
from l1beat.utils.clock import Clock, Sleeper, pause
from l1beat.utils.correlation import CorrelationContext, log_context

logger = logging.getLogger(__name__)

HOURS_PER_DAY = 24
EMPTY_WEEK = "No messages found for the entire week"


class _Merger(Protocol):
    def merge(self, count_lists) -> list[ChainPairCount]: ...


@dataclass
class WeeklyJobDeps:
    """Dependencies required by CheckpointedJobRunner."""

    ingestion: ChunkedIngestionJob
    aggregator: _Merger
    snapshots: SnapshotRepositoryProtocol
    job_states: JobStateService
    metrics: MetricsAdapter
    clock: Clock
    sleep: Sleeper


class CheckpointedJobRunner:
    """Resumable day-at-a-time weekly ingestion."""

    def __init__(
        self,
        deps: WeeklyJobDeps,
        *,
        total_days: int = 7,
        chunk_hours: int = 4,
        day_delay_seconds: float = 10.0,
        stale_after: timedelta = timedelta(minutes=10),
        resume_max_age: timedelta = timedelta(hours=48),
    ) -> None:
        """Initialize runner.

        Args:
            deps: Collaborators
            total_days: Days in the window
            chunk_hours: Chunk size within a day
            day_delay_seconds: Pacing delay between days
            stale_after: Age after which an in_progress record is abandoned
            resume_max_age: Failed runs anchored longer ago restart from day 1
        """
        self.d = deps
        self._total_days = total_days
        self._chunk_hours = chunk_hours
        self._day_delay = day_delay_seconds
        self._stale_after = stale_after
        self._resume_max_age = resume_max_age

    async def advance(self) -> WeeklyJobOutcome:
        """Drive the weekly job forward to completion.

        Returns immediately with ``status="in_progress"`` if a fresh run owns
        the record. Otherwise resumes a usable checkpoint or starts day 1, then
        processes days until the week is finalized.

        Raises:
            StaleJobState: If another run claims the record mid-way
        """
        with CorrelationContext(job="weekly"):
            state, resumed_from = self._claim()
            if state is None:
                return WeeklyJobOutcome(
                    success=False, data_type=DataType.WEEKLY, status="in_progress"
                )

            started = time.perf_counter()
            processed: list[int] = []
            try:
                while (state.progress.current_day or 1) <= self._total_days:
                    day = state.progress.current_day or 1
                    await self._process_day(state, day)
                    processed.append(day)
                    if day < self._total_days:
                        await pause(self.d.sleep, self._day_delay)
                outcome = self._finalize(state)
            except StaleJobState:
                logger.warning(
                    "Weekly run superseded by another run",
                    extra=log_context(days_processed=processed),
                )
                raise
            except Exception as e:
                self.d.job_states.fail(state, JobError.from_exception(e))
                self._observe(started, "failed")
                logger.error(
                    "Weekly run failed, progress kept for resume",
                    extra=log_context(
                        current_day=state.progress.current_day,
                        partial_results=len(state.partial_results),
                        error_type=type(e).__name__,
                    ),
                    exc_info=True,
                )
                raise

            self._observe(started, outcome.status)
            outcome.resumed_from_day = resumed_from
            outcome.days_processed = processed
            return outcome

    def _claim(self) -> tuple[Optional[JobState], Optional[int]]:
        existing = self.d.job_states.get(DataType.WEEKLY)
        if existing is not None and existing.state == JobStatus.IN_PROGRESS:
            if not self.d.job_states.is_stale(existing, self._stale_after):
                logger.info(
                    "Weekly run already in progress",
                    extra=log_context(
                        current_day=existing.progress.current_day,
                        last_updated_at=existing.last_updated_at.isoformat(),
                    ),
                )
                return None, None
            self.d.job_states.reconcile_stale(DataType.WEEKLY, self._stale_after)
            existing = self.d.job_states.get(DataType.WEEKLY)
            if existing is not None and existing.state == JobStatus.IN_PROGRESS:
                # Another observer reconciled and claimed it first
                return None, None

        if existing is not None and self._can_resume(existing):
            return self.d.job_states.resume(existing), existing.progress.current_day

        state = self.d.job_states.begin(
            DataType.WEEKLY,
            progress=JobProgress(
                current_day=1,
                total_days=self._total_days,
                days_completed=0,
                messages_collected=0,
            ),
            partial_results=[],
        )
        return state, None

    def _can_resume(self, state: JobState) -> bool:
        if state.state != JobStatus.FAILED:
            return False
        day = state.progress.current_day
        if day is None or not 2 <= day <= self._total_days:
            return False
        if (state.progress.total_days or self._total_days) != self._total_days:
            return False
        if any(r.day >= day for r in state.partial_results):
            return False
        return self.d.clock() - state.window_anchor <= self._resume_max_age

    async def _process_day(self, state: JobState, day: int) -> None:
        end_hours_ago = (day - 1) * HOURS_PER_DAY
        start_hours_ago = end_hours_ago + HOURS_PER_DAY
        windows = chunk_windows(HOURS_PER_DAY, self._chunk_hours, end_hours_ago)
        collected_before = state.progress.messages_collected

        async def _checkpoint(index: int, total_chunks: int, collected: int) -> None:
            state.progress.current_chunk = index + 1
            state.progress.total_chunks = total_chunks
            state.progress.messages_collected = collected_before + collected
            self.d.job_states.checkpoint(state)

        logger.info(
            "Processing weekly day",
            extra=log_context(
                day=day, start_hours_ago=start_hours_ago, end_hours_ago=end_hours_ago
            ),
        )
        collection = await self.d.ingestion.collect(
            windows, anchor=state.window_anchor, on_chunk_start=_checkpoint, day=day
        )

        if collection.messages:
            counts = self.d.ingestion.aggregate(collection.messages)
            state.partial_results.append(
                DayResult(
                    day=day,
                    message_counts=counts,
                    total_messages=len(collection.messages),
                    time_window_hours=HOURS_PER_DAY,
                    start_hours_ago=start_hours_ago,
                    end_hours_ago=end_hours_ago,
                    processed_at=self.d.clock(),
                )
            )
        if collection.chunk_errors:
            error = state.error or JobError(message="")
            error.chunk_errors.extend(collection.chunk_errors)
            error.message = f"Errors in {len(error.chunk_errors)} chunks"
            state.error = error

        state.progress.messages_collected = collected_before + len(collection.messages)
        state.progress.current_day = day + 1
        state.progress.days_completed = day
        state.progress.current_chunk = None
        state.progress.total_chunks = None
        self.d.job_states.checkpoint(state)
        logger.info(
            "Weekly day completed",
            extra=log_context(
                day=day,
                messages=len(collection.messages),
                chunk_errors=len(collection.chunk_errors),
                messages_collected=state.progress.messages_collected,
            ),
        )

    def _finalize(self, state: JobState) -> WeeklyJobOutcome:
        total_days = self._total_days
        if not state.partial_results:
            self.d.job_states.fail(state, JobError(message=EMPTY_WEEK))
            logger.warning("Weekly run found no messages", extra=log_context())
            return WeeklyJobOutcome(
                success=False,
                data_type=DataType.WEEKLY,
                status="failed",
                error=EMPTY_WEEK,
            )

        merged = self.d.aggregator.merge(r.message_counts for r in state.partial_results)
        snapshot = MessageCountSnapshot.from_counts(
            data_type=DataType.WEEKLY,
            time_window_hours=total_days * HOURS_PER_DAY,
            counts=merged,
            updated_at=self.d.clock(),
        )
        self.d.snapshots.save(snapshot)

        chunk_error = state.error
        state.progress = JobProgress(
            current_day=total_days + 1,
            total_days=total_days,
            days_completed=total_days,
            messages_collected=snapshot.total_messages,
        )
        state.partial_results = []
        self.d.job_states.complete(state, error=chunk_error)
        self.d.metrics.inc_messages(DataType.WEEKLY.value, snapshot.total_messages)
        logger.info(
            "Weekly run finalized",
            extra=log_context(
                total_messages=snapshot.total_messages, chain_pairs=len(merged)
            ),
        )
        return WeeklyJobOutcome(
            success=True,
            data_type=DataType.WEEKLY,
            status="completed",
            total_messages=snapshot.total_messages,
            chain_pair_count=len(merged),
            error=chunk_error.message if chunk_error else None,
            snapshot_updated_at=snapshot.updated_at,
        )

    def _observe(self, started: float, outcome: str) -> None:
        self.d.metrics.observe_job_duration(
            DataType.WEEKLY.value, outcome, time.perf_counter() - started
        )
