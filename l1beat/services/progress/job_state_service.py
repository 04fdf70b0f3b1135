"""JobState lifecycle on top of the job state repository.

The record per data type is a cooperative lock and checkpoint: a run owns it
through ``run_id`` while ``in_progress``; any observer may fail it once it is
stale. Staleness transitions are conditional updates, so concurrent observers
converge on the same terminal record and only the first one changes it.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional

from l1beat.core.exceptions import StaleJobState
from l1beat.models.schemas import (
    DataType,
    DayResult,
    JobError,
    JobProgress,
    JobState,
    JobStatus,
    MessageCountSnapshot,
)
from l1beat.observability.metrics_adapter import MetricsAdapter, NoopMetricsAdapter
from l1beat.repositories.protocols import JobStateRepositoryProtocol
from l1beat.utils.clock import Clock, utc_now
from l1beat.utils.correlation import get_correlation_id, log_context

logger = logging.getLogger(__name__)

STALE_MESSAGE = "Update timed out"
STARTUP_MESSAGE = "Update timed out (found on server startup)"
SUPERSEDED_MESSAGE = "Update superseded by newer data"


def _dt(value) -> str:
    return getattr(value, "value", str(value))


class JobStateService:
    """Reads, claims and transitions JobState records."""

    def __init__(
        self,
        *,
        repository: JobStateRepositoryProtocol,
        stale_after: timedelta = timedelta(minutes=10),
        clock: Clock = utc_now,
        metrics: Optional[MetricsAdapter] = None,
    ) -> None:
        """Initialize service.

        Args:
            repository: Job state storage
            stale_after: Default staleness threshold for writers
            clock: Source of the current time
            metrics: Metrics adapter
        """
        self._repo = repository
        self._stale_after = stale_after
        self._clock = clock
        self._metrics: MetricsAdapter = metrics or NoopMetricsAdapter()

    def now(self) -> datetime:
        return self._clock()

    def get(self, update_type: DataType) -> Optional[JobState]:
        """Return the live record for a data type."""
        return self._repo.get(update_type)

    def is_stale(
        self,
        state: JobState,
        threshold: Optional[timedelta] = None,
        *,
        now: Optional[datetime] = None,
    ) -> bool:
        """Return True if ``state`` is in_progress without a recent update."""
        if state.state != JobStatus.IN_PROGRESS:
            return False
        limit = threshold if threshold is not None else self._stale_after
        return (now or self._clock()) - state.last_updated_at > limit

    def running(
        self, update_type: DataType, threshold: Optional[timedelta] = None
    ) -> Optional[JobState]:
        """Return the record if a fresh in_progress run owns it."""
        state = self._repo.get(update_type)
        if state is None or state.state != JobStatus.IN_PROGRESS:
            return None
        if self.is_stale(state, threshold):
            return None
        return state

    def reconcile_stale(
        self, update_type: DataType, threshold: Optional[timedelta] = None
    ) -> Optional[JobState]:
        """Fail the record if it is in_progress and stale.

        Idempotent: a second call after a successful transition matches
        nothing and returns None without touching the record.

        Returns:
            The failed record if this call made the transition, else None
        """
        limit = threshold if threshold is not None else self._stale_after
        now = self._clock()
        minutes = int(limit.total_seconds() // 60)
        failed = self._repo.mark_failed_if_stale(
            update_type,
            cutoff=now - limit,
            error=JobError(
                message=STALE_MESSAGE,
                details=f"No updates for {minutes} minutes",
            ),
            now=now,
        )
        if failed is not None:
            self._metrics.inc_job_transition(_dt(update_type), JobStatus.FAILED.value)
            logger.warning(
                "Reconciled stale job state",
                extra=log_context(
                    update_type=_dt(update_type),
                    last_updated_at=failed.last_updated_at.isoformat(),
                    threshold_minutes=minutes,
                    progress=failed.progress.model_dump(exclude_none=True),
                ),
            )
        return failed

    def reconcile_superseded(
        self, update_type: DataType, newest_data_at: datetime
    ) -> Optional[JobState]:
        """Fail an in_progress record that started before the newest snapshot."""
        now = self._clock()
        failed = self._repo.mark_failed_if_started_before(
            update_type,
            started_before=newest_data_at,
            error=JobError(
                message=SUPERSEDED_MESSAGE,
                details=f"Snapshot at {newest_data_at.isoformat()} is newer than the run",
            ),
            now=now,
        )
        if failed is not None:
            self._metrics.inc_job_transition(_dt(update_type), JobStatus.FAILED.value)
            logger.warning(
                "Reconciled job state older than its data",
                extra=log_context(update_type=_dt(update_type)),
            )
        return failed

    def begin(
        self,
        update_type: DataType,
        *,
        progress: JobProgress,
        anchor_at: Optional[datetime] = None,
        partial_results: Optional[list[DayResult]] = None,
    ) -> JobState:
        """Claim the record for a new run (unconditional upsert)."""
        now = self._clock()
        state = JobState(
            update_type=update_type,
            state=JobStatus.IN_PROGRESS,
            run_id=str(uuid.uuid4()),
            started_at=now,
            last_updated_at=now,
            anchor_at=anchor_at or now,
            progress=progress,
            partial_results=partial_results or [],
            error=None,
        )
        self._repo.save(state)
        self._metrics.inc_job_transition(_dt(update_type), JobStatus.IN_PROGRESS.value)
        logger.info(
            "Job started",
            extra=log_context(update_type=_dt(update_type), run_id=state.run_id),
        )
        return state

    def try_begin(
        self,
        update_type: DataType,
        *,
        progress: JobProgress,
        threshold: Optional[timedelta] = None,
    ) -> Optional[JobState]:
        """Claim the record unless a fresh run already owns it.

        A stale owner is reconciled to failed first. Returns None when a fresh
        in_progress record exists.
        """
        self.reconcile_stale(update_type, threshold)
        if self.running(update_type, threshold) is not None:
            logger.info(
                "Job already in progress, skipping",
                extra=log_context(update_type=_dt(update_type)),
            )
            return None
        return self.begin(update_type, progress=progress)

    def resume(self, previous: JobState) -> JobState:
        """Claim a failed record again, keeping its progress and partial results.

        Chunk errors recorded by earlier days stay on the record so the final
        summary covers the whole run.
        """
        now = self._clock()
        carried = previous.error.chunk_errors if previous.error else []
        error = (
            JobError(
                message=f"Errors in {len(carried)} chunks", chunk_errors=list(carried)
            )
            if carried
            else None
        )
        state = previous.model_copy(
            update={
                "state": JobStatus.IN_PROGRESS.value,
                "run_id": str(uuid.uuid4()),
                "last_updated_at": now,
                "anchor_at": previous.window_anchor,
                "error": error,
            },
            deep=True,
        )
        self._repo.save(state)
        self._metrics.inc_job_transition(_dt(state.update_type), JobStatus.IN_PROGRESS.value)
        logger.info(
            "Job resumed from checkpoint",
            extra=log_context(
                update_type=_dt(state.update_type),
                run_id=state.run_id,
                current_day=state.progress.current_day,
                partial_results=len(state.partial_results),
            ),
        )
        return state

    def checkpoint(self, state: JobState) -> JobState:
        """Persist progress of an owned run.

        Raises:
            StaleJobState: If another run has claimed the record since
        """
        state.last_updated_at = self._clock()
        if not self._repo.save_if_owner(state):
            raise StaleJobState(
                f"{_dt(state.update_type)} job {state.run_id} was superseded",
                update_type=_dt(state.update_type),
                correlation_id=get_correlation_id(),
            )
        self._metrics.set_job_progress(
            _dt(state.update_type), state.progress.messages_collected
        )
        return state

    def complete(self, state: JobState, *, error: Optional[JobError] = None) -> JobState:
        """Mark an owned run completed and verify the write by reading it back."""
        state.state = JobStatus.COMPLETED
        state.last_updated_at = self._clock()
        state.error = error
        self._repo.save(state)

        stored = self._repo.get(state.update_type)
        if stored is None or stored.state != JobStatus.COMPLETED:
            logger.warning(
                "Completed state not visible after write, rewriting",
                extra=log_context(
                    update_type=_dt(state.update_type),
                    stored_state=stored.state if stored else None,
                ),
            )
            self._repo.save(state)

        self._metrics.inc_job_transition(_dt(state.update_type), JobStatus.COMPLETED.value)
        logger.info(
            "Job completed",
            extra=log_context(
                update_type=_dt(state.update_type),
                messages=state.progress.messages_collected,
                error=error.message if error else None,
            ),
        )
        return state

    def fail(self, state: JobState, error: JobError) -> JobState:
        """Mark an owned run failed, keeping progress and partial results.

        A run that no longer owns the record leaves it untouched.
        """
        carried = state.error.chunk_errors if state.error else []
        if carried and not error.chunk_errors:
            error = error.model_copy(update={"chunk_errors": list(carried)})
        state.state = JobStatus.FAILED
        state.last_updated_at = self._clock()
        state.error = error
        if not self._repo.save_if_owner(state):
            logger.warning(
                "Job superseded before failure could be recorded",
                extra=log_context(update_type=_dt(state.update_type), run_id=state.run_id),
            )
            return state
        self._metrics.inc_job_transition(_dt(state.update_type), JobStatus.FAILED.value)
        logger.info(
            "Job failed",
            extra=log_context(update_type=_dt(state.update_type), error=error.message),
        )
        return state

    def fail_all_in_progress(self) -> int:
        """Fail every record left in_progress by a previous process."""
        count = self._repo.fail_all_in_progress(
            error=JobError(message=STARTUP_MESSAGE, details="Process restarted"),
            now=self._clock(),
        )
        if count:
            logger.warning("Failed stale job states on startup", extra={"count": count})
        return count

    def repair_weekly_state(self, latest: Optional[MessageCountSnapshot]) -> bool:
        """Mark a stuck weekly record completed when weekly data already exists.

        Args:
            latest: Newest weekly snapshot

        Returns:
            True if the record was changed
        """
        state = self._repo.get(DataType.WEEKLY)
        if state is None or latest is None or state.state != JobStatus.IN_PROGRESS:
            return False
        total_days = state.progress.total_days or 7
        state.state = JobStatus.COMPLETED
        state.last_updated_at = self._clock()
        state.progress = JobProgress(
            current_day=total_days + 1,
            total_days=total_days,
            days_completed=total_days,
            messages_collected=latest.total_messages,
        )
        state.partial_results = []
        state.error = None
        self._repo.save(state)
        logger.info(
            "Weekly job state repaired",
            extra={"messages": latest.total_messages, "snapshot_at": latest.updated_at.isoformat()},
        )
        return True
