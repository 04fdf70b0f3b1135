from datetime import timedelta

import pytest

from l1beat.core.exceptions import StaleJobState
from l1beat.models.schemas import (
    ChunkError,
    DataType,
    JobError,
    JobProgress,
    JobStatus,
    MessageCountSnapshot,
)
from l1beat.services.progress.job_state_service import (
    STALE_MESSAGE,
    STARTUP_MESSAGE,
    SUPERSEDED_MESSAGE,
    JobStateService,
)


@pytest.fixture
def service(job_state_repo, clock):
    return JobStateService(repository=job_state_repo, clock=clock)


def test_begin_claims_record_with_new_run_id(service, clock):
    first = service.begin(DataType.DAILY, progress=JobProgress(total_chunks=6))
    second = service.begin(DataType.DAILY, progress=JobProgress(total_chunks=6))

    stored = service.get(DataType.DAILY)
    assert first.run_id != second.run_id
    assert stored.run_id == second.run_id
    assert stored.state == JobStatus.IN_PROGRESS
    assert stored.started_at == clock.now
    assert stored.window_anchor == clock.now


def test_reconcile_stale_is_idempotent(service, clock):
    service.begin(DataType.WEEKLY, progress=JobProgress(current_day=3, total_days=7))
    clock.advance(minutes=11)

    failed = service.reconcile_stale(DataType.WEEKLY)
    again = service.reconcile_stale(DataType.WEEKLY)

    assert failed is not None
    assert failed.state == JobStatus.FAILED
    assert failed.error.message == STALE_MESSAGE
    assert failed.error.details == "No updates for 10 minutes"
    assert failed.progress.current_day == 3
    assert again is None
    assert service.get(DataType.WEEKLY).last_updated_at == clock.now


def test_fresh_record_is_not_reconciled(service, clock):
    service.begin(DataType.DAILY, progress=JobProgress())
    clock.advance(minutes=4)

    assert service.reconcile_stale(DataType.DAILY, timedelta(minutes=5)) is None
    assert service.running(DataType.DAILY, timedelta(minutes=5)) is not None
    clock.advance(minutes=2)
    assert service.running(DataType.DAILY, timedelta(minutes=5)) is None


def test_checkpoint_raises_when_superseded(service):
    mine = service.begin(DataType.DAILY, progress=JobProgress())
    service.begin(DataType.DAILY, progress=JobProgress())

    mine.progress.current_chunk = 2
    with pytest.raises(StaleJobState) as exc_info:
        service.checkpoint(mine)
    assert exc_info.value.update_type == "daily"


def test_fail_by_superseded_run_leaves_record_untouched(service):
    mine = service.begin(DataType.DAILY, progress=JobProgress())
    theirs = service.begin(DataType.DAILY, progress=JobProgress())

    service.fail(mine, JobError(message="boom"))

    stored = service.get(DataType.DAILY)
    assert stored.run_id == theirs.run_id
    assert stored.state == JobStatus.IN_PROGRESS


def test_complete_is_visible_after_write(service, clock):
    state = service.begin(DataType.DAILY, progress=JobProgress())
    clock.advance(minutes=1)

    service.complete(state, error=JobError(message="Completed with 1 chunk errors"))

    stored = service.get(DataType.DAILY)
    assert stored.state == JobStatus.COMPLETED
    assert stored.last_updated_at == clock.now
    assert stored.error.message == "Completed with 1 chunk errors"


def test_resume_keeps_progress_and_anchor(service, clock):
    state = service.begin(
        DataType.WEEKLY, progress=JobProgress(current_day=1, total_days=7)
    )
    state.progress.current_day = 4
    service.checkpoint(state)
    service.fail(state, JobError(message="boom"))
    clock.advance(hours=1)

    resumed = service.resume(service.get(DataType.WEEKLY))

    assert resumed.state == JobStatus.IN_PROGRESS
    assert resumed.run_id != state.run_id
    assert resumed.error is None
    assert resumed.progress.current_day == 4
    assert resumed.window_anchor == state.started_at
    assert service.get(DataType.WEEKLY).run_id == resumed.run_id


def test_fail_all_in_progress_on_startup(service):
    service.begin(DataType.DAILY, progress=JobProgress())
    weekly = service.begin(DataType.WEEKLY, progress=JobProgress())
    service.complete(weekly)

    assert service.fail_all_in_progress() == 1
    daily = service.get(DataType.DAILY)
    assert daily.state == JobStatus.FAILED
    assert daily.error.message == STARTUP_MESSAGE
    assert service.get(DataType.WEEKLY).state == JobStatus.COMPLETED


def test_reconcile_superseded_fails_run_older_than_data(service, clock):
    service.begin(DataType.WEEKLY, progress=JobProgress(current_day=2, total_days=7))
    clock.advance(minutes=1)

    failed = service.reconcile_superseded(DataType.WEEKLY, clock.now)

    assert failed.error.message == SUPERSEDED_MESSAGE
    assert service.reconcile_superseded(DataType.WEEKLY, clock.now) is None


def test_repair_weekly_state_marks_completed(service, clock):
    service.begin(
        DataType.WEEKLY,
        progress=JobProgress(current_day=5, total_days=7, days_completed=4),
    )
    snapshot = MessageCountSnapshot.from_counts(
        data_type=DataType.WEEKLY, time_window_hours=168, counts=[], updated_at=clock.now
    )

    assert service.repair_weekly_state(snapshot) is True

    stored = service.get(DataType.WEEKLY)
    assert stored.state == JobStatus.COMPLETED
    assert stored.progress.current_day == 8
    assert stored.progress.days_completed == 7
    assert stored.progress.messages_collected == 0
    assert service.repair_weekly_state(snapshot) is False


def test_repair_without_weekly_data_does_nothing(service):
    service.begin(DataType.WEEKLY, progress=JobProgress(current_day=2, total_days=7))
    assert service.repair_weekly_state(None) is False
    assert service.get(DataType.WEEKLY).state == JobStatus.IN_PROGRESS


def test_reconciled_run_cannot_write_back(service, clock):
    mine = service.begin(DataType.DAILY, progress=JobProgress(total_chunks=6))
    clock.advance(minutes=6)
    assert service.reconcile_stale(DataType.DAILY, timedelta(minutes=5)) is not None

    mine.progress.current_chunk = 3
    with pytest.raises(StaleJobState):
        service.checkpoint(mine)
    service.fail(mine, JobError(message="boom"))

    stored = service.get(DataType.DAILY)
    assert stored.state == JobStatus.FAILED
    assert stored.error.message == STALE_MESSAGE
    assert stored.progress.current_chunk is None


def test_resume_carries_chunk_errors(service, clock):
    state = service.begin(
        DataType.WEEKLY, progress=JobProgress(current_day=1, total_days=7)
    )
    state.progress.current_day = 3
    state.error = JobError(
        message="Errors in 1 chunks",
        chunk_errors=[ChunkError(chunk=2, day=1, error="timeout", timestamp=clock.now)],
    )
    service.checkpoint(state)
    service.fail(state, JobError(message="boom"))
    assert [e.chunk for e in service.get(DataType.WEEKLY).error.chunk_errors] == [2]

    resumed = service.resume(service.get(DataType.WEEKLY))

    assert resumed.state == JobStatus.IN_PROGRESS
    assert resumed.error.message == "Errors in 1 chunks"
    assert [e.chunk for e in resumed.error.chunk_errors] == [2]
