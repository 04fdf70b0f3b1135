from datetime import timedelta

import pytest

from l1beat.core.cooldown import TimestampCache
from l1beat.models.schemas import (
    ChainPairCount,
    DataType,
    JobProgress,
    JobStatus,
    MessageCountSnapshot,
)
from l1beat.services.progress.job_state_service import JobStateService
from l1beat.services.snapshot_service import SnapshotService, group_by_date


class RecordingTrigger:
    def __init__(self):
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        return "refreshed"


@pytest.fixture
def job_states(job_state_repo, clock):
    return JobStateService(repository=job_state_repo, clock=clock)


@pytest.fixture
def triggers():
    return {DataType.DAILY: RecordingTrigger(), DataType.WEEKLY: RecordingTrigger()}


@pytest.fixture
def service(snapshot_repo, job_states, triggers, clock):
    return SnapshotService(
        snapshots=snapshot_repo,
        job_states=job_states,
        refresh_triggers=triggers,
        cooldown=TimestampCache(ttl=timedelta(minutes=5), clock=clock),
        refresh_after={
            DataType.DAILY: timedelta(minutes=30),
            DataType.WEEKLY: timedelta(hours=24),
        },
        read_stale_after=timedelta(minutes=5),
        recent_window=timedelta(minutes=5),
        clock=clock,
    )


def _snapshot(data_type, updated_at, count=3, window=24):
    return MessageCountSnapshot.from_counts(
        data_type=data_type,
        time_window_hours=window,
        counts=[
            ChainPairCount(source_chain="C-Chain", destination_chain="Numi", message_count=count)
        ],
        updated_at=updated_at,
    )


@pytest.mark.asyncio
async def test_missing_snapshot_triggers_refresh_once(service, triggers):
    view = await service.get_message_counts(DataType.DAILY)
    await service.wait_for_refreshes()

    assert view.data == []
    assert view.metadata is None
    assert view.refresh_triggered is True
    assert triggers[DataType.DAILY].calls == 1

    again = await service.get_message_counts(DataType.DAILY)
    await service.wait_for_refreshes()
    assert again.refresh_triggered is False
    assert triggers[DataType.DAILY].calls == 1


@pytest.mark.asyncio
async def test_cooldown_expires_and_allows_new_refresh(service, triggers, clock):
    await service.get_message_counts(DataType.DAILY)
    clock.advance(minutes=6)
    view = await service.get_message_counts(DataType.DAILY)
    await service.wait_for_refreshes()

    assert view.refresh_triggered is True
    assert triggers[DataType.DAILY].calls == 2


@pytest.mark.asyncio
async def test_fresh_snapshot_is_served_without_refresh(service, snapshot_repo, triggers, clock):
    snapshot_repo.save(_snapshot(DataType.DAILY, clock.now - timedelta(minutes=10), count=7))

    view = await service.get_message_counts(DataType.DAILY)

    assert view.refresh_triggered is False
    assert view.metadata.total_messages == 7
    assert view.metadata.time_window == 24
    assert view.metadata.time_window_unit == "hours"
    assert view.data[0].message_count == 7
    assert triggers[DataType.DAILY].calls == 0


@pytest.mark.asyncio
async def test_outdated_snapshot_is_served_and_refreshed(service, snapshot_repo, triggers, clock):
    snapshot_repo.save(_snapshot(DataType.DAILY, clock.now - timedelta(minutes=45)))

    view = await service.get_message_counts(DataType.DAILY)
    await service.wait_for_refreshes()

    assert view.metadata is not None
    assert view.refresh_triggered is True
    assert triggers[DataType.DAILY].calls == 1


@pytest.mark.asyncio
async def test_running_job_is_reported_and_not_duplicated(
    service, job_states, triggers, clock
):
    job_states.begin(DataType.DAILY, progress=JobProgress(current_chunk=3, total_chunks=6))
    clock.advance(minutes=1)

    view = await service.get_message_counts(DataType.DAILY)

    assert view.update_status is not None
    assert view.update_status.state == JobStatus.IN_PROGRESS.value
    assert view.update_status.progress.current_chunk == 3
    assert view.refresh_triggered is False
    assert triggers[DataType.DAILY].calls == 0


@pytest.mark.asyncio
async def test_stale_job_is_reconciled_on_read(service, job_states, clock):
    job_states.begin(DataType.DAILY, progress=JobProgress())
    clock.advance(minutes=6)

    view = await service.get_message_counts(DataType.DAILY)
    await service.wait_for_refreshes()

    assert view.update_status is None
    assert job_states.get(DataType.DAILY).state == JobStatus.FAILED


@pytest.mark.asyncio
async def test_weekly_run_older_than_its_data_is_failed(
    service, snapshot_repo, job_states, clock
):
    job_states.begin(DataType.WEEKLY, progress=JobProgress(current_day=2, total_days=7))
    clock.advance(minutes=1)
    snapshot_repo.save(_snapshot(DataType.WEEKLY, clock.now, window=168))

    view = await service.get_message_counts(DataType.WEEKLY)

    assert view.update_status is None
    assert view.metadata.time_window == 168
    assert job_states.get(DataType.WEEKLY).state == JobStatus.FAILED


def test_latest_and_recent_snapshot(service, snapshot_repo, clock):
    old = _snapshot(DataType.DAILY, clock.now - timedelta(hours=2))
    snapshot_repo.save(old)

    assert service.get_latest_snapshot(DataType.DAILY) == old
    assert service.get_recent_snapshot(DataType.DAILY) is None
    assert service.get_recent_snapshot(DataType.DAILY, timedelta(hours=3)) == old
    assert service.get_latest_snapshot(DataType.WEEKLY) is None


def test_historical_daily_keeps_newest_per_date(service, snapshot_repo, clock):
    today_early = _snapshot(DataType.DAILY, clock.now - timedelta(hours=6), count=1)
    today_late = _snapshot(DataType.DAILY, clock.now - timedelta(hours=1), count=2)
    yesterday = _snapshot(DataType.DAILY, clock.now - timedelta(days=1), count=3)
    last_week = _snapshot(DataType.DAILY, clock.now - timedelta(days=6), count=4)
    for snapshot in (today_early, yesterday, today_late, last_week):
        snapshot_repo.save(snapshot)

    history = service.get_historical_daily(days=30)
    assert [s.total_messages for s in history] == [2, 3, 4]

    assert [s.total_messages for s in service.get_historical_daily(days=2)] == [2, 3]


def test_historical_daily_rejects_non_positive_days(service):
    with pytest.raises(ValueError):
        service.get_historical_daily(days=0)


def test_group_by_date(clock):
    a = _snapshot(DataType.DAILY, clock.now)
    b = _snapshot(DataType.DAILY, clock.now - timedelta(hours=1))
    c = _snapshot(DataType.DAILY, clock.now - timedelta(days=1))

    grouped = group_by_date([a, b, c])

    assert grouped[clock.now.date()] == [a, b]
    assert grouped[(clock.now - timedelta(days=1)).date()] == [c]
