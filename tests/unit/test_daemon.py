import pytest

from l1beat.core.config import IngestConfig
from l1beat.core.exceptions import StaleJobState
from l1beat.core.shutdown import ShutdownHandler
from l1beat.daemon import IngestDaemon
from l1beat.models.results import IngestionResult
from l1beat.models.schemas import DataType


class FakeContainer:
    def __init__(self):
        self.calls: list[str] = []
        self.daily_error = None
        self.weekly_error = None
        self.on_daily = None

    def describe(self):
        return {"metrics_enabled": False}

    def initialize_runtime(self):
        self.calls.append("init")

    def fix_stale_on_startup(self):
        self.calls.append("fix")
        return 0

    async def run_daily_ingestion(self):
        self.calls.append("daily")
        if self.on_daily:
            self.on_daily()
        if self.daily_error:
            raise self.daily_error
        return IngestionResult(
            success=True, data_type=DataType.DAILY, status="completed", total_messages=3
        )

    async def advance_incremental_weekly_job(self):
        self.calls.append("weekly")
        if self.weekly_error:
            raise self.weekly_error
        return IngestionResult(success=True, data_type=DataType.WEEKLY, status="completed")


def _config(**overrides):
    values = dict(daily_interval_minutes=60, weekly_run_hour_utc=12, enable_metrics=False)
    values.update(overrides)
    return IngestConfig(**values)


@pytest.mark.asyncio
async def test_first_tick_runs_daily_and_weekly_at_matching_hour(clock):
    container = FakeContainer()
    daemon = IngestDaemon(_config(), container, clock=clock)

    assert await daemon.tick() == ["daily", "weekly"]

    # Same hour again: daily not yet due, weekly already ran today
    clock.advance(minutes=30)
    assert await daemon.tick() == []

    clock.advance(minutes=30)
    assert await daemon.tick() == ["daily"]
    assert container.calls == ["daily", "weekly", "daily"]


@pytest.mark.asyncio
async def test_weekly_waits_for_configured_hour(clock):
    container = FakeContainer()
    daemon = IngestDaemon(_config(weekly_run_hour_utc=14), container, clock=clock)

    assert await daemon.tick() == ["daily"]
    clock.advance(hours=2)
    assert await daemon.tick() == ["daily", "weekly"]
    clock.advance(days=1)
    assert "weekly" in await daemon.tick()


@pytest.mark.asyncio
async def test_failing_jobs_do_not_stop_schedule(clock):
    container = FakeContainer()
    container.daily_error = RuntimeError("mongo down")
    container.weekly_error = StaleJobState("superseded", update_type="weekly")
    daemon = IngestDaemon(_config(), container, clock=clock)

    assert await daemon.tick() == ["daily", "weekly"]

    clock.advance(hours=1)
    container.daily_error = None
    assert await daemon.tick() == ["daily"]


@pytest.mark.asyncio
async def test_start_runs_maintenance_then_loops_until_shutdown(clock):
    container = FakeContainer()
    shutdown = ShutdownHandler()
    container.on_daily = shutdown.request_shutdown
    daemon = IngestDaemon(
        _config(), container, shutdown=shutdown, clock=clock, tick_seconds=0.01
    )

    await daemon.start()

    assert container.calls == ["init", "fix", "daily", "weekly"]


@pytest.mark.asyncio
async def test_start_without_run_on_start_defers_daily(clock):
    container = FakeContainer()
    shutdown = ShutdownHandler()
    daemon = IngestDaemon(
        _config(run_on_start=False, weekly_run_hour_utc=3),
        container,
        shutdown=shutdown,
        clock=clock,
        tick_seconds=0.01,
    )
    shutdown.request_shutdown()

    await daemon.start()

    assert container.calls == ["init", "fix"]
    assert await daemon.tick() == []
