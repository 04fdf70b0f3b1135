import argparse

import pytest

from l1beat import main as cli
from l1beat.models.results import BackfillResult, IngestionResult, SnapshotView
from l1beat.models.schemas import DataType


@pytest.fixture(autouse=True)
def _no_env_file(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)


class FakeContainer:
    def __init__(self, *, status="completed", success=True, failed_dates=()):
        self.status = status
        self.success = success
        self.failed_dates = list(failed_dates)
        self.calls: list[tuple] = []

    async def run_daily_ingestion(self):
        self.calls.append(("daily",))
        return IngestionResult(
            success=self.success, data_type=DataType.DAILY, status=self.status
        )

    async def run_weekly_bulk_ingestion(self):
        self.calls.append(("weekly-bulk",))
        return IngestionResult(
            success=self.success, data_type=DataType.WEEKLY, status=self.status
        )

    async def get_message_counts(self, data_type):
        self.calls.append(("latest", data_type))
        return SnapshotView(data_type=data_type)

    def get_latest_snapshot(self, data_type):
        self.calls.append(("raw", data_type))
        return None

    def get_historical_daily(self, days):
        self.calls.append(("history", days))
        return []

    async def backfill(self, days):
        self.calls.append(("backfill", days))
        return BackfillResult(days_checked=days, failed_dates=self.failed_dates)

    def fix_stale_on_startup(self):
        self.calls.append(("fix",))
        return 2

    def repair_weekly_state(self):
        self.calls.append(("repair",))
        return True


def _args(*argv: str) -> argparse.Namespace:
    return cli._build_parser().parse_args(list(argv))


def test_parser_defaults():
    assert _args().command is None
    assert _args("history").days == 30
    latest = _args("latest")
    assert latest.data_type == "daily" and latest.raw is False
    backfill = _args("backfill", "--days", "7", "--delay", "1.5")
    assert backfill.days == 7 and backfill.backfill_delay_seconds == 1.5
    assert _args("daily", "--max-pages", "20").max_pages_per_window == 20


def test_parser_rejects_unknown_type():
    with pytest.raises(SystemExit):
        _args("latest", "--type", "monthly")


def test_load_config_applies_command_overrides():
    config = cli._load_config("weekly-bulk", _args("weekly-bulk", "--max-pages", "7"))
    assert config is not None
    assert config.bulk_max_pages_per_window == 7

    config = cli._load_config("daily", _args("daily"))
    assert config.max_pages_per_window == 10


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status,success,expected",
    [("completed", True, 0), ("in_progress", False, 0), ("failed", False, 1)],
)
async def test_ingestion_exit_codes(status, success, expected, capsys):
    container = FakeContainer(status=status, success=success)

    assert await cli._execute("daily", _args("daily"), container) == expected
    assert await cli._execute("weekly-bulk", _args("weekly-bulk"), container) == expected
    assert f'"status": "{status}"' in capsys.readouterr().out


@pytest.mark.asyncio
async def test_read_commands(capsys):
    container = FakeContainer()

    assert await cli._execute("latest", _args("latest", "--type", "weekly"), container) == 0
    assert await cli._execute("latest", _args("latest", "--raw"), container) == 0
    assert await cli._execute("history", _args("history", "--days", "5"), container) == 0

    assert container.calls == [
        ("latest", DataType.WEEKLY),
        ("raw", DataType.DAILY),
        ("history", 5),
    ]
    assert "null" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_backfill_and_fix_state(capsys):
    assert await cli._execute("backfill", _args("backfill"), FakeContainer()) == 0
    failing = FakeContainer(failed_dates=["2024-05-07"])
    assert await cli._execute("backfill", _args("backfill", "--days", "3"), failing) == 1
    assert failing.calls == [("backfill", 3)]

    assert await cli._execute("fix-state", _args("fix-state"), FakeContainer()) == 0
    assert "failed_in_progress=2 weekly_repaired=True" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_main_defaults_to_daily(monkeypatch):
    seen = {}

    async def fake_run(command, args, config):
        seen["command"] = command
        seen["args"] = args
        return 0

    monkeypatch.setattr(cli, "_run_command", fake_run)

    assert await cli.main([]) == 0
    assert seen["command"] == "daily"
    assert seen["args"].max_pages_per_window is None


@pytest.mark.asyncio
async def test_main_returns_one_on_invalid_config(monkeypatch):
    monkeypatch.setenv("PAGE_SIZE", "0")
    assert await cli.main(["daily"]) == 1
