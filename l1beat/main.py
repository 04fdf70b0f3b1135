"""Main entry point and CLI for the teleporter ingestion service.

Provides both module entry point (python -m l1beat) and a console CLI with
subcommands for one-shot jobs, reads, maintenance and daemon mode. Arguments
override environment-based configuration selectively.
"""

import argparse
import asyncio
import sys
from typing import Any, Optional

from pydantic import BaseModel, ValidationError

from l1beat.core.config import IngestConfig
from l1beat.daemon import run_daemon
from l1beat.di.container import Container
from l1beat.models.schemas import DataType
from l1beat.observability.logging_config import get_logger, setup_logging


def _build_parser() -> argparse.ArgumentParser:
    """Build the top-level CLI parser with subcommands.

    Returns:
        Configured ArgumentParser instance.
    """
    parser = argparse.ArgumentParser(
        prog="l1beat-ingest",
        description=(
            "Teleporter message ingestion CLI. If no subcommand is provided, "
            "the default is 'daily'."
        ),
    )
    subparsers = parser.add_subparsers(dest="command")

    daily_parser = subparsers.add_parser(
        "daily", help="Run the 24h daily ingestion job once (default)"
    )
    daily_parser.add_argument(
        "--max-pages",
        dest="max_pages_per_window",
        type=int,
        help="Page ceiling per window before bisecting (MAX_PAGES_PER_WINDOW)",
    )

    subparsers.add_parser(
        "weekly", help="Advance the checkpointed weekly job until it completes"
    )

    bulk_parser = subparsers.add_parser(
        "weekly-bulk", help="Run the 168h bulk weekly ingestion job once"
    )
    bulk_parser.add_argument(
        "--max-pages",
        dest="bulk_max_pages_per_window",
        type=int,
        help="Page ceiling per window (BULK_MAX_PAGES_PER_WINDOW)",
    )

    latest_parser = subparsers.add_parser(
        "latest", help="Print the served message counts for a data type"
    )
    latest_parser.add_argument(
        "--type",
        dest="data_type",
        choices=[t.value for t in DataType],
        default=DataType.DAILY.value,
        help="Snapshot type (default: daily)",
    )
    latest_parser.add_argument(
        "--raw",
        action="store_true",
        help="Print the stored snapshot only, without reconciliation or refresh",
    )

    history_parser = subparsers.add_parser(
        "history", help="Print the newest daily snapshot per date"
    )
    history_parser.add_argument(
        "--days", type=int, default=30, help="Number of dates (default: 30)"
    )

    backfill_parser = subparsers.add_parser(
        "backfill", help="Rebuild missing daily snapshots from the upstream API"
    )
    backfill_parser.add_argument(
        "--days", type=int, default=30, help="Number of dates to check (default: 30)"
    )
    backfill_parser.add_argument(
        "--delay",
        dest="backfill_delay_seconds",
        type=float,
        help="Delay between dates in seconds (BACKFILL_DELAY_SECONDS)",
    )

    subparsers.add_parser(
        "fix-state",
        help="Fail leftover in_progress job states and repair the weekly record",
    )

    subparsers.add_parser(
        "daemon", help="Run the scheduler loop (daily hourly, weekly once a day)"
    )

    return parser


_OVERRIDES = {
    "daily": ("max_pages_per_window",),
    "weekly-bulk": ("bulk_max_pages_per_window",),
    "backfill": ("backfill_delay_seconds",),
}


def _load_config(command: str, args: argparse.Namespace) -> Optional[IngestConfig]:
    """Load configuration from environment and apply CLI overrides.

    Returns None if validation/loading failed (errors are printed).
    """
    try:
        overrides = {
            key: getattr(args, key)
            for key in _OVERRIDES.get(command, ())
            if getattr(args, key, None) is not None
        }
        config = IngestConfig(**overrides)
        config.validate_requirements()
        return config
    except ValidationError as e:  # pragma: no cover - args parsing paths
        print(f"Configuration validation error:\n{e}", file=sys.stderr)
        return None
    except Exception as e:  # pragma: no cover - unexpected env issues
        print(f"Failed to load configuration: {e}", file=sys.stderr)
        return None


def _print(payload: Any) -> None:
    if isinstance(payload, BaseModel):
        print(payload.model_dump_json(indent=2, by_alias=True))
    elif isinstance(payload, list):
        print("[")
        print(
            ",\n".join(
                item.model_dump_json(indent=2, by_alias=True) for item in payload
            )
        )
        print("]")
    else:
        print(payload)


async def _execute(command: str, args: argparse.Namespace, container: Container) -> int:
    """Run one non-daemon command and print its result."""
    if command == "daily":
        result = await container.run_daily_ingestion()
        _print(result)
        return 0 if result.success or result.status == "in_progress" else 1
    if command == "weekly-bulk":
        result = await container.run_weekly_bulk_ingestion()
        _print(result)
        return 0 if result.success or result.status == "in_progress" else 1
    if command == "weekly":
        outcome = await container.advance_incremental_weekly_job()
        _print(outcome)
        return 0 if outcome.success or outcome.status == "in_progress" else 1
    if command == "latest":
        data_type = DataType(args.data_type)
        if args.raw:
            snapshot = container.get_latest_snapshot(data_type)
            _print(snapshot if snapshot is not None else "null")
        else:
            _print(await container.get_message_counts(data_type))
        return 0
    if command == "history":
        _print(container.get_historical_daily(args.days))
        return 0
    if command == "backfill":
        backfill = await container.backfill(args.days)
        _print(backfill)
        return 1 if backfill.failed_dates else 0
    if command == "fix-state":
        failed = container.fix_stale_on_startup()
        repaired = container.repair_weekly_state()
        print(f"failed_in_progress={failed} weekly_repaired={repaired}")
        return 0
    raise ValueError(f"Unknown command: {command}")


async def _run_command(
    command: str, args: argparse.Namespace, config: IngestConfig
) -> int:
    """Execute the selected CLI command using provided configuration."""
    setup_logging(
        level=config.log_level,
        log_format=config.log_format,
        service_name=config.service_name,
        loki_url=config.loki_url,
    )
    logger = get_logger(__name__)

    if command == "daemon":
        return await run_daemon(config)

    logger.info(
        "Starting teleporter ingestion command",
        extra={"command": command, "glacier_api_base": config.glacier_api_base},
    )
    container = Container(config=config)
    try:
        container.initialize_runtime()
        code = await _execute(command, args, container)
        logger.info("Command completed", extra={"command": command, "exit_code": code})
        return code
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0
    except Exception as e:
        logger.exception(f"Fatal error in ingestion command: {e}")
        return 1
    finally:
        await container.close()


async def main(argv: Optional[list[str]] = None) -> int:
    """Main application entry point with CLI support.

    Args:
        argv: Optional list of arguments to parse; defaults to sys.argv[1:]

    Returns:
        Exit code (0 for success, 1 for error)
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    command = args.command or "daily"
    if args.command is None:
        args = parser.parse_args(["daily"])

    config = _load_config(command, args)
    if config is None:
        return 1

    return await _run_command(command, args, config)


def cli() -> None:
    """Synchronous CLI entrypoint for console_scripts."""
    exit_code = asyncio.run(main())
    sys.exit(exit_code)


if __name__ == "__main__":
    cli()
