"""Daemon mode for the teleporter ingestion service.

Runs continuously and replaces the cron schedule: the daily job every
``daily_interval_minutes`` and the incremental weekly job once per UTC day at
``weekly_run_hour_utc``. Jobs run one at a time inside the loop; a failing
job is logged and the schedule continues.
"""

from __future__ import annotations

import asyncio
import sys
from datetime import date, datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

from pydantic import ValidationError

from l1beat.core.config import IngestConfig
from l1beat.core.exceptions import StaleJobState
from l1beat.core.shutdown import ShutdownHandler
from l1beat.di.container import Container
from l1beat.observability.logging_config import get_logger, setup_logging
from l1beat.utils.clock import Clock, utc_now


class IngestDaemon:
    """Scheduler loop around the container's ingestion operations."""

    def __init__(
        self,
        config: IngestConfig,
        container: Container,
        *,
        shutdown: Optional[ShutdownHandler] = None,
        clock: Clock = utc_now,
        tick_seconds: float = 30.0,
    ) -> None:
        """Initialize daemon.

        Args:
            config: Ingestion configuration
            container: Wired application container
            shutdown: Shutdown coordinator (created when omitted)
            clock: Source of the current time
            tick_seconds: Maximum wait between schedule checks
        """
        self.config = config
        self.container = container
        self.shutdown = shutdown or ShutdownHandler()
        self.logger = get_logger(__name__)
        self._clock = clock
        self._tick_seconds = tick_seconds
        self._interval = timedelta(minutes=config.daily_interval_minutes)
        self._next_daily_at: Optional[datetime] = None
        self._last_weekly_date: Optional[date] = None

    async def start(self) -> None:
        """Run startup maintenance, then the schedule loop until shutdown."""
        self.logger.info(
            "Starting ingest daemon",
            extra={
                "daily_interval_minutes": self.config.daily_interval_minutes,
                "weekly_run_hour_utc": self.config.weekly_run_hour_utc,
                **self.container.describe(),
            },
        )
        self.container.initialize_runtime()
        fixed = self.container.fix_stale_on_startup()
        self.logger.info("Startup job state check done", extra={"failed_states": fixed})

        now = self._clock()
        self._next_daily_at = now if self.config.run_on_start else now + self._interval

        while not self.shutdown.should_shutdown:
            await self.tick()
            await self.shutdown.wait_for_shutdown(timeout=self._tick_seconds)

        self.logger.info("Ingest daemon stopped")

    async def tick(self) -> list[str]:
        """Run every job that is due.

        Returns:
            Names of the jobs that were started
        """
        now = self._clock()
        started: list[str] = []

        if self._next_daily_at is None or now >= self._next_daily_at:
            self._next_daily_at = now + self._interval
            await self._run_job("daily", self.container.run_daily_ingestion)
            started.append("daily")

        if self._weekly_due(now):
            self._last_weekly_date = now.date()
            await self._run_job("weekly", self.container.advance_incremental_weekly_job)
            started.append("weekly")

        return started

    def _weekly_due(self, now: datetime) -> bool:
        if now.hour != self.config.weekly_run_hour_utc:
            return False
        return self._last_weekly_date != now.date()

    async def _run_job(self, name: str, op: Callable[[], Awaitable[Any]]) -> None:
        try:
            result = await op()
        except StaleJobState:
            self.logger.warning("Scheduled job superseded", extra={"job": name})
        except Exception as e:
            self.logger.error(
                "Scheduled job failed",
                extra={"job": name, "error_type": type(e).__name__, "error": str(e)},
                exc_info=True,
            )
        else:
            self.logger.info(
                "Scheduled job finished",
                extra={
                    "job": name,
                    "status": getattr(result, "status", None),
                    "total_messages": getattr(result, "total_messages", None),
                },
            )


async def main() -> int:
    """Main entry point for daemon mode.

    Returns:
        Exit code (0 for success, 1 for error)
    """
    try:
        config = IngestConfig()
        config.validate_requirements()
    except ValidationError as e:
        print(f"Configuration validation error:\n{e}", file=sys.stderr)
        return 1
    except Exception as e:
        print(f"Failed to load configuration: {e}", file=sys.stderr)
        return 1

    setup_logging(
        level=config.log_level,
        log_format=config.log_format,
        service_name=config.service_name,
        loki_url=config.loki_url,
    )
    return await run_daemon(config)


async def run_daemon(config: IngestConfig) -> int:
    """Build the container and run the daemon until a shutdown signal."""
    logger = get_logger(__name__)
    container = Container(config=config)
    shutdown = ShutdownHandler()
    shutdown.register_signals()
    daemon = IngestDaemon(config, container, shutdown=shutdown)
    try:
        await daemon.start()
        return 0
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0
    except Exception as e:
        logger.exception(f"Fatal error in daemon: {e}")
        return 1
    finally:
        await container.close()


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
