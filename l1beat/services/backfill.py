"""Backfill of missing daily snapshots.

Finds UTC dates in the recent history with no daily snapshot and rebuilds
each from the upstream API, stamping the snapshot at the end of that date so
historical reads place it on the right day.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional

from l1beat.models.results import BackfillResult
from l1beat.models.schemas import DataType, MessageCountSnapshot
from l1beat.repositories.protocols import (
    ChainDirectoryProtocol,
    SnapshotRepositoryProtocol,
)
from l1beat.services.aggregation.message_aggregator import MessageAggregator
from l1beat.services.fetching.time_window_paginator import TimeWindowPaginator
from l1beat.utils.clock import Clock, Sleeper, pause
from l1beat.utils.correlation import CorrelationContext, log_context

logger = logging.getLogger(__name__)

END_OF_DAY = time(23, 59, 59, 999000)


def end_of_day(day: date) -> datetime:
    """Return 23:59:59.999 UTC of ``day``."""
    return datetime.combine(day, END_OF_DAY, tzinfo=timezone.utc)


@dataclass
class BackfillDeps:
    """Dependencies required by BackfillService."""

    paginator: TimeWindowPaginator
    aggregator: MessageAggregator
    chain_directory: ChainDirectoryProtocol
    snapshots: SnapshotRepositoryProtocol
    clock: Clock
    sleep: Sleeper


class BackfillService:
    """Fill gaps in the daily snapshot history."""

    def __init__(self, deps: BackfillDeps, *, delay_seconds: float = 5.0) -> None:
        self.d = deps
        self._delay = delay_seconds

    def find_missing_dates(self, days: int = 30) -> list[date]:
        """Return dates without a daily snapshot, newest first.

        The range covers ``days`` dates ending at the date of the newest daily
        snapshot (or today when none exists).
        """
        if days < 1:
            raise ValueError("days must be >= 1")
        latest = self.d.snapshots.latest(DataType.DAILY)
        reference = (latest.updated_at if latest else self.d.clock()).astimezone(
            timezone.utc
        ).date()
        first = reference - timedelta(days=days - 1)
        since = datetime.combine(first, time.min, tzinfo=timezone.utc)
        present = {
            s.updated_at.astimezone(timezone.utc).date()
            for s in self.d.snapshots.list_since(DataType.DAILY, since)
        }
        return [
            reference - timedelta(days=offset)
            for offset in range(days)
            if reference - timedelta(days=offset) not in present
        ]

    async def backfill_date(self, day: date) -> Optional[MessageCountSnapshot]:
        """Fetch one UTC date and store its daily snapshot.

        Returns:
            The stored snapshot, or None when upstream had no messages
        """
        stamp = end_of_day(day)
        start_time = int(datetime.combine(day, time.min, tzinfo=timezone.utc).timestamp())
        end_time = int(stamp.timestamp())
        result = await self.d.paginator.fetch_between(start_time, end_time)
        if not result.messages:
            logger.warning(
                "No messages found for date", extra=log_context(date=day.isoformat())
            )
            return None

        counts = self.d.aggregator.aggregate(
            result.messages, self.d.chain_directory.chain_names()
        )
        snapshot = MessageCountSnapshot.from_counts(
            data_type=DataType.DAILY,
            time_window_hours=24,
            counts=counts,
            updated_at=stamp,
        )
        self.d.snapshots.save(snapshot)
        logger.info(
            "Backfilled date",
            extra=log_context(
                date=day.isoformat(),
                total_messages=snapshot.total_messages,
                chain_pairs=len(counts),
                hit_page_limit=result.hit_page_limit,
            ),
        )
        return snapshot

    async def run(self, days: int = 30) -> BackfillResult:
        """Backfill every missing date in the last ``days`` dates.

        Dates are processed sequentially with a pacing delay; a failing date
        is recorded and the run continues.
        """
        with CorrelationContext(job="backfill"):
            missing = self.find_missing_dates(days)
            result = BackfillResult(
                days_checked=days, missing_dates=[d.isoformat() for d in missing]
            )
            if not missing:
                logger.info("No missing dates found", extra=log_context(days=days))
                return result

            logger.info(
                "Backfilling missing dates",
                extra=log_context(missing=result.missing_dates),
            )
            for index, day in enumerate(missing):
                try:
                    snapshot = await self.backfill_date(day)
                except Exception as e:
                    result.failed_dates.append(day.isoformat())
                    logger.error(
                        "Backfill failed for date",
                        extra=log_context(date=day.isoformat(), error_type=type(e).__name__),
                        exc_info=True,
                    )
                else:
                    target = result.filled_dates if snapshot else result.empty_dates
                    target.append(day.isoformat())
                if index < len(missing) - 1:
                    await pause(self.d.sleep, self._delay)

            logger.info(
                "Backfill complete",
                extra=log_context(
                    filled=len(result.filled_dates),
                    missing=len(missing),
                    failed=len(result.failed_dates),
                ),
            )
            return result
