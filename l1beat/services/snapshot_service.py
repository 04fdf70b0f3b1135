"""Read side for message count snapshots.

Readers never wait on a job: they get the newest persisted snapshot (or "no
data yet"), and as a side effect reconcile stale job state and start a
throttled background refresh when the data is missing or old.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from datetime import date, timedelta
from typing import Any, Awaitable, Callable, Mapping, Optional

from l1beat.core.cooldown import TimestampCache
from l1beat.models.results import SnapshotView, UpdateStatus
from l1beat.models.schemas import DataType, JobStatus, MessageCountSnapshot
from l1beat.repositories.protocols import SnapshotRepositoryProtocol
from l1beat.services.progress.job_state_service import JobStateService
from l1beat.utils.clock import Clock, utc_now

logger = logging.getLogger(__name__)

RefreshTrigger = Callable[[], Awaitable[Any]]


class SnapshotService:
    """Serves snapshots and keeps them fresh in the background."""

    def __init__(
        self,
        *,
        snapshots: SnapshotRepositoryProtocol,
        job_states: JobStateService,
        refresh_triggers: Mapping[DataType, RefreshTrigger],
        cooldown: TimestampCache,
        refresh_after: Mapping[DataType, timedelta],
        read_stale_after: timedelta = timedelta(minutes=5),
        recent_window: timedelta = timedelta(minutes=5),
        clock: Clock = utc_now,
    ) -> None:
        """Initialize service.

        Args:
            snapshots: Snapshot storage
            job_states: Job state service used for reconciliation
            refresh_triggers: Coroutine factories that refresh each data type
            cooldown: Throttle for background refreshes
            refresh_after: Snapshot age that triggers a refresh, per data type
            read_stale_after: Reader staleness threshold
            recent_window: Age under which a snapshot counts as recent
            clock: Source of the current time
        """
        self._snapshots = snapshots
        self._job_states = job_states
        self._triggers = dict(refresh_triggers)
        self._cooldown = cooldown
        self._refresh_after = dict(refresh_after)
        self._read_stale_after = read_stale_after
        self._recent_window = recent_window
        self._clock = clock
        self._tasks: set[asyncio.Task] = set()

    def get_latest_snapshot(self, data_type: DataType) -> Optional[MessageCountSnapshot]:
        """Return the newest snapshot of any age, or None if none exists."""
        return self._snapshots.latest(data_type)

    def get_recent_snapshot(
        self, data_type: DataType, max_age: Optional[timedelta] = None
    ) -> Optional[MessageCountSnapshot]:
        """Return the newest snapshot not older than ``max_age``."""
        window = max_age if max_age is not None else self._recent_window
        return self._snapshots.latest(data_type, since=self._clock() - window)

    async def get_message_counts(self, data_type: DataType) -> SnapshotView:
        """Return the counts view for a data type.

        Reconciles a stale in_progress record, reports a fresh one as
        ``update_status`` and triggers a background refresh when the newest
        snapshot is missing or older than the configured age.
        """
        self._job_states.reconcile_stale(data_type, self._read_stale_after)

        snapshot = self.get_recent_snapshot(data_type) or self.get_latest_snapshot(
            data_type
        )

        state = self._job_states.get(data_type)
        if (
            state is not None
            and state.state == JobStatus.IN_PROGRESS
            and snapshot is not None
            and snapshot.updated_at > state.started_at
            and data_type == DataType.WEEKLY
        ):
            # Weekly data newer than the run means the run record is leftover
            self._job_states.reconcile_superseded(data_type, snapshot.updated_at)

        running = self._job_states.running(data_type, self._read_stale_after)
        update_status = None
        if running is not None:
            update_status = UpdateStatus(
                state=running.state,
                started_at=running.started_at,
                last_updated_at=running.last_updated_at,
                progress=running.progress,
            )

        triggered = False
        if running is None and self._needs_refresh(data_type, snapshot):
            triggered = self.trigger_refresh(
                data_type, reason="missing" if snapshot is None else "outdated"
            )

        return SnapshotView.from_snapshot(
            data_type,
            snapshot,
            update_status=update_status,
            refresh_triggered=triggered,
        )

    def get_historical_daily(self, days: int = 30) -> list[MessageCountSnapshot]:
        """Return the newest daily snapshot per UTC date, newest date first.

        Args:
            days: Maximum number of dates to return
        """
        if days < 1:
            raise ValueError("days must be >= 1")
        since = self._clock() - timedelta(days=days)
        grouped = group_by_date(self._snapshots.list_since(DataType.DAILY, since))
        newest = [max(items, key=lambda s: s.updated_at) for items in grouped.values()]
        ordered = sorted(newest, key=lambda s: s.updated_at, reverse=True)
        return ordered[:days]

    def trigger_refresh(self, data_type: DataType, *, reason: str = "manual") -> bool:
        """Start a background refresh unless one ran within the cooldown.

        Returns:
            True if a refresh task was scheduled
        """
        trigger = self._triggers.get(data_type)
        if trigger is None:
            return False
        if not self._cooldown.try_acquire(f"refresh:{data_type.value}"):
            logger.debug(
                "Refresh throttled", extra={"data_type": data_type.value, "reason": reason}
            )
            return False
        task = asyncio.get_running_loop().create_task(trigger())
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._on_refresh_done(t, data_type))
        logger.info(
            "Background refresh triggered",
            extra={"data_type": data_type.value, "reason": reason},
        )
        return True

    async def wait_for_refreshes(self) -> None:
        """Wait for background refreshes started by this service."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _needs_refresh(
        self, data_type: DataType, snapshot: Optional[MessageCountSnapshot]
    ) -> bool:
        if snapshot is None:
            return True
        max_age = self._refresh_after.get(data_type)
        if max_age is None:
            return False
        return self._clock() - snapshot.updated_at > max_age

    def _on_refresh_done(self, task: asyncio.Task, data_type: DataType) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Background refresh failed",
                extra={"data_type": data_type.value, "error_type": type(exc).__name__},
                exc_info=exc,
            )


def group_by_date(
    snapshots: list[MessageCountSnapshot],
) -> dict[date, list[MessageCountSnapshot]]:
    """Group snapshots by the UTC date of ``updated_at``."""
    grouped: dict[date, list[MessageCountSnapshot]] = defaultdict(list)
    for snapshot in snapshots:
        grouped[snapshot.updated_at.date()].append(snapshot)
    return dict(grouped)
