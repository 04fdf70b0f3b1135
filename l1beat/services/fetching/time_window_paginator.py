"""TimeWindowPaginator drives the page fetcher across a time range.

Flat pagination is followed until the continuation token runs out. When a
window reaches the page ceiling first, the window is bisected and each half
is fetched on its own; windows at or below the minimum span accept partial
data instead. Collected messages are finally clipped to the requested range.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

from l1beat.core.exceptions import InvalidTimeRange
from l1beat.models.results import FetchRangeResult, MessagePage
from l1beat.models.schemas import TeleporterMessage
from l1beat.observability.metrics_adapter import MetricsAdapter, NoopMetricsAdapter
from l1beat.utils.clock import Clock, utc_now
from l1beat.utils.correlation import get_correlation_id, log_context

logger = logging.getLogger(__name__)

SECONDS_PER_HOUR = 3600


class _PageFetcher(Protocol):
    async def fetch_page(
        self,
        start_time: int,
        end_time: int,
        page_token: Optional[str] = None,
        page_size: Optional[int] = None,
    ) -> MessagePage: ...


@dataclass
class _WalkStats:
    pages: int = 0
    windows: int = 0
    splits: int = 0


def in_range(message: TeleporterMessage, start_time: int, end_time: int) -> bool:
    """Return True if the message falls inside ``[start_time, end_time]``.

    Messages without a derivable timestamp are always kept.
    """
    ts = message.resolved_timestamp()
    if ts is None:
        return True
    return start_time <= ts <= end_time


class TimeWindowPaginator:
    """Adaptive paginator over ``[start, end]`` windows."""

    def __init__(
        self,
        *,
        fetcher: _PageFetcher,
        page_size: int,
        max_pages_per_window: int,
        min_window_seconds: int = 2 * SECONDS_PER_HOUR,
        clock: Clock = utc_now,
        metrics: Optional[MetricsAdapter] = None,
    ) -> None:
        """Initialize paginator.

        Args:
            fetcher: Single-page fetcher
            page_size: Messages requested per page
            max_pages_per_window: Page ceiling before a window is bisected
            min_window_seconds: Windows this short or shorter are never split
            clock: Source of "now" when no anchor is given
            metrics: Metrics adapter
        """
        if max_pages_per_window < 1:
            raise ValueError("max_pages_per_window must be >= 1")
        self._fetcher = fetcher
        self._page_size = page_size
        self._max_pages = max_pages_per_window
        self._min_window = min_window_seconds
        self._clock = clock
        self._metrics: MetricsAdapter = metrics or NoopMetricsAdapter()

    @property
    def page_size(self) -> int:
        return self._page_size

    @property
    def max_pages_per_window(self) -> int:
        return self._max_pages

    async def fetch_range(
        self,
        start_hours_ago: float,
        end_hours_ago: float,
        *,
        anchor: Optional[datetime] = None,
    ) -> FetchRangeResult:
        """Fetch all messages between two relative offsets.

        Args:
            start_hours_ago: Older bound, hours before ``anchor``
            end_hours_ago: Newer bound, hours before ``anchor``
            anchor: Reference time (defaults to now)

        Returns:
            Messages within the range plus pagination diagnostics

        Raises:
            InvalidTimeRange: Unless start_hours_ago > end_hours_ago >= 0
        """
        if end_hours_ago < 0 or start_hours_ago <= end_hours_ago:
            raise InvalidTimeRange(
                f"Invalid range: start_hours_ago={start_hours_ago} must be greater "
                f"than end_hours_ago={end_hours_ago} >= 0",
                start=start_hours_ago,
                end=end_hours_ago,
                correlation_id=get_correlation_id(),
            )
        now = int((anchor or self._clock()).timestamp())
        start_time = now - int(start_hours_ago * SECONDS_PER_HOUR)
        end_time = now - int(end_hours_ago * SECONDS_PER_HOUR)
        return await self.fetch_between(start_time, end_time)

    async def fetch_between(self, start_time: int, end_time: int) -> FetchRangeResult:
        """Fetch all messages between two absolute unix timestamps."""
        if start_time > end_time:
            raise InvalidTimeRange(
                f"startTime {start_time} is after endTime {end_time}",
                start=start_time,
                end=end_time,
                correlation_id=get_correlation_id(),
            )
        stats = _WalkStats()
        messages, hit_limit = await self._fetch_window(start_time, end_time, stats)
        kept = [m for m in messages if in_range(m, start_time, end_time)]
        excluded = len(messages) - len(kept)

        logger.info(
            "Fetched time range",
            extra=log_context(
                start_time=start_time,
                end_time=end_time,
                messages=len(kept),
                excluded_out_of_range=excluded,
                pages=stats.pages,
                windows=stats.windows,
                splits=stats.splits,
                hit_page_limit=hit_limit,
            ),
        )
        return FetchRangeResult(
            messages=kept,
            hit_page_limit=hit_limit,
            reached_time_limit=False,
            pages_fetched=stats.pages,
            windows_fetched=stats.windows,
            excluded_out_of_range=excluded,
        )

    async def _fetch_window(
        self, start_time: int, end_time: int, stats: _WalkStats
    ) -> tuple[list[TeleporterMessage], bool]:
        stats.windows += 1
        messages: list[TeleporterMessage] = []
        token: Optional[str] = None
        pages = 0
        while True:
            page = await self._fetcher.fetch_page(
                start_time, end_time, page_token=token, page_size=self._page_size
            )
            pages += 1
            stats.pages += 1
            messages.extend(page.messages)
            token = page.next_page_token
            if not token:
                return messages, False
            if pages >= self._max_pages:
                break

        span = end_time - start_time
        if span > self._min_window:
            # Halves are refetched from scratch; the flat pages are discarded
            mid = start_time + span // 2
            stats.splits += 1
            self._metrics.inc_window_split()
            logger.info(
                "Page limit reached, splitting window",
                extra=log_context(
                    start_time=start_time,
                    end_time=end_time,
                    mid=mid,
                    pages=pages,
                    discarded_messages=len(messages),
                ),
            )
            left, _ = await self._fetch_window(start_time, mid, stats)
            right, _ = await self._fetch_window(mid + 1, end_time, stats)
            return left + right, True

        self._metrics.inc_page_limit_hit()
        logger.warning(
            "Page limit reached on minimum window, keeping partial data",
            extra=log_context(
                start_time=start_time,
                end_time=end_time,
                pages=pages,
                messages=len(messages),
            ),
        )
        return messages, True
