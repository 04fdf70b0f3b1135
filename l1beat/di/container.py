"""Application DI container.

Builds storage adapters, the Glacier client, the ingestion jobs and the read
side from one IngestConfig, keeping the CLI and daemon thin.
"""

from __future__ import annotations

import logging
from contextlib import suppress
from datetime import timedelta
from typing import Any, Optional

import httpx
from pymongo import MongoClient
from pymongo.database import Database

from l1beat.core.config import IngestConfig
from l1beat.core.cooldown import TimestampCache
from l1beat.gateways.glacier import GlacierClient
from l1beat.models.results import (
    BackfillResult,
    IngestionResult,
    SnapshotView,
    WeeklyJobOutcome,
)
from l1beat.models.schemas import DataType, MessageCountSnapshot
from l1beat.observability.metrics import ensure_metrics_server
from l1beat.observability.metrics_adapter import (
    MetricsAdapter,
    NoopMetricsAdapter,
    PrometheusMetricsAdapter,
)
from l1beat.repositories.mongo_repository import (
    MongoChainDirectory,
    MongoJobStateRepository,
    MongoSnapshotRepository,
    connect,
)
from l1beat.services.aggregation.message_aggregator import MessageAggregator
from l1beat.services.backfill import BackfillDeps, BackfillService
from l1beat.services.fetching.time_window_paginator import TimeWindowPaginator
from l1beat.services.progress.job_state_service import JobStateService
from l1beat.services.runners.weekly_job_runner import (
    CheckpointedJobRunner,
    WeeklyJobDeps,
)
from l1beat.services.snapshot_service import SnapshotService
from l1beat.services.usecases.chunked_ingestion import (
    ChunkedIngestionDeps,
    ChunkedIngestionJob,
    IngestionProfile,
)
from l1beat.utils.clock import Clock, Sleeper, default_sleep, utc_now

logger = logging.getLogger(__name__)


class Container:
    """Container building all primary services for the ingestion app."""

    def __init__(
        self,
        *,
        config: IngestConfig,
        http_client: Optional[httpx.AsyncClient] = None,
        database: Optional[Database] = None,
        metrics: Optional[MetricsAdapter] = None,
        clock: Clock = utc_now,
        sleep: Sleeper = default_sleep,
    ) -> None:
        """Build and wire core components from configuration.

        Args:
            config: Validated configuration
            http_client: Optional pre-built HTTP client for the Glacier API
            database: Optional database handle; a client is created from
                ``mongo_url`` when omitted
            metrics: Optional metrics adapter override
            clock: Source of the current time
            sleep: Async sleep used for every pacing delay
        """
        self._config = config
        self._clock = clock

        # Storage
        self._mongo_client: Optional[MongoClient] = None
        if database is None:
            self._mongo_client, database = connect(config.mongo_url, config.mongo_db)
        self._snapshots = MongoSnapshotRepository(database[config.snapshots_collection])
        self._job_state_repo = MongoJobStateRepository(
            database[config.job_states_collection]
        )
        self._chains = MongoChainDirectory(database[config.chains_collection])

        # Metrics
        self._metrics: MetricsAdapter = metrics or (
            PrometheusMetricsAdapter() if config.enable_metrics else NoopMetricsAdapter()
        )

        # Upstream
        self._glacier = GlacierClient(
            base_url=config.glacier_api_base,
            api_key=config.glacier_api_key,
            timeout_seconds=config.glacier_timeout_seconds,
            network=config.glacier_network,
            user_agent=config.user_agent,
            default_page_size=config.page_size,
            max_retries=config.max_retries,
            initial_backoff_seconds=config.initial_backoff_seconds,
            page_delay_seconds=config.page_delay_seconds,
            http_client=http_client,
            sleep=sleep,
            metrics=self._metrics,
        )
        min_window_seconds = int(config.min_window_hours * 3600)
        self._paginator = TimeWindowPaginator(
            fetcher=self._glacier,
            page_size=config.page_size,
            max_pages_per_window=config.max_pages_per_window,
            min_window_seconds=min_window_seconds,
            clock=clock,
            metrics=self._metrics,
        )
        self._bulk_paginator = TimeWindowPaginator(
            fetcher=self._glacier,
            page_size=config.bulk_page_size,
            max_pages_per_window=config.bulk_max_pages_per_window,
            min_window_seconds=min_window_seconds,
            clock=clock,
            metrics=self._metrics,
        )
        self._aggregator = MessageAggregator()

        # Job state
        self._job_states = JobStateService(
            repository=self._job_state_repo,
            stale_after=timedelta(minutes=config.stale_job_minutes),
            clock=clock,
            metrics=self._metrics,
        )

        # Ingestion jobs
        self._daily_job = ChunkedIngestionJob(
            self._ingestion_deps(self._paginator, sleep),
            IngestionProfile(
                data_type=DataType.DAILY,
                total_hours=config.daily_total_hours,
                chunk_hours=config.daily_chunk_hours,
                chunk_delay_seconds=config.chunk_delay_seconds,
                error_delay_seconds=config.chunk_error_delay_seconds,
            ),
        )
        self._weekly_bulk_job = ChunkedIngestionJob(
            self._ingestion_deps(self._bulk_paginator, sleep),
            IngestionProfile(
                data_type=DataType.WEEKLY,
                total_hours=config.weekly_total_hours,
                chunk_hours=config.weekly_bulk_chunk_hours,
                chunk_delay_seconds=config.bulk_chunk_delay_seconds,
                error_delay_seconds=config.chunk_error_delay_seconds,
                note_page_limit=True,
            ),
        )
        weekly_day_job = ChunkedIngestionJob(
            self._ingestion_deps(self._paginator, sleep),
            IngestionProfile(
                data_type=DataType.WEEKLY,
                total_hours=24,
                chunk_hours=config.daily_chunk_hours,
                chunk_delay_seconds=config.chunk_delay_seconds,
                error_delay_seconds=config.chunk_error_delay_seconds,
            ),
        )
        self._weekly_runner = CheckpointedJobRunner(
            WeeklyJobDeps(
                ingestion=weekly_day_job,
                aggregator=self._aggregator,
                snapshots=self._snapshots,
                job_states=self._job_states,
                metrics=self._metrics,
                clock=clock,
                sleep=sleep,
            ),
            total_days=config.weekly_days,
            chunk_hours=config.daily_chunk_hours,
            day_delay_seconds=config.day_delay_seconds,
            stale_after=timedelta(minutes=config.stale_job_minutes),
            resume_max_age=timedelta(hours=config.weekly_resume_max_age_hours),
        )

        # Read side
        self._snapshot_service = SnapshotService(
            snapshots=self._snapshots,
            job_states=self._job_states,
            refresh_triggers={
                DataType.DAILY: self.run_daily_ingestion,
                DataType.WEEKLY: self.run_weekly_bulk_ingestion,
            },
            cooldown=TimestampCache(
                ttl=timedelta(minutes=config.refresh_cooldown_minutes), clock=clock
            ),
            refresh_after={
                DataType.DAILY: timedelta(minutes=config.daily_refresh_minutes),
                DataType.WEEKLY: timedelta(hours=config.weekly_refresh_hours),
            },
            read_stale_after=timedelta(minutes=config.read_stale_job_minutes),
            recent_window=timedelta(minutes=config.recent_snapshot_minutes),
            clock=clock,
        )

        # Backfill
        self._backfill = BackfillService(
            BackfillDeps(
                paginator=self._paginator,
                aggregator=self._aggregator,
                chain_directory=self._chains,
                snapshots=self._snapshots,
                clock=clock,
                sleep=sleep,
            ),
            delay_seconds=config.backfill_delay_seconds,
        )

    def _ingestion_deps(
        self, paginator: TimeWindowPaginator, sleep: Sleeper
    ) -> ChunkedIngestionDeps:
        return ChunkedIngestionDeps(
            paginator=paginator,
            aggregator=self._aggregator,
            chain_directory=self._chains,
            snapshots=self._snapshots,
            job_states=self._job_states,
            metrics=self._metrics,
            clock=self._clock,
            sleep=sleep,
        )

    def initialize_runtime(self) -> None:
        """Perform side-effectful initialization (metrics server)."""
        if self._config.enable_metrics:
            with suppress(Exception):
                ensure_metrics_server(self._config.metrics_port)

    # === Providers ===

    def provide_metrics(self) -> MetricsAdapter:
        """Provide metrics adapter instance."""
        return self._metrics

    def provide_job_state_service(self) -> JobStateService:
        """Provide job state service."""
        return self._job_states

    def provide_snapshot_service(self) -> SnapshotService:
        """Provide read-side snapshot service."""
        return self._snapshot_service

    def provide_weekly_runner(self) -> CheckpointedJobRunner:
        """Provide the incremental weekly runner."""
        return self._weekly_runner

    def provide_backfill_service(self) -> BackfillService:
        """Provide backfill service."""
        return self._backfill

    # === Operations ===

    async def run_daily_ingestion(self) -> IngestionResult:
        """Run the 24h daily ingestion job once."""
        return await self._daily_job.run()

    async def run_weekly_bulk_ingestion(self) -> IngestionResult:
        """Run the 168h bulk weekly ingestion job once."""
        return await self._weekly_bulk_job.run()

    async def advance_incremental_weekly_job(self) -> WeeklyJobOutcome:
        """Drive the checkpointed weekly job to completion."""
        return await self._weekly_runner.advance()

    def get_latest_snapshot(self, data_type: DataType) -> Optional[MessageCountSnapshot]:
        """Return the newest snapshot of a data type."""
        return self._snapshot_service.get_latest_snapshot(data_type)

    async def get_message_counts(self, data_type: DataType) -> SnapshotView:
        """Return the served counts view for a data type."""
        return await self._snapshot_service.get_message_counts(data_type)

    def get_historical_daily(self, days: int = 30) -> list[MessageCountSnapshot]:
        """Return the newest daily snapshot per date."""
        return self._snapshot_service.get_historical_daily(days)

    async def backfill(self, days: int = 30) -> BackfillResult:
        """Backfill missing daily snapshots."""
        return await self._backfill.run(days)

    def fix_stale_on_startup(self) -> int:
        """Fail every job state left in_progress by a previous process."""
        return self._job_states.fail_all_in_progress()

    def repair_weekly_state(self) -> bool:
        """Mark a stuck weekly record completed when weekly data exists."""
        latest = self._snapshots.latest(DataType.WEEKLY)
        return self._job_states.repair_weekly_state(latest)

    async def close(self) -> None:
        """Release network and database resources."""
        await self._snapshot_service.wait_for_refreshes()
        await self._glacier.aclose()
        if self._mongo_client is not None:
            self._mongo_client.close()
        logger.debug("Container closed")

    def describe(self) -> dict[str, Any]:
        """Return non-secret wiring details for startup logs."""
        return {
            "glacier_api_base": self._config.glacier_api_base,
            "mongo_db": self._config.mongo_db,
            "daily_chunks": self._config.daily_total_hours // self._config.daily_chunk_hours,
            "weekly_days": self._config.weekly_days,
            "metrics_enabled": self._config.enable_metrics,
        }
