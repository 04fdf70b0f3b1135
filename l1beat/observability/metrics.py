"""Prometheus metrics for the teleporter ingestion service.

Defines counters, gauges and histograms and provides a helper to start the
metrics HTTP server when enabled via configuration.
"""

from __future__ import annotations

import logging

from prometheus_client import Counter, Gauge, Histogram, start_http_server

logger = logging.getLogger(__name__)


# Keep label cardinality low: data_type is daily/weekly, outcome is an enum.
upstream_requests_total = Counter(
    "glacier_requests_total",
    "Upstream ICM page requests by outcome",
    labelnames=("outcome", "worker"),
)

upstream_retries_total = Counter(
    "glacier_retries_total",
    "Retry attempts against the upstream API by reason",
    labelnames=("target", "reason", "worker"),
)

last_retry_delay_seconds = Gauge(
    "last_retry_delay_seconds",
    "Delay in seconds before the last retry sleep by target",
    labelnames=("target", "worker"),
)

window_splits_total = Counter(
    "ingest_window_splits_total",
    "Time windows bisected after reaching the page ceiling",
    labelnames=("worker",),
)

page_limit_hits_total = Counter(
    "ingest_page_limit_hits_total",
    "Windows at the minimum span that returned partial data",
    labelnames=("worker",),
)

messages_ingested_total = Counter(
    "ingest_messages_total",
    "Messages collected by ingestion runs",
    labelnames=("data_type", "worker"),
)

chunk_errors_total = Counter(
    "ingest_chunk_errors_total",
    "Chunks that failed and were skipped",
    labelnames=("data_type", "worker"),
)

job_duration_seconds = Histogram(
    "ingest_job_duration_seconds",
    "Duration of an ingestion run",
    labelnames=("data_type", "outcome", "worker"),
    buckets=(10, 30, 60, 120, 300, 600, 1200, 1800, 3600, 7200),
)

job_transitions_total = Counter(
    "ingest_job_transitions_total",
    "Job state transitions by target state",
    labelnames=("data_type", "state", "worker"),
)

job_progress_current = Gauge(
    "ingest_job_messages_current",
    "Messages collected so far by the active run",
    labelnames=("data_type", "worker"),
)


_server_started: bool = False


def ensure_metrics_server(port: int) -> None:
    """Start Prometheus metrics HTTP server once per process.

    Args:
        port: Port to bind the metrics endpoint to.
    """
    global _server_started
    if _server_started:
        return
    try:
        start_http_server(port)
        _server_started = True
        logger.info("Prometheus metrics server started", extra={"port": port})
    except Exception as e:
        logger.warning("Failed to start metrics server: %s", e, exc_info=True)
