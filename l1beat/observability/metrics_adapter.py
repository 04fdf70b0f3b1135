"""Metrics Adapter abstraction to decouple Prometheus from services.

Services depend on the ``MetricsAdapter`` protocol; the container wires the
Prometheus-backed implementation when metrics are enabled and the no-op one
otherwise (and in tests).
"""

from __future__ import annotations

import logging
import os
from typing import Protocol

from l1beat.observability.metrics import (
    chunk_errors_total,
    job_duration_seconds,
    job_progress_current,
    job_transitions_total,
    messages_ingested_total,
    page_limit_hits_total,
    upstream_requests_total,
    window_splits_total,
)

logger = logging.getLogger(__name__)


class MetricsAdapter(Protocol):
    """Abstract metrics interface used by services."""

    def inc_upstream_request(self, outcome: str) -> None:
        """Count one upstream page request by outcome."""

    def inc_window_split(self) -> None:
        """Count a window bisection."""

    def inc_page_limit_hit(self) -> None:
        """Count a minimum-span window that returned partial data."""

    def inc_messages(self, data_type: str, count: int) -> None:
        """Add collected messages for a data type."""

    def inc_chunk_error(self, data_type: str) -> None:
        """Count a failed chunk."""

    def observe_job_duration(self, data_type: str, outcome: str, seconds: float) -> None:
        """Record how long a run took."""

    def inc_job_transition(self, data_type: str, state: str) -> None:
        """Count a JobState transition."""

    def set_job_progress(self, data_type: str, messages: int) -> None:
        """Set the collected-messages gauge of the active run."""


class PrometheusMetricsAdapter:
    """Prometheus-backed metrics adapter.

    Handles exceptions internally to avoid impacting the main workflow.
    """

    def __init__(self) -> None:
        """Initialize adapter and cache worker identifier."""
        self._worker_id = os.getenv("HOSTNAME", "ingest-1")

    def inc_upstream_request(self, outcome: str) -> None:
        try:
            upstream_requests_total.labels(outcome=outcome, worker=self._worker_id).inc()
        except Exception:
            logger.debug("Prometheus inc_upstream_request failed", exc_info=True)

    def inc_window_split(self) -> None:
        try:
            window_splits_total.labels(worker=self._worker_id).inc()
        except Exception:
            logger.debug("Prometheus inc_window_split failed", exc_info=True)

    def inc_page_limit_hit(self) -> None:
        try:
            page_limit_hits_total.labels(worker=self._worker_id).inc()
        except Exception:
            logger.debug("Prometheus inc_page_limit_hit failed", exc_info=True)

    def inc_messages(self, data_type: str, count: int) -> None:
        try:
            messages_ingested_total.labels(
                data_type=data_type, worker=self._worker_id
            ).inc(count)
        except Exception:
            logger.debug(
                "Prometheus inc_messages failed (non-fatal)",
                extra={"data_type": data_type, "count": count},
                exc_info=True,
            )

    def inc_chunk_error(self, data_type: str) -> None:
        try:
            chunk_errors_total.labels(data_type=data_type, worker=self._worker_id).inc()
        except Exception:
            logger.debug("Prometheus inc_chunk_error failed", exc_info=True)

    def observe_job_duration(self, data_type: str, outcome: str, seconds: float) -> None:
        try:
            job_duration_seconds.labels(
                data_type=data_type, outcome=outcome, worker=self._worker_id
            ).observe(seconds)
        except Exception:
            logger.debug("Prometheus observe_job_duration failed", exc_info=True)

    def inc_job_transition(self, data_type: str, state: str) -> None:
        try:
            job_transitions_total.labels(
                data_type=data_type, state=state, worker=self._worker_id
            ).inc()
        except Exception:
            logger.debug("Prometheus inc_job_transition failed", exc_info=True)

    def set_job_progress(self, data_type: str, messages: int) -> None:
        try:
            job_progress_current.labels(
                data_type=data_type, worker=self._worker_id
            ).set(messages)
        except Exception:
            logger.debug("Prometheus set_job_progress failed", exc_info=True)


class NoopMetricsAdapter:
    """No-op adapter used when metrics are disabled."""

    def inc_upstream_request(self, outcome: str) -> None:  # noqa: ARG002
        return

    def inc_window_split(self) -> None:
        return

    def inc_page_limit_hit(self) -> None:
        return

    def inc_messages(self, data_type: str, count: int) -> None:  # noqa: ARG002
        return

    def inc_chunk_error(self, data_type: str) -> None:  # noqa: ARG002
        return

    def observe_job_duration(
        self, data_type: str, outcome: str, seconds: float
    ) -> None:  # noqa: ARG002
        return

    def inc_job_transition(self, data_type: str, state: str) -> None:  # noqa: ARG002
        return

    def set_job_progress(self, data_type: str, messages: int) -> None:  # noqa: ARG002
        return
