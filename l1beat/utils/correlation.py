"""Correlation ID utilities for tracing job runs.

Every ingestion run, weekly advance or backfill executes inside a
``CorrelationContext`` so log records emitted anywhere below it (fetcher,
paginator, job state service) carry the same ``correlation_id`` and ``job``.
"""

import contextvars
import uuid
from typing import Any, Optional

_correlation_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "correlation_id", default=None
)
_job_name: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "job_name", default=None
)


def generate_correlation_id() -> str:
    """Generate a new correlation ID.

    Returns:
        UUID4 string for correlation tracking
    """
    return str(uuid.uuid4())


def get_correlation_id() -> Optional[str]:
    """Get current correlation ID from context, or None outside a job."""
    return _correlation_id.get()


def get_job_name() -> Optional[str]:
    """Get the name of the job running in the current context."""
    return _job_name.get()


def log_context(**extra: Any) -> dict[str, Any]:
    """Build a logging ``extra`` dict with the current job context.

    Args:
        **extra: Additional structured fields for the record

    Returns:
        Dict with correlation_id and job merged with ``extra``
    """
    ctx: dict[str, Any] = {}
    cid = _correlation_id.get()
    if cid is not None:
        ctx["correlation_id"] = cid
    job = _job_name.get()
    if job is not None:
        ctx["job"] = job
    ctx.update(extra)
    return ctx


class CorrelationContext:
    """Context manager binding a correlation ID and job name.

    Usage:
        with CorrelationContext("daily") as correlation_id:
            logger.info("Run started", extra=log_context())
    """

    def __init__(self, job: Optional[str] = None, correlation_id: Optional[str] = None):
        """Initialize correlation context.

        Args:
            job: Name of the job (e.g. daily, weekly, backfill)
            correlation_id: Optional custom correlation ID, generates new if None
        """
        self.job = job
        self.correlation_id = correlation_id or generate_correlation_id()
        self._tokens: list[tuple[contextvars.ContextVar, contextvars.Token]] = []

    def __enter__(self) -> str:
        self._tokens.append((_correlation_id, _correlation_id.set(self.correlation_id)))
        if self.job is not None:
            self._tokens.append((_job_name, _job_name.set(self.job)))
        return self.correlation_id

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        while self._tokens:
            var, token = self._tokens.pop()
            var.reset(token)
