"""Custom exception types for better error handling and categorization.

Provides domain-specific exceptions for upstream Glacier calls and job state
handling. Retryable upstream failures share a common base so the retry policy
can select them by type.
"""

from typing import Optional


class IngestError(Exception):
    """Base exception for all ingestion errors."""

    def __init__(  # noqa: B042
        self,
        message: str,
        *,
        correlation_id: Optional[str] = None,
    ) -> None:
        """Initialize ingestion error with message and optional correlation id."""
        super().__init__(message)
        self.correlation_id = correlation_id


class UpstreamError(IngestError):
    """Any failure talking to the upstream message API."""


class RetryableUpstreamError(UpstreamError):
    """Transient upstream failure that the page fetcher retries."""


class UpstreamRateLimited(RetryableUpstreamError):
    """Upstream answered HTTP 429.

    Raised when the Glacier API throttles the caller. Always retried with
    exponential backoff.
    """

    def __init__(  # noqa: B042
        self,
        message: str,
        retry_after: Optional[float] = None,
        *,
        correlation_id: Optional[str] = None,
    ) -> None:
        """Initialize rate limit error.

        Args:
            message: Error message
            retry_after: Value of the Retry-After header, if any
            correlation_id: Optional correlation ID for tracing
        """
        super().__init__(message, correlation_id=correlation_id)
        self.retry_after = retry_after


class UpstreamTimeout(RetryableUpstreamError):
    """Upstream request exceeded the per-call timeout."""


class NetworkUnavailable(RetryableUpstreamError):
    """Network connection error.

    Raised when:
    - Connection refused
    - DNS resolution failed
    - Connection reset mid-request
    """


class UpstreamUnavailable(UpstreamError):
    """Retry budget exhausted for a retryable upstream failure."""

    def __init__(  # noqa: B042
        self,
        message: str,
        attempts: int = 0,
        *,
        correlation_id: Optional[str] = None,
    ) -> None:
        """Initialize upstream unavailable error.

        Args:
            message: Error message
            attempts: Number of attempts made before giving up
            correlation_id: Optional correlation ID for tracing
        """
        super().__init__(message, correlation_id=correlation_id)
        self.attempts = attempts


class UpstreamBadResponse(UpstreamError):
    """Upstream returned a non-retryable error status.

    Indicates a contract break (4xx other than 429, or 5xx). Never retried.
    """

    def __init__(  # noqa: B042
        self,
        message: str,
        status_code: Optional[int] = None,
        *,
        correlation_id: Optional[str] = None,
    ) -> None:
        """Initialize bad response error.

        Args:
            message: Error message
            status_code: HTTP status code returned by upstream
            correlation_id: Optional correlation ID for tracing
        """
        super().__init__(message, correlation_id=correlation_id)
        self.status_code = status_code


class InvalidUpstreamResponse(UpstreamBadResponse):
    """Upstream body could not be parsed into a message page."""


class InvalidTimeRange(IngestError, ValueError):
    """Start/end of a requested window are inconsistent."""

    def __init__(  # noqa: B042
        self,
        message: str,
        start: Optional[float] = None,
        end: Optional[float] = None,
        *,
        correlation_id: Optional[str] = None,
    ) -> None:
        """Initialize invalid range error.

        Args:
            message: Error message
            start: Requested range start
            end: Requested range end
            correlation_id: Optional correlation ID for tracing
        """
        super().__init__(message, correlation_id=correlation_id)
        self.start = start
        self.end = end


class StaleJobState(IngestError):
    """A job state record is in_progress but was abandoned by its owner.

    Normally self-healed by the job state service; raised only when a caller
    requires exclusive ownership and cannot reconcile.
    """

    def __init__(  # noqa: B042
        self,
        message: str,
        update_type: Optional[str] = None,
        *,
        correlation_id: Optional[str] = None,
    ) -> None:
        """Initialize stale job state error.

        Args:
            message: Error message
            update_type: Data type of the stale record (daily/weekly)
            correlation_id: Optional correlation ID for tracing
        """
        super().__init__(message, correlation_id=correlation_id)
        self.update_type = update_type
