"""Glacier ICM API gateway.

Fetches single pages of teleporter (ICM) messages over httpx with the
upstream retry policy: HTTP 429, timeouts and connection failures are
retried with exponential backoff that honors Retry-After; any other error
status or a malformed body aborts the fetch.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Optional

import httpx
from pydantic import ValidationError
from tenacity import RetryError

from l1beat.core.exceptions import (
    InvalidTimeRange,
    InvalidUpstreamResponse,
    NetworkUnavailable,
    RetryableUpstreamError,
    UpstreamBadResponse,
    UpstreamRateLimited,
    UpstreamTimeout,
    UpstreamUnavailable,
)
from l1beat.models.results import MessagePage
from l1beat.models.schemas import TeleporterMessage
from l1beat.observability.metrics_adapter import MetricsAdapter, NoopMetricsAdapter
from l1beat.utils.clock import Sleeper, default_sleep, pause
from l1beat.utils.correlation import get_correlation_id, log_context
from l1beat.utils.retry import retry_async

logger = logging.getLogger(__name__)

MESSAGES_PATH = "/icm/messages"


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Return the Retry-After delay in seconds (delta-seconds or HTTP-date)."""
    if not value or not value.strip():
        return None
    trimmed = value.strip()
    try:
        return max(float(trimmed), 0.0)
    except ValueError:
        pass
    try:
        parsed = parsedate_to_datetime(trimmed)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return max((parsed - datetime.now(timezone.utc)).total_seconds(), 0.0)


class GlacierClient:
    """Rate-limited page fetcher for ``GET /icm/messages``."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: Optional[str] = None,
        timeout_seconds: float = 30.0,
        network: str = "mainnet",
        user_agent: str = "l1beat-backend",
        default_page_size: int = 50,
        max_retries: int = 5,
        initial_backoff_seconds: float = 5.0,
        page_delay_seconds: float = 2.0,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Sleeper = default_sleep,
        metrics: Optional[MetricsAdapter] = None,
    ) -> None:
        """Initialize client.

        Args:
            base_url: Glacier API base URL, e.g. https://glacier-api.avax.network/v1
            api_key: Optional key sent as ``x-glacier-api-key``
            timeout_seconds: Per-request timeout
            network: Value of the ``network`` query parameter
            user_agent: User-Agent header value
            default_page_size: Page size used when the caller passes none
            max_retries: Retries for retryable failures after the first attempt
            initial_backoff_seconds: First backoff delay, doubled per retry
            page_delay_seconds: Pacing delay before every follow-up page
            http_client: Optional pre-built client (tests pass a MockTransport)
            sleep: Async sleep used for pacing and backoff
            metrics: Metrics adapter
        """
        self._url = base_url.rstrip("/") + MESSAGES_PATH
        self._network = network
        self._default_page_size = default_page_size
        self._max_retries = max_retries
        self._initial_backoff = initial_backoff_seconds
        self._page_delay = page_delay_seconds
        self._sleep = sleep
        self._metrics: MetricsAdapter = metrics or NoopMetricsAdapter()

        self._headers = {"Accept": "application/json", "User-Agent": user_agent}
        if api_key:
            self._headers["x-glacier-api-key"] = api_key

        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds)
        )

    async def fetch_page(
        self,
        start_time: int,
        end_time: int,
        page_token: Optional[str] = None,
        page_size: Optional[int] = None,
    ) -> MessagePage:
        """Fetch one page of messages in ``[start_time, end_time]``.

        Args:
            start_time: Window start, unix seconds
            end_time: Window end, unix seconds
            page_token: Continuation token from the previous page
            page_size: Messages per page

        Returns:
            Parsed page with optional continuation token

        Raises:
            InvalidTimeRange: If start_time is after end_time
            UpstreamUnavailable: If retries are exhausted
            UpstreamBadResponse: On a non-retryable error status
            InvalidUpstreamResponse: If the body is not a valid page
        """
        if start_time > end_time:
            raise InvalidTimeRange(
                f"startTime {start_time} is after endTime {end_time}",
                start=start_time,
                end=end_time,
                correlation_id=get_correlation_id(),
            )

        params: dict[str, Any] = {
            "startTime": int(start_time),
            "endTime": int(end_time),
            "pageSize": page_size or self._default_page_size,
            "network": self._network,
        }
        if page_token:
            params["pageToken"] = page_token
            await pause(self._sleep, self._page_delay)

        try:
            return await retry_async(
                lambda: self._request(params),
                target="glacier_icm_messages",
                max_retries=self._max_retries,
                initial_delay=self._initial_backoff,
                retry_on=(RetryableUpstreamError,),
                sleep=self._sleep,
            )
        except RetryError as e:
            last = e.last_attempt.exception()
            self._metrics.inc_upstream_request("exhausted")
            logger.error(
                "Upstream unavailable after retries",
                extra=log_context(
                    attempts=e.last_attempt.attempt_number,
                    start_time=start_time,
                    end_time=end_time,
                    error_type=type(last).__name__,
                ),
            )
            raise UpstreamUnavailable(
                f"Glacier API unavailable after {e.last_attempt.attempt_number} "
                f"attempts: {last}",
                attempts=e.last_attempt.attempt_number,
                correlation_id=get_correlation_id(),
            ) from last

    async def _request(self, params: dict[str, Any]) -> MessagePage:
        try:
            response = await self._client.get(
                self._url, params=params, headers=self._headers
            )
        except httpx.TimeoutException as e:
            self._metrics.inc_upstream_request("timeout")
            raise UpstreamTimeout(f"Glacier request timed out: {e}") from e
        except httpx.TransportError as e:
            self._metrics.inc_upstream_request("network_error")
            raise NetworkUnavailable(f"Glacier request failed: {e}") from e

        if response.status_code == 429:
            self._metrics.inc_upstream_request("rate_limited")
            raise UpstreamRateLimited(
                "Glacier API rate limit exceeded",
                retry_after=_parse_retry_after(response.headers.get("Retry-After")),
            )
        if response.status_code >= 400:
            self._metrics.inc_upstream_request("bad_status")
            raise UpstreamBadResponse(
                f"Glacier API returned HTTP {response.status_code}: "
                f"{response.text[:200]}",
                status_code=response.status_code,
                correlation_id=get_correlation_id(),
            )

        try:
            body = response.json()
        except ValueError as e:
            self._metrics.inc_upstream_request("malformed")
            raise InvalidUpstreamResponse(
                "Glacier API returned a non-JSON body",
                status_code=response.status_code,
                correlation_id=get_correlation_id(),
            ) from e

        page = self._parse_page(body, status_code=response.status_code)
        self._metrics.inc_upstream_request("ok")
        logger.debug(
            "Fetched ICM page",
            extra=log_context(
                messages=len(page.messages),
                has_next=page.next_page_token is not None,
                start_time=params["startTime"],
                end_time=params["endTime"],
            ),
        )
        return page

    def _parse_page(self, body: Any, *, status_code: int) -> MessagePage:
        if not isinstance(body, dict) or not isinstance(body.get("messages"), list):
            self._metrics.inc_upstream_request("malformed")
            raise InvalidUpstreamResponse(
                "Invalid response from Glacier API: missing messages array",
                status_code=status_code,
                correlation_id=get_correlation_id(),
            )
        try:
            messages = [TeleporterMessage.model_validate(m) for m in body["messages"]]
        except ValidationError as e:
            self._metrics.inc_upstream_request("malformed")
            raise InvalidUpstreamResponse(
                f"Invalid message in Glacier response: {e.error_count()} errors",
                status_code=status_code,
                correlation_id=get_correlation_id(),
            ) from e
        token = body.get("nextPageToken") or None
        return MessagePage(messages=messages, next_page_token=token)

    async def aclose(self) -> None:
        """Close the underlying HTTP client if this instance created it."""
        if self._owns_client:
            await self._client.aclose()
