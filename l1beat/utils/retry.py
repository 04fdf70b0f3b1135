"""Retry helpers using tenacity for async upstream calls.

Provides the retry policy of the page fetcher: exponential backoff starting
at a fixed initial delay and doubling each attempt (never shorter than a
Retry-After hint carried by the exception), restricted to the given
exception types, with structured logging and Prometheus metrics before every
sleep.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Awaitable, Callable, Optional, Type

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from l1beat.utils.correlation import log_context

logger = logging.getLogger(__name__)

MAX_RETRY_AFTER_SECONDS = 300.0


def _before_sleep_log_and_metrics(target: str) -> Callable[[RetryCallState], None]:
    def _inner(retry_state: RetryCallState) -> None:
        try:
            e = retry_state.outcome.exception() if retry_state.outcome else None
            delay = retry_state.next_action.sleep if retry_state.next_action else None
            reason = type(e).__name__ if e else "unknown"
            logger.warning(
                "Retrying operation",
                extra=log_context(
                    target=target,
                    attempt_number=retry_state.attempt_number,
                    delay=delay,
                    reason=reason,
                    error=str(e) if e else None,
                ),
            )
            from l1beat.observability.metrics import (  # lazy
                last_retry_delay_seconds,
                upstream_retries_total,
            )

            worker = os.getenv("HOSTNAME", "ingest-1")
            upstream_retries_total.labels(
                target=target, reason=reason, worker=worker
            ).inc()
            if delay is not None:
                last_retry_delay_seconds.labels(target=target, worker=worker).set(delay)
        except Exception:
            # metrics/logging must never break retries
            pass

    return _inner


def build_wait_policy(
    initial_delay: float, max_retry_after: float = MAX_RETRY_AFTER_SECONDS
) -> Callable[[RetryCallState], float]:
    """Return a wait of ``initial_delay * 2 ** (attempt - 1)`` seconds.

    A ``retry_after`` hint on the failed attempt's exception (Retry-After
    header of a 429) lengthens the wait, capped at ``max_retry_after``.
    """
    backoff = wait_exponential(multiplier=initial_delay, exp_base=2, min=0)

    def _wait(retry_state: RetryCallState) -> float:
        delay = backoff(retry_state)
        outcome = retry_state.outcome
        if outcome is not None and outcome.failed:
            hint = getattr(outcome.exception(), "retry_after", None)
            if hint is not None:
                delay = max(delay, min(float(hint), max_retry_after))
        return delay

    return _wait


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    target: str,
    max_retries: int,
    initial_delay: float,
    retry_on: tuple[Type[BaseException], ...],
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
) -> Any:
    """Execute async function with the retry policy.

    Exceptions not listed in ``retry_on`` propagate immediately. When the
    retry budget is exhausted tenacity's ``RetryError`` is raised with the
    last attempt attached.

    Args:
        func: Zero-argument coroutine factory
        target: Label for metrics/logs (e.g., "glacier_icm_messages")
        max_retries: Retries after the first attempt
        initial_delay: First backoff delay in seconds
        retry_on: Exception types that trigger a retry
        sleep: Optional async sleep override
    """
    kwargs: dict[str, Any] = {}
    if sleep is not None:
        kwargs["sleep"] = sleep
    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(max_retries + 1),
        wait=build_wait_policy(initial_delay),
        retry=retry_if_exception_type(retry_on),
        before_sleep=_before_sleep_log_and_metrics(target),
        **kwargs,
    ):
        with attempt:
            return await func()
