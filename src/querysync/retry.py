"""Retry policy shared by query, page and mutation fetches.

A fetch is attempted ``retry + 1`` times with ``retry_delay`` between
attempts (doubling each time when ``backoff`` is set). Only ``Exception``
subclasses are retried; cancellation always propagates immediately.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_fixed,
)

from querysync.duration import to_seconds

T = TypeVar("T")

logger = logging.getLogger(__name__)

_MAX_BACKOFF_SECONDS = 30.0


def build_retrying(
    *,
    retry: int,
    delay_ms: int,
    backoff: bool = False,
    label: str = "fetch",
    on_retry: Callable[[int], None] | None = None,
) -> AsyncRetrying:
    """Build a tenacity controller for one fetch.

    Args:
        retry: Number of retries after the first attempt
        delay_ms: Wait before each retry
        backoff: Double the wait on every retry
        label: Name used in log lines (usually the cache key)
        on_retry: Called with the number of failed attempts so far
    """
    delay = to_seconds(delay_ms)
    if backoff:
        wait = wait_exponential(multiplier=delay, max=max(delay, _MAX_BACKOFF_SECONDS))
    else:
        wait = wait_fixed(delay)

    def before_sleep(retry_state: RetryCallState) -> None:
        failed = retry_state.attempt_number
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.debug(
            "Retrying %s after attempt %d/%d failed: %r",
            label,
            failed,
            retry + 1,
            exc,
        )
        if on_retry is not None:
            on_retry(failed)

    return AsyncRetrying(
        stop=stop_after_attempt(retry + 1),
        wait=wait,
        retry=retry_if_exception_type(Exception),
        before_sleep=before_sleep,
        reraise=True,
    )


async def run_with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    retry: int,
    delay_ms: int,
    backoff: bool = False,
    label: str = "fetch",
    on_retry: Callable[[int], None] | None = None,
) -> T:
    """Await ``fn()`` under the retry policy; the last error is re-raised."""
    retrying = build_retrying(
        retry=retry,
        delay_ms=delay_ms,
        backoff=backoff,
        label=label,
        on_retry=on_retry,
    )
    return await retrying(fn)


__all__ = ["build_retrying", "run_with_retry"]
