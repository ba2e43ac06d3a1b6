"""Tenacity retry wrapper for fetch attempts, driven by RetryConfig."""

from __future__ import annotations

from collections.abc import Callable

import structlog
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from .config import RetryConfig

logger = structlog.get_logger()


def _log_retry(state: RetryCallState) -> None:
    exc = state.outcome.exception() if state.outcome else None
    logger.warning(
        "fetch_attempt_failed",
        attempt=state.attempt_number,
        error=str(exc),
        retry_in=state.upcoming_sleep,
    )


def with_retry(
    config: RetryConfig,
    *,
    retryable_exceptions: tuple[type[BaseException], ...] = (Exception,),
) -> Callable:
    """Return a tenacity decorator: fixed delay, bounded attempts, last error re-raised.

    Usage::

        @with_retry(config.retry)
        async def attempt() -> FetchBatch: ...
    """
    return retry(
        stop=stop_after_attempt(config.max_attempts),
        wait=wait_fixed(config.wait_seconds),
        retry=retry_if_exception_type(retryable_exceptions),
        before_sleep=_log_retry,
        reraise=True,
    )
