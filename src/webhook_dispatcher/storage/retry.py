"""Retry utilities for log store writes.

Provides exponential backoff retry for transient network errors when
appending delivery log entries. Only network and server errors are
retried, never client errors (4xx).
"""

from __future__ import annotations

import logging

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

logger = logging.getLogger(__name__)

LOG_STORE_MAX_ATTEMPTS = 3


def is_transient_log_store_error(exc: BaseException) -> bool:
    """Whether a log store failure is worth retrying.

    Args:
        exc: Exception raised by the write.

    Returns:
        True for connection errors, timeouts and 5xx responses.
    """
    if isinstance(exc, (httpx.ConnectError, httpx.TimeoutException)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return False


def _log_retry(retry_state: RetryCallState) -> None:
    """Log retry attempts with context.

    Args:
        retry_state: Current retry state from tenacity.
    """
    logger.warning(
        "Retrying log store write",
        extra={
            "attempt": retry_state.attempt_number,
            "exception": str(retry_state.outcome.exception()) if retry_state.outcome else None,
        },
    )


def log_store_retry(
    max_attempts: int = LOG_STORE_MAX_ATTEMPTS,
    wait: wait_base | None = None,
) -> AsyncRetrying:
    """Build the retry controller for log store writes.

    The returned controller holds per-run state: call ``.copy()`` before
    each use when it is shared between concurrent writers.

    Args:
        max_attempts: Total attempts including the first.
        wait: Wait strategy. Exponential 0.5s..5s if None.

    Returns:
        A configured AsyncRetrying.
    """
    return AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait if wait is not None else wait_exponential(multiplier=0.5, min=0.5, max=5),
        retry=retry_if_exception(is_transient_log_store_error),
        before_sleep=_log_retry,
        reraise=True,
    )
