"""Retry policy for webhook delivery.

A pure state machine over (retry_count, last outcome):

    Delivered                        -> SUCCEEDED
    PermanentFailure                 -> FAILED
    TransientFailure, budget left    -> RETRYING (retry_count + 1, fixed delay)
    TransientFailure, budget spent   -> FAILED

SUCCEEDED and FAILED are absorbing. The delay is the same for every
attempt; there is no exponential backoff.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from webhook_dispatcher.models import Delivered, PermanentFailure

if TYPE_CHECKING:
    from webhook_dispatcher.models import AttemptOutcome


class DeliveryState(str, Enum):
    """Where a request stands after an attempt."""

    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class RetryDecision:
    """What to do after an attempt.

    Attributes:
        state: Resulting state.
        retry_count: Failed attempts counted so far (incremented on RETRYING).
        delay_seconds: Wait before the next attempt, 0 for terminal states.
    """

    state: DeliveryState
    retry_count: int
    delay_seconds: float = 0.0

    @property
    def is_terminal(self) -> bool:
        return self.state is not DeliveryState.RETRYING


class RetryPolicy:
    """Decides whether a failed attempt is retried.

    Args:
        max_retries: Maximum number of attempts per request (>= 1).
        retry_delay_ms: Fixed wait between attempts.
    """

    def __init__(self, max_retries: int, retry_delay_ms: int) -> None:
        if max_retries < 1:
            raise ValueError(f"max_retries must be >= 1, got {max_retries}")
        if retry_delay_ms < 0:
            raise ValueError(f"retry_delay_ms must be >= 0, got {retry_delay_ms}")
        self.max_retries = max_retries
        self.retry_delay_ms = retry_delay_ms

    def decide(self, retry_count: int, outcome: AttemptOutcome) -> RetryDecision:
        """Decide the next step for a request.

        Deterministic: identical inputs always give identical decisions.

        Args:
            retry_count: Failed attempts before the one that produced
                ``outcome``.
            outcome: Result of the latest attempt.

        Returns:
            The retry decision.
        """
        if isinstance(outcome, Delivered):
            return RetryDecision(DeliveryState.SUCCEEDED, retry_count)

        if isinstance(outcome, PermanentFailure):
            return RetryDecision(DeliveryState.FAILED, retry_count)

        if retry_count + 1 >= self.max_retries:
            return RetryDecision(DeliveryState.FAILED, retry_count)

        return RetryDecision(
            DeliveryState.RETRYING,
            retry_count + 1,
            delay_seconds=self.retry_delay_ms / 1000,
        )
