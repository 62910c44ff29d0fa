"""Attempt outcomes produced by the delivery client.

One outcome per HTTP attempt, consumed immediately by the retry policy.
Only the terminal outcome of a request ends up in the delivery log.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Delivered:
    """The receiver answered with a 2xx status."""

    status_code: int


@dataclass(frozen=True)
class TransientFailure:
    """Failure likely to succeed on retry (timeout, transport error, 408, 429, 5xx)."""

    reason: str
    status_code: int | None = None


@dataclass(frozen=True)
class PermanentFailure:
    """Failure that will not improve on identical retry (3xx, most 4xx, bad URL)."""

    reason: str
    status_code: int | None = None


AttemptOutcome = Delivered | TransientFailure | PermanentFailure


__all__ = ["AttemptOutcome", "Delivered", "PermanentFailure", "TransientFailure"]
