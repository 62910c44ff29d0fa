"""Outcome persistence for the webhook dispatcher."""

from .outcome_log import OutcomeLogger
from .retry import is_transient_log_store_error, log_store_retry

__all__ = [
    "OutcomeLogger",
    "is_transient_log_store_error",
    "log_store_retry",
]
