"""Webhook dispatcher exception hierarchy.

Provides structured exceptions for error handling throughout the worker.
All exceptions inherit from DispatcherError for easy catching.

Delivery failures (timeouts, 5xx, 4xx) are not exceptions: they are
attempt outcomes, see ``webhook_dispatcher.models.outcome``.
"""

from __future__ import annotations


class DispatcherError(Exception):
    """Base exception for all webhook dispatcher errors.

    Attributes:
        message: Human-readable error description.
        code: Machine-readable error code for logs.
    """

    code: str = "dispatcher_error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict[str, object]:
        """Convert exception to a log-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
            }
        }


class ConfigurationError(DispatcherError):
    """Configuration error.

    Raised at startup when a required setting is missing or invalid.
    Fatal: the process exits with a non-zero status.
    """

    code: str = "configuration_error"


class MalformedMessage(DispatcherError):
    """A queue message could not be decoded into a delivery request.

    Structural defect, not a delivery failure: the message is rejected
    without requeue and never retried.

    Attributes:
        fields: Dotted paths of the offending fields (may be empty when
            the body is not JSON at all).
    """

    code: str = "malformed_message"

    def __init__(self, message: str, fields: list[str] | None = None) -> None:
        self.fields = list(fields or [])
        super().__init__(message)

    def to_dict(self) -> dict[str, object]:
        """Convert exception to a log-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "fields": self.fields,
                "message": self.message,
            }
        }


class LogPersistenceError(DispatcherError):
    """Writing a delivery log entry to the log store failed.

    Observability event only. It never blocks acknowledgment of the
    originating queue message.

    Attributes:
        status_code: HTTP status returned by the log store, if any.
    """

    code: str = "log_persistence_error"

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)

    def to_dict(self) -> dict[str, object]:
        """Convert exception to a log-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "status_code": self.status_code,
                "message": self.message,
            }
        }


class QueueError(DispatcherError):
    """Queue operation failed.

    Raised when the consumer is used before a broker connection exists.
    """

    code: str = "queue_error"
