"""Webhook dispatcher: queue-driven webhook delivery with bounded retry.

Consumes job-completion events from RabbitMQ, POSTs them to
tenant-supplied URLs, retries transient failures a bounded number of
times with a fixed delay, and records one outcome per request in the
delivery log store.

Quick Start:
    from webhook_dispatcher.config import load_settings
    from webhook_dispatcher.worker import run_worker

    settings = load_settings()
    await run_worker(settings)

Pipeline:
    - decode_message: queue bytes -> DeliveryRequest
    - DeliveryClient: one HTTP POST -> AttemptOutcome
    - RetryPolicy: (retry_count, outcome) -> RetryDecision
    - OutcomeLogger: terminal outcome -> DeliveryLogEntry in the log store
    - Dispatcher: ties the above together per message
"""

__version__ = "0.1.0"

# Configuration
from .config import Settings, load_settings

# Exceptions
from .exceptions import (
    ConfigurationError,
    DispatcherError,
    LogPersistenceError,
    MalformedMessage,
    QueueError,
)

# Logging
from .logging import (
    bind_context,
    clear_context,
    configure_logging,
    get_logger,
    unbind_context,
)

# Models
from .models import (
    AttemptOutcome,
    Delivered,
    DeliveryLogEntry,
    DeliveryRequest,
    PermanentFailure,
    TransientFailure,
    WebhookPayload,
)

__all__ = [
    "__version__",
    # Configuration
    "Settings",
    "load_settings",
    # Exceptions
    "ConfigurationError",
    "DispatcherError",
    "LogPersistenceError",
    "MalformedMessage",
    "QueueError",
    # Logging
    "bind_context",
    "clear_context",
    "configure_logging",
    "get_logger",
    "unbind_context",
    # Models
    "AttemptOutcome",
    "Delivered",
    "DeliveryLogEntry",
    "DeliveryRequest",
    "PermanentFailure",
    "TransientFailure",
    "WebhookPayload",
]
