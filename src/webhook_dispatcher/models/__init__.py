"""Data models for the webhook dispatcher.

Message Types:
    - WebhookPayload: JSON body POSTed to the receiver
    - DeliveryRequest: Decoded queue message

Outcomes:
    - Delivered, TransientFailure, PermanentFailure: Result of one attempt

Log:
    - DeliveryLogEntry: Terminal result persisted to the log store
"""

from .log import DeliveryLogEntry
from .message import DeliveryRequest, WebhookPayload
from .outcome import AttemptOutcome, Delivered, PermanentFailure, TransientFailure

__all__ = [
    # Messages
    "DeliveryRequest",
    "WebhookPayload",
    # Outcomes
    "AttemptOutcome",
    "Delivered",
    "PermanentFailure",
    "TransientFailure",
    # Log
    "DeliveryLogEntry",
]
