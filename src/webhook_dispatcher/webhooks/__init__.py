"""Webhook delivery pipeline pieces.

Provides message decoding, single-attempt HTTP delivery and the retry
state machine. The dispatch loop in ``webhook_dispatcher.worker`` ties
them together.

Example:
    ```python
    from webhook_dispatcher.webhooks import DeliveryClient, RetryPolicy, decode_message

    request = decode_message(body)
    outcome = await client.attempt(request)
    decision = policy.decide(request.retry_count, outcome)
    ```
"""

from .client import DeliveryClient, classify_status
from .decoder import decode_message, with_retry_count
from .retry import DeliveryState, RetryDecision, RetryPolicy

__all__ = [
    "DeliveryClient",
    "DeliveryState",
    "RetryDecision",
    "RetryPolicy",
    "classify_status",
    "decode_message",
    "with_retry_count",
]
