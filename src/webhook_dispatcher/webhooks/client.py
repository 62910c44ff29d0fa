"""Single-attempt webhook delivery over HTTP.

The client performs exactly one POST per call and classifies the result.
It holds no per-request state; retrying is the dispatch loop's job.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

import httpx

from webhook_dispatcher.models import Delivered, PermanentFailure, TransientFailure

if TYPE_CHECKING:
    from webhook_dispatcher.models import AttemptOutcome, DeliveryRequest

logger = logging.getLogger(__name__)

# Client errors that are worth retrying
RETRYABLE_CLIENT_STATUSES = frozenset({408, 429})

MAX_REASON_BODY_CHARS = 200

DEFAULT_HEADERS = {
    "Content-Type": "application/json",
    "User-Agent": "webhook-dispatcher",
}


def classify_status(status_code: int, body: str = "") -> AttemptOutcome:
    """Map an HTTP status code to an attempt outcome.

    Args:
        status_code: Response status.
        body: Response text, truncated into the failure reason.

    Returns:
        Delivered for 2xx, PermanentFailure for 3xx/4xx other than
        408/429, TransientFailure otherwise.
    """
    if 200 <= status_code < 300:
        return Delivered(status_code=status_code)

    reason = f"HTTP {status_code}"
    if body:
        reason = f"{reason}: {body[:MAX_REASON_BODY_CHARS]}"

    if 300 <= status_code < 500 and status_code not in RETRYABLE_CLIENT_STATUSES:
        return PermanentFailure(reason=reason, status_code=status_code)
    return TransientFailure(reason=reason, status_code=status_code)


class DeliveryClient:
    """Posts webhook payloads to receivers.

    Uses one shared AsyncClient (connection pooling) across all concurrent
    workers. Nothing on the shared client is mutated per request: the
    timeout and headers travel with each call.

    Example:
        ```python
        client = DeliveryClient()
        outcome = await client.attempt(request)
        await client.aclose()
        ```
    """

    def __init__(self, http_client: httpx.AsyncClient | None = None) -> None:
        """Initialize the delivery client.

        Args:
            http_client: Optional pre-built AsyncClient (tests pass one
                with a mock transport). Created if None.
        """
        self._client = http_client or httpx.AsyncClient(follow_redirects=False)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def attempt(self, request: DeliveryRequest) -> AttemptOutcome:
        """Make one delivery attempt.

        The request's ``timeout_ms`` bounds the whole attempt, connection
        setup and body transfer included.

        Args:
            request: Request to deliver. Not modified.

        Returns:
            The attempt outcome.
        """
        headers = httpx.Headers(DEFAULT_HEADERS)
        headers.update(request.headers)
        timeout = request.timeout_seconds

        try:
            response = await asyncio.wait_for(
                self._client.post(
                    request.webhook_url,
                    json=request.payload.to_body(),
                    headers=headers,
                    timeout=httpx.Timeout(timeout),
                ),
                timeout=timeout,
            )
        except (httpx.TimeoutException, asyncio.TimeoutError):
            return TransientFailure(reason=f"Request timed out after {request.timeout_ms}ms")
        except (httpx.InvalidURL, httpx.UnsupportedProtocol) as e:
            return PermanentFailure(reason=f"Invalid webhook URL: {e}")
        except httpx.RequestError as e:
            # DNS errors, connection refused, TLS, etc.
            return TransientFailure(reason=f"{type(e).__name__}: {e}")

        outcome = classify_status(response.status_code, response.text)
        logger.debug(
            "Webhook attempt to %s returned %d",
            request.webhook_url,
            response.status_code,
        )
        return outcome
