"""Delivery outcome logging.

Each request produces exactly one DeliveryLogEntry at its terminal
transition. Entries are appended to a PostgREST table
(``{log_store_url}/rest/v1/{log_table}``).

Persistence is best-effort relative to queue progress: a failed write is
logged locally and the queue message is still acknowledged.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import httpx

from webhook_dispatcher.exceptions import LogPersistenceError
from webhook_dispatcher.logging import get_logger
from webhook_dispatcher.models import DeliveryLogEntry

from .retry import log_store_retry

if TYPE_CHECKING:
    from tenacity import AsyncRetrying

    from webhook_dispatcher.config import Settings
    from webhook_dispatcher.models import AttemptOutcome, DeliveryRequest

logger = get_logger(__name__)


class OutcomeLogger:
    """Builds and persists delivery log entries.

    Example:
        ```python
        outcome_logger = OutcomeLogger.from_settings(settings)
        entry = await outcome_logger.record(request, outcome)
        await outcome_logger.aclose()
        ```
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        table: str = "webhook_logs",
        timeout_seconds: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
        retrying: AsyncRetrying | None = None,
    ) -> None:
        """Initialize the outcome logger.

        Args:
            base_url: Log store base URL.
            token: Service token, sent as both ``apikey`` and bearer token.
            table: Table receiving the entries.
            timeout_seconds: HTTP timeout per write.
            http_client: Optional pre-built AsyncClient. Created if None.
            retrying: Optional retry controller for transient write errors.
        """
        self._endpoint = f"{base_url.rstrip('/')}/rest/v1/{table}"
        self._headers = {
            "apikey": token,
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Prefer": "return=minimal",
        }
        self._client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout_seconds))
        self._retrying = retrying or log_store_retry()

    @classmethod
    def from_settings(cls, settings: Settings) -> OutcomeLogger:
        """Create an outcome logger from settings."""
        return cls(
            base_url=settings.log_store_url,
            token=settings.log_store_token.get_secret_value(),
            table=settings.log_table,
            timeout_seconds=settings.log_store_timeout_seconds,
        )

    @property
    def endpoint(self) -> str:
        return self._endpoint

    async def aclose(self) -> None:
        await self._client.aclose()

    async def record(self, request: DeliveryRequest, outcome: AttemptOutcome) -> DeliveryLogEntry:
        """Create and persist the log entry for a terminal outcome.

        Never raises on persistence failure.

        Args:
            request: The request that reached a terminal state.
            outcome: Its terminal attempt outcome.

        Returns:
            The created entry, whether or not it was persisted.
        """
        entry = DeliveryLogEntry.for_outcome(request, outcome)

        try:
            await self.persist(entry)
        except LogPersistenceError as e:
            logger.error(
                "Failed to persist delivery log entry",
                error=e.message,
                status_code=e.status_code,
                webhook_success=entry.success,
                url=entry.url,
            )

        return entry

    async def persist(self, entry: DeliveryLogEntry) -> None:
        """Append an entry to the log store, retrying transient errors.

        Args:
            entry: Entry to write.

        Raises:
            LogPersistenceError: If the write ultimately fails.
        """
        try:
            async for attempt in self._retrying.copy():
                with attempt:
                    await self._post(entry)
        except httpx.HTTPStatusError as e:
            raise LogPersistenceError(
                f"Log store rejected entry: HTTP {e.response.status_code}",
                status_code=e.response.status_code,
            ) from e
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise LogPersistenceError(f"Log store unreachable: {e}") from e

    async def _post(self, entry: DeliveryLogEntry) -> None:
        response = await self._client.post(
            self._endpoint,
            json=entry.model_dump(mode="json"),
            headers=self._headers,
        )
        response.raise_for_status()
