"""Dispatch loop: queue message in, webhook delivered, outcome logged, message acked.

Each message is handled in its own asyncio task, so a slow or retrying
delivery never delays another one. The channel prefetch count and a
semaphore of the same size bound the number of messages in flight.
"""

from __future__ import annotations

import asyncio
import signal
from typing import TYPE_CHECKING

from webhook_dispatcher.exceptions import MalformedMessage
from webhook_dispatcher.logging import bind_context, get_logger, unbind_context
from webhook_dispatcher.queue import QueueConsumer
from webhook_dispatcher.storage import OutcomeLogger
from webhook_dispatcher.webhooks import (
    DeliveryClient,
    DeliveryState,
    RetryPolicy,
    decode_message,
    with_retry_count,
)

if TYPE_CHECKING:
    from aio_pika.abc import AbstractIncomingMessage

    from webhook_dispatcher.config import Settings
    from webhook_dispatcher.models import AttemptOutcome, DeliveryLogEntry, DeliveryRequest

logger = get_logger(__name__)

_CONTEXT_KEYS = ("team_id", "job_id", "scrape_id", "event")


class Dispatcher:
    """Drives delivery requests from the queue to their receivers.

    Per message:
    1. Decode; malformed messages are rejected without requeue
    2. Attempt delivery, consulting the retry policy after each attempt
    3. Record the terminal outcome in the log store
    4. Acknowledge the message

    Example:
        ```python
        dispatcher = Dispatcher(settings)
        await dispatcher.run(QueueConsumer.from_settings(settings))
        ```
    """

    def __init__(
        self,
        settings: Settings,
        client: DeliveryClient | None = None,
        outcome_logger: OutcomeLogger | None = None,
        policy: RetryPolicy | None = None,
        consumer: QueueConsumer | None = None,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            settings: Worker settings.
            client: Delivery client. Created if None.
            outcome_logger: Outcome logger. Created from settings if None.
            policy: Retry policy. Built from settings if None.
            consumer: Queue consumer used to republish requests interrupted
                by shutdown. run() sets it to the consumer it drives.
        """
        self._settings = settings
        self._client = client or DeliveryClient()
        self._outcome_logger = outcome_logger or OutcomeLogger.from_settings(settings)
        self._policy = policy or RetryPolicy(
            max_retries=settings.max_retries,
            retry_delay_ms=settings.retry_delay_ms,
        )
        self._consumer = consumer
        self._semaphore = asyncio.Semaphore(settings.prefetch_count)
        self._tasks: set[asyncio.Task[None]] = set()
        self._stopping = asyncio.Event()

    @property
    def in_flight(self) -> int:
        """Number of messages currently being processed."""
        return len(self._tasks)

    def request_shutdown(self) -> None:
        """Begin graceful shutdown.

        Interrupts inter-attempt waits and makes run() stop consuming.
        Safe to call from a signal handler.
        """
        if not self._stopping.is_set():
            logger.info("Shutdown requested", in_flight=self.in_flight)
        self._stopping.set()

    async def on_message(self, message: AbstractIncomingMessage) -> None:
        """Queue callback: process the message in its own task."""
        task = asyncio.create_task(self._process(message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _process(self, message: AbstractIncomingMessage) -> None:
        async with self._semaphore:
            try:
                await self.handle_message(message)
            except Exception:
                logger.exception("Unexpected error handling webhook message")
                await self._release_after_error(message)

    async def _release_after_error(self, message: AbstractIncomingMessage) -> None:
        # One redelivery, then drop
        try:
            if message.redelivered:
                await message.reject(requeue=False)
            else:
                await message.nack(requeue=True)
        except Exception:
            logger.exception("Failed to release webhook message after error")

    async def handle_message(self, message: AbstractIncomingMessage) -> DeliveryLogEntry | None:
        """Process one queue message end to end.

        Args:
            message: Incoming queue message.

        Returns:
            The terminal log entry, or None if the message was malformed
            or processing was interrupted by shutdown.
        """
        try:
            request = decode_message(message.body)
        except MalformedMessage as e:
            logger.warning(
                "Rejecting malformed webhook message",
                error=e.message,
                fields=e.fields,
                message_id=message.message_id,
            )
            await message.reject(requeue=False)
            return None

        bind_context(
            team_id=request.team_id,
            job_id=request.job_id,
            scrape_id=request.scrape_id,
            event=request.event,
        )
        try:
            outcome = await self.deliver(request)
            if outcome is None:
                await self._requeue(message, request)
                return None

            entry = await self._outcome_logger.record(request, outcome)
            await message.ack()
            return entry
        finally:
            unbind_context(*_CONTEXT_KEYS)

    async def _requeue(self, message: AbstractIncomingMessage, request: DeliveryRequest) -> None:
        """Hand an interrupted request back to the queue with its progress.

        The republished body carries the advanced ``retry_count``, so the
        next worker only gets the attempts that are left. The original is
        acked after the copy is published.
        """
        if self._consumer is None:
            logger.info(
                "Delivery interrupted by shutdown, requeueing",
                retry_count=request.retry_count,
            )
            await message.nack(requeue=True)
            return

        await self._consumer.publish(with_retry_count(message.body, request.retry_count))
        await message.ack()
        logger.info(
            "Delivery interrupted by shutdown, republished",
            retry_count=request.retry_count,
        )

    async def deliver(self, request: DeliveryRequest) -> AttemptOutcome | None:
        """Attempt delivery until the retry policy reaches a terminal state.

        Attempts are strictly sequential. ``request.retry_count`` is
        advanced between attempts.

        Args:
            request: Request to deliver.

        Returns:
            The terminal outcome, or None if shutdown interrupted a wait.
        """
        if request.retry_count > self._policy.max_retries:
            logger.debug(
                "Clamping retry count",
                retry_count=request.retry_count,
                max_retries=self._policy.max_retries,
            )
            request.retry_count = self._policy.max_retries

        while True:
            outcome = await self._client.attempt(request)
            decision = self._policy.decide(request.retry_count, outcome)

            if decision.state is DeliveryState.SUCCEEDED:
                logger.info(
                    "Webhook delivered",
                    url=request.webhook_url,
                    status_code=outcome.status_code,
                    attempt=request.retry_count + 1,
                )
                return outcome

            if decision.state is DeliveryState.FAILED:
                logger.warning(
                    "Webhook delivery failed",
                    url=request.webhook_url,
                    reason=getattr(outcome, "reason", None),
                    status_code=outcome.status_code,
                    attempt=request.retry_count + 1,
                )
                return outcome

            logger.info(
                "Webhook attempt failed, retrying",
                url=request.webhook_url,
                reason=getattr(outcome, "reason", None),
                status_code=outcome.status_code,
                attempt=request.retry_count + 1,
                retry_in_ms=int(decision.delay_seconds * 1000),
            )
            request.retry_count = decision.retry_count

            if not await self._wait_before_retry(decision.delay_seconds):
                return None

    async def _wait_before_retry(self, delay_seconds: float) -> bool:
        """Sleep between attempts unless shutdown starts.

        Returns:
            True if the full delay elapsed, False if shutdown interrupted it.
        """
        if self._stopping.is_set():
            return False
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=delay_seconds)
        except asyncio.TimeoutError:
            return True
        return False

    async def drain(self) -> None:
        """Wait for every in-flight message to finish."""
        if self._tasks:
            logger.info("Waiting for in-flight deliveries", in_flight=self.in_flight)
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        """Close HTTP clients."""
        await self._client.aclose()
        await self._outcome_logger.aclose()

    async def run(self, consumer: QueueConsumer) -> None:
        """Consume until shutdown is requested, then drain and close.

        Args:
            consumer: Queue consumer (not yet connected).
        """
        self._consumer = consumer
        try:
            await consumer.connect()
            await consumer.start(self.on_message)
            logger.info(
                "Webhook dispatcher started",
                queue=consumer.queue_name,
                prefetch_count=self._settings.prefetch_count,
                max_retries=self._settings.max_retries,
                retry_delay_ms=self._settings.retry_delay_ms,
            )

            await self._stopping.wait()

            await consumer.stop()
            await self.drain()
        finally:
            await consumer.close()
            await self.aclose()
            logger.info("Webhook dispatcher stopped")


async def run_worker(settings: Settings) -> None:
    """Run the dispatcher until SIGINT or SIGTERM.

    Args:
        settings: Worker settings.
    """
    dispatcher = Dispatcher(settings)
    consumer = QueueConsumer.from_settings(settings)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, dispatcher.request_shutdown)

    try:
        await dispatcher.run(consumer)
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
