"""Tests for the dispatch loop."""

from __future__ import annotations

import asyncio
import json
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from conftest import make_message, make_outcome_logger
from tenacity import wait_none

from webhook_dispatcher.models import (
    Delivered,
    DeliveryLogEntry,
    PermanentFailure,
    TransientFailure,
)
from webhook_dispatcher.storage import OutcomeLogger, log_store_retry
from webhook_dispatcher.worker import Dispatcher


def make_client(*outcomes: Any) -> AsyncMock:
    """Create a mock delivery client returning outcomes in order."""
    client = AsyncMock()
    client.attempt = AsyncMock(side_effect=list(outcomes))
    return client


def make_dispatcher(settings, client: AsyncMock, outcome_logger: AsyncMock | None = None):
    return Dispatcher(
        settings,
        client=client,
        outcome_logger=outcome_logger or make_outcome_logger(),
    )


class TestHandleMessage:
    """Tests for end-to-end handling of one message."""

    @pytest.mark.asyncio
    async def test_success_after_two_server_errors(self, settings, message_document) -> None:
        """500, 500, 200 should make 3 attempts and log one success."""
        client = make_client(
            TransientFailure("HTTP 500", 500),
            TransientFailure("HTTP 500", 500),
            Delivered(200),
        )
        outcome_logger = make_outcome_logger()
        dispatcher = make_dispatcher(settings, client, outcome_logger)
        message = make_message(message_document)

        entry = await dispatcher.handle_message(message)

        assert client.attempt.await_count == 3
        assert isinstance(entry, DeliveryLogEntry)
        assert entry.success is True
        assert entry.status_code == 200
        outcome_logger.record.assert_awaited_once()
        message.ack.assert_awaited_once()
        message.reject.assert_not_awaited()
        message.nack.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_not_found_fails_without_retry(self, settings, message_document) -> None:
        """A 404 should make one attempt and log one failure."""
        client = make_client(PermanentFailure("HTTP 404: missing", 404))
        outcome_logger = make_outcome_logger()
        dispatcher = make_dispatcher(settings, client, outcome_logger)
        message = make_message(message_document)

        entry = await dispatcher.handle_message(message)

        assert client.attempt.await_count == 1
        assert entry is not None
        assert entry.success is False
        assert entry.error == "HTTP 404: missing"
        assert entry.status_code == 404
        outcome_logger.record.assert_awaited_once()
        message.ack.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_timeouts_exhaust_retries(self, settings, message_document) -> None:
        """Three timeouts should make 3 attempts spaced by retry_delay_ms."""
        timeout = TransientFailure("Request timed out after 5000ms")
        client = make_client(timeout, timeout, timeout)
        dispatcher = make_dispatcher(settings, client)
        message = make_message(message_document)

        with patch.object(
            dispatcher, "_wait_before_retry", AsyncMock(return_value=True)
        ) as wait:
            entry = await dispatcher.handle_message(message)

        assert client.attempt.await_count == 3
        assert wait.await_count == 2
        for call in wait.await_args_list:
            assert call.args == (0.01,)
        assert entry is not None
        assert entry.success is False
        assert entry.status_code is None
        message.ack.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_delivered_on_first_attempt(self, settings, message_document) -> None:
        """Delivered should stop immediately."""
        client = make_client(Delivered(202), Delivered(200))
        dispatcher = make_dispatcher(settings, client)

        entry = await dispatcher.handle_message(make_message(message_document))

        assert client.attempt.await_count == 1
        assert entry is not None
        assert entry.status_code == 202

    @pytest.mark.asyncio
    async def test_malformed_message_rejected(self, settings, message_document) -> None:
        """A message without webhook_url should be rejected with no attempts or logs."""
        del message_document["webhook_url"]
        client = make_client()
        outcome_logger = make_outcome_logger()
        dispatcher = make_dispatcher(settings, client, outcome_logger)
        message = make_message(message_document)

        entry = await dispatcher.handle_message(message)

        assert entry is None
        client.attempt.assert_not_awaited()
        outcome_logger.record.assert_not_awaited()
        message.reject.assert_awaited_once_with(requeue=False)
        message.ack.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_invalid_json_rejected(self, settings) -> None:
        """A non-JSON body should be rejected without requeue."""
        dispatcher = make_dispatcher(settings, make_client())
        message = make_message(b"\x00garbage")

        assert await dispatcher.handle_message(message) is None
        message.reject.assert_awaited_once_with(requeue=False)

    @pytest.mark.asyncio
    async def test_non_ascii_header_rejected(self, settings, message_document) -> None:
        """A header that cannot be sent over HTTP should be rejected, not requeued."""
        client = make_client()
        outcome_logger = make_outcome_logger()
        dispatcher = make_dispatcher(settings, client, outcome_logger)
        message = make_message({**message_document, "headers": {"X-Tenant": "café"}})

        await dispatcher.on_message(message)
        await dispatcher.drain()

        client.attempt.assert_not_awaited()
        outcome_logger.record.assert_not_awaited()
        message.reject.assert_awaited_once_with(requeue=False)
        message.nack.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_log_failure_does_not_block_ack(self, settings, message_document) -> None:
        """A log store outage should not prevent acknowledgment."""
        store_calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal store_calls
            store_calls += 1
            return httpx.Response(503)

        outcome_logger = OutcomeLogger(
            base_url="https://logs.example.com",
            token="service-token",
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
            retrying=log_store_retry(wait=wait_none()),
        )
        dispatcher = make_dispatcher(settings, make_client(Delivered(200)), outcome_logger)
        message = make_message(message_document)

        entry = await dispatcher.handle_message(message)

        assert entry is not None
        assert entry.success is True
        assert store_calls == 3
        message.ack.assert_awaited_once()
        await outcome_logger.aclose()


class TestDeliver:
    """Tests for the retry loop."""

    @pytest.mark.asyncio
    async def test_at_most_max_retries_attempts(self, settings, request_factory) -> None:
        """Persistent transient failures should stop after max_retries attempts."""
        client = make_client(*[TransientFailure("HTTP 503", 503)] * 10)
        dispatcher = make_dispatcher(settings, client)
        request = request_factory()

        outcome = await dispatcher.deliver(request)

        assert isinstance(outcome, TransientFailure)
        assert client.attempt.await_count == 3
        assert request.retry_count == 2

    @pytest.mark.asyncio
    async def test_retry_count_from_message_is_honored(self, settings, request_factory) -> None:
        """A message that already used retries should get only the remaining attempts."""
        client = make_client(*[TransientFailure("HTTP 503", 503)] * 3)
        dispatcher = make_dispatcher(settings, client)

        await dispatcher.deliver(request_factory(retry_count=2))

        assert client.attempt.await_count == 1

    @pytest.mark.asyncio
    async def test_retry_count_clamped_to_max(self, settings, request_factory) -> None:
        """retry_count above max_retries should be clamped and get one attempt."""
        client = make_client(TransientFailure("HTTP 503", 503))
        dispatcher = make_dispatcher(settings, client)
        request = request_factory(retry_count=7)

        await dispatcher.deliver(request)

        assert request.retry_count == 3
        assert client.attempt.await_count == 1

    @pytest.mark.asyncio
    async def test_permanent_after_transient(self, settings, request_factory) -> None:
        """A permanent failure on a retry should end delivery."""
        client = make_client(
            TransientFailure("HTTP 429", 429),
            PermanentFailure("HTTP 401", 401),
            Delivered(200),
        )
        dispatcher = make_dispatcher(settings, client)

        outcome = await dispatcher.deliver(request_factory())

        assert outcome == PermanentFailure("HTTP 401", 401)
        assert client.attempt.await_count == 2

    @pytest.mark.asyncio
    async def test_attempts_are_sequential(self, settings, request_factory) -> None:
        """Attempt N+1 must not start before attempt N finishes."""
        active = 0
        max_active = 0
        outcomes = iter([TransientFailure("HTTP 500", 500)] * 2 + [Delivered(200)])

        async def attempt(request):
            nonlocal active, max_active
            active += 1
            max_active = max(max_active, active)
            await asyncio.sleep(0)
            active -= 1
            return next(outcomes)

        client = AsyncMock()
        client.attempt = attempt
        dispatcher = make_dispatcher(settings, client)

        await dispatcher.deliver(request_factory())

        assert max_active == 1


class TestShutdown:
    """Tests for graceful shutdown behavior."""

    @pytest.mark.asyncio
    async def test_shutdown_interrupts_retry_wait(self, settings, message_document) -> None:
        """Without a consumer, an interrupted request is nacked back without a log entry."""
        client = make_client(TransientFailure("HTTP 500", 500), Delivered(200))
        outcome_logger = make_outcome_logger()
        dispatcher = make_dispatcher(settings, client, outcome_logger)
        dispatcher.request_shutdown()
        message = make_message(message_document)

        entry = await dispatcher.handle_message(message)

        assert entry is None
        assert client.attempt.await_count == 1
        outcome_logger.record.assert_not_awaited()
        message.nack.assert_awaited_once_with(requeue=True)
        message.ack.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_interrupted_request_republished_with_progress(
        self, settings, message_document
    ) -> None:
        """The republished copy should carry the advanced retry_count."""
        client = make_client(TransientFailure("HTTP 500", 500), Delivered(200))
        outcome_logger = make_outcome_logger()
        consumer = AsyncMock()
        dispatcher = Dispatcher(
            settings, client=client, outcome_logger=outcome_logger, consumer=consumer
        )
        dispatcher.request_shutdown()
        message = make_message({**message_document, "extra_field": "kept"})

        assert await dispatcher.handle_message(message) is None

        consumer.publish.assert_awaited_once()
        republished = json.loads(consumer.publish.await_args.args[0])
        assert republished["retry_count"] == 1
        assert republished["extra_field"] == "kept"
        assert republished["payload"]["webhookId"] == "wh_123"
        message.ack.assert_awaited_once()
        message.nack.assert_not_awaited()
        outcome_logger.record.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_restarts_do_not_reset_attempt_budget(
        self, settings, message_document
    ) -> None:
        """Interrupted runs of one request should share max_retries attempts in total."""
        client = make_client(*[TransientFailure("HTTP 503", 503)] * 10)
        outcome_logger = make_outcome_logger()
        body = json.dumps(message_document).encode()

        for _ in range(3):
            consumer = AsyncMock()
            dispatcher = Dispatcher(
                settings, client=client, outcome_logger=outcome_logger, consumer=consumer
            )
            waits = iter([True, False])

            async def wait_before_retry(delay_seconds: float) -> bool:
                return next(waits)

            dispatcher._wait_before_retry = wait_before_retry  # type: ignore[method-assign]
            await dispatcher.handle_message(make_message(body))
            if not consumer.publish.await_count:
                break
            body = consumer.publish.await_args.args[0]

        assert client.attempt.await_count == settings.max_retries
        outcome_logger.record.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_wait_returns_true_when_delay_elapses(self, settings) -> None:
        """_wait_before_retry should report a full wait."""
        dispatcher = make_dispatcher(settings, make_client())
        assert await dispatcher._wait_before_retry(0.001) is True

    @pytest.mark.asyncio
    async def test_wait_interrupted_by_shutdown(self, settings) -> None:
        """_wait_before_retry should return early when shutdown starts."""
        dispatcher = make_dispatcher(settings, make_client())

        waiter = asyncio.create_task(dispatcher._wait_before_retry(60))
        await asyncio.sleep(0)
        dispatcher.request_shutdown()

        assert await asyncio.wait_for(waiter, timeout=1) is False

    @pytest.mark.asyncio
    async def test_run_consumes_then_drains_and_closes(self, settings) -> None:
        """run should connect, consume, then stop, drain and close on shutdown."""
        client = make_client()
        outcome_logger = make_outcome_logger()
        dispatcher = make_dispatcher(settings, client, outcome_logger)
        consumer = AsyncMock()
        consumer.queue_name = "webhooks"

        runner = asyncio.create_task(dispatcher.run(consumer))
        await asyncio.sleep(0)
        dispatcher.request_shutdown()
        await asyncio.wait_for(runner, timeout=1)

        consumer.connect.assert_awaited_once()
        consumer.start.assert_awaited_once_with(dispatcher.on_message)
        consumer.stop.assert_awaited_once()
        consumer.close.assert_awaited_once()
        client.aclose.assert_awaited_once()
        outcome_logger.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_run_closes_clients_when_connect_fails(self, settings) -> None:
        """A broker connection failure should still close HTTP clients."""
        client = make_client()
        outcome_logger = make_outcome_logger()
        dispatcher = make_dispatcher(settings, client, outcome_logger)
        consumer = AsyncMock()
        consumer.connect.side_effect = ConnectionError("broker down")

        with pytest.raises(ConnectionError):
            await dispatcher.run(consumer)

        client.aclose.assert_awaited_once()
        consumer.close.assert_awaited_once()


class TestConcurrency:
    """Tests for concurrent message processing."""

    @pytest.mark.asyncio
    async def test_slow_delivery_does_not_block_others(
        self, settings, message_document
    ) -> None:
        """A slow delivery must not delay another message."""
        release = asyncio.Event()

        async def attempt(request):
            if request.job_id == "slow":
                await release.wait()
            return Delivered(200)

        client = AsyncMock()
        client.attempt = attempt
        dispatcher = make_dispatcher(settings, client)

        slow = make_message({**message_document, "job_id": "slow"})
        fast = make_message({**message_document, "job_id": "fast"})
        fast_acked = asyncio.Event()
        fast.ack = AsyncMock(side_effect=lambda: fast_acked.set())

        await dispatcher.on_message(slow)
        await dispatcher.on_message(fast)
        await asyncio.wait_for(fast_acked.wait(), timeout=1)

        slow.ack.assert_not_awaited()
        assert dispatcher.in_flight >= 1

        release.set()
        await dispatcher.drain()

        slow.ack.assert_awaited_once()
        assert dispatcher.in_flight == 0

    @pytest.mark.asyncio
    async def test_unexpected_error_requeues_once(self, settings, message_document) -> None:
        """An unexpected error should requeue a first delivery."""
        client = AsyncMock()
        client.attempt = AsyncMock(side_effect=RuntimeError("bug"))
        dispatcher = make_dispatcher(settings, client)
        message = make_message(message_document)

        await dispatcher.on_message(message)
        await dispatcher.drain()

        message.nack.assert_awaited_once_with(requeue=True)
        message.ack.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unexpected_error_on_redelivery_drops(self, settings, message_document) -> None:
        """An unexpected error on a redelivered message should drop it."""
        client = AsyncMock()
        client.attempt = AsyncMock(side_effect=RuntimeError("bug"))
        dispatcher = make_dispatcher(settings, client)
        message = make_message(message_document, redelivered=True)

        await dispatcher.on_message(message)
        await dispatcher.drain()

        message.reject.assert_awaited_once_with(requeue=False)
        message.nack.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_error_in_one_message_does_not_affect_another(
        self, settings, message_document
    ) -> None:
        """Failures are contained to the message that caused them."""

        async def attempt(request):
            if request.job_id == "broken":
                raise RuntimeError("bug")
            return Delivered(200)

        client = MagicMock()
        client.attempt = attempt
        dispatcher = make_dispatcher(settings, client)
        broken = make_message({**message_document, "job_id": "broken"})
        healthy = make_message({**message_document, "job_id": "healthy"})

        await dispatcher.on_message(broken)
        await dispatcher.on_message(healthy)
        await dispatcher.drain()

        broken.nack.assert_awaited_once_with(requeue=True)
        healthy.ack.assert_awaited_once()
