"""RabbitMQ consumer for webhook delivery requests.

Wraps an aio-pika robust connection: one channel with a QoS prefetch
limit, one durable queue, manual acknowledgment. Acking and rejecting is
done by the dispatcher on the delivered message itself.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

import aio_pika

from webhook_dispatcher.exceptions import QueueError
from webhook_dispatcher.logging import get_logger

if TYPE_CHECKING:
    from aio_pika.abc import (
        AbstractIncomingMessage,
        AbstractQueue,
        AbstractRobustChannel,
        AbstractRobustConnection,
    )

    from webhook_dispatcher.config import Settings

logger = get_logger(__name__)

MessageHandler = Callable[["AbstractIncomingMessage"], Awaitable[None]]


class QueueConsumer:
    """Consumes delivery requests from a durable queue.

    Example:
        ```python
        consumer = QueueConsumer.from_settings(settings)
        await consumer.connect()
        await consumer.start(dispatcher.on_message)
        ...
        await consumer.stop()
        await consumer.close()
        ```
    """

    def __init__(
        self,
        url: str,
        queue_name: str,
        prefetch_count: int,
        display_url: str | None = None,
    ) -> None:
        """Initialize the consumer.

        Args:
            url: AMQP connection URL.
            queue_name: Durable queue to consume from.
            prefetch_count: Maximum unacknowledged messages on the channel.
            display_url: URL to show in logs (password masked).
        """
        self._url = url
        self._display_url = display_url or url
        self.queue_name = queue_name
        self.prefetch_count = prefetch_count
        self._connection: AbstractRobustConnection | None = None
        self._channel: AbstractRobustChannel | None = None
        self._queue: AbstractQueue | None = None
        self._consumer_tag: str | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> QueueConsumer:
        """Create a consumer from settings."""
        return cls(
            url=settings.rabbitmq_url,
            queue_name=settings.queue_name,
            prefetch_count=settings.prefetch_count,
            display_url=settings.redacted_rabbitmq_url,
        )

    @property
    def is_connected(self) -> bool:
        return (
            self._connection is not None
            and not self._connection.is_closed
            and self._channel is not None
        )

    async def connect(self) -> None:
        """Open the connection, apply QoS and declare the queue."""
        logger.info("Connecting to RabbitMQ", url=self._display_url, queue=self.queue_name)

        self._connection = await aio_pika.connect_robust(self._url)
        self._channel = await self._connection.channel()
        await self._channel.set_qos(prefetch_count=self.prefetch_count)
        self._queue = await self._channel.declare_queue(self.queue_name, durable=True)

        logger.info(
            "Connected to RabbitMQ",
            queue=self.queue_name,
            prefetch_count=self.prefetch_count,
        )

    async def start(self, handler: MessageHandler) -> None:
        """Start delivering messages to ``handler``.

        Raises:
            QueueError: If called before connect().
        """
        if self._queue is None:
            raise QueueError("Queue consumer is not connected")
        self._consumer_tag = await self._queue.consume(handler, no_ack=False)
        logger.info("Consuming webhook requests", consumer_tag=self._consumer_tag)

    async def publish(self, body: bytes) -> None:
        """Publish a delivery request back onto the queue.

        Goes through the default exchange with the queue name as routing
        key, as a persistent message.

        Raises:
            QueueError: If called before connect().
        """
        if self._channel is None:
            raise QueueError("Queue consumer is not connected")
        await self._channel.default_exchange.publish(
            aio_pika.Message(
                body,
                content_type="application/json",
                delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            ),
            routing_key=self.queue_name,
        )

    async def stop(self) -> None:
        """Stop receiving new messages.

        Unacknowledged in-flight messages stay owned by this channel until
        they are acked or the channel closes.
        """
        if self._queue is None or self._consumer_tag is None:
            return
        await self._queue.cancel(self._consumer_tag)
        logger.info("Stopped consuming", consumer_tag=self._consumer_tag)
        self._consumer_tag = None

    async def close(self) -> None:
        """Close the channel and connection."""
        if self._channel is not None and not self._channel.is_closed:
            await self._channel.close()
        if self._connection is not None and not self._connection.is_closed:
            await self._connection.close()
        self._channel = None
        self._connection = None
        self._queue = None
        logger.info("RabbitMQ connection closed")
