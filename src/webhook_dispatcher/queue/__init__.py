"""Message queue integration."""

from .consumer import MessageHandler, QueueConsumer

__all__ = ["MessageHandler", "QueueConsumer"]
