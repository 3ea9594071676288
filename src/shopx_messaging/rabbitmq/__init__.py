"""RabbitMQ transport adapters built on aio-pika."""

from __future__ import annotations

from .connection import RabbitMQConnectionManager
from .consumer import ConsumerState, EventConsumer, Subscription
from .publisher import EventPublisher
from .rpc import RequestReplyClient

__all__ = [
    "ConsumerState",
    "EventConsumer",
    "EventPublisher",
    "RabbitMQConnectionManager",
    "RequestReplyClient",
    "Subscription",
]
