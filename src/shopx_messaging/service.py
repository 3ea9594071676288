"""Per-process messaging stack wired from settings."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .config import MessagingSettings
from .dead_letter import DeadLetterRouter
from .rabbitmq import (
    EventConsumer,
    EventPublisher,
    RabbitMQConnectionManager,
    RequestReplyClient,
)
from .retry import RetryPolicy
from .serialization import JsonSerializer
from .topology import TopologyBuilder

if TYPE_CHECKING:
    from .idempotency import IdempotencyFilter
    from .ports import BrokerConnection

logger = logging.getLogger(__name__)


class ServiceMessaging:
    """Owns the connection, topology, publisher, consumer and request/reply client.

    Every component shares the one connection/channel pair. ``close()`` tears
    down in dependency order: consumers stop, pending requests are failed,
    then the channel and connection close.
    """

    def __init__(
        self,
        connection: BrokerConnection,
        settings: MessagingSettings | None = None,
        *,
        idempotency: IdempotencyFilter | None = None,
    ) -> None:
        self.settings = settings or MessagingSettings()
        self.connection = connection
        self.serializer = JsonSerializer()
        self.topology = TopologyBuilder(connection)
        self.publisher = EventPublisher(
            connection, self.topology, serializer=self.serializer
        )
        self.dead_letter = (
            DeadLetterRouter(
                self.publisher, exchange_name=self.settings.dead_letter_exchange
            )
            if self.settings.dead_letter_enabled
            else None
        )
        self.consumer = EventConsumer(
            connection,
            self.topology,
            publisher=self.publisher,
            serializer=self.serializer,
            retry_policy=RetryPolicy.from_settings(self.settings),
            dead_letter=self.dead_letter,
            idempotency=idempotency,
        )
        self.rpc = RequestReplyClient.from_settings(
            connection,
            self.settings,
            topology=self.topology,
            publisher=self.publisher,
            serializer=self.serializer,
        )

    @classmethod
    def from_settings(
        cls,
        settings: MessagingSettings | None = None,
        **kwargs,
    ) -> ServiceMessaging:
        """Build the stack on a RabbitMQ connection configured by *settings*."""
        settings = settings or MessagingSettings()
        return cls(
            RabbitMQConnectionManager.from_settings(settings), settings, **kwargs
        )

    async def start(self) -> None:
        await self.connection.ensure_channel()
        logger.info("Messaging started")

    async def close(self) -> None:
        await self.consumer.stop()
        await self.rpc.close()
        await self.connection.close()
        logger.info("Messaging closed")

    async def health_check(self) -> bool:
        return await self.connection.health_check()

    async def __aenter__(self) -> ServiceMessaging:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
