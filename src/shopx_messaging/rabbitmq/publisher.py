"""Fire-and-forget publication with persistent delivery."""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING, Any

import aio_pika
from aio_pika.exceptions import AMQPError

from ..exceptions import MessagingConnectionError, MessagingError
from ..serialization import JsonSerializer
from ..topology import TopicDescriptor, TopologyBuilder

if TYPE_CHECKING:
    from aio_pika.abc import AbstractExchange

    from ..envelope import MessageEnvelope
    from ..ports import BrokerConnection

logger = logging.getLogger(__name__)


class EventPublisher:
    """Publishes payloads to a topic's exchange (or straight to a queue).

    Publishing means "handed to the broker", never "processed by the
    destination". The topic's exchange is asserted before the first publish;
    pass ``ensure_queue=True`` to also assert and bind the topic's queue so
    nothing is dropped before the consumer comes up.
    """

    def __init__(
        self,
        connection: BrokerConnection,
        topology: TopologyBuilder | None = None,
        *,
        serializer: JsonSerializer | None = None,
    ) -> None:
        self._connection = connection
        self._topology = topology or TopologyBuilder(connection)
        self._serializer = serializer or JsonSerializer()

    @property
    def topology(self) -> TopologyBuilder:
        return self._topology

    def build_message(
        self,
        message: Any,
        *,
        correlation_id: str | None = None,
        reply_to: str | None = None,
        headers: dict[str, Any] | None = None,
        message_id: str | None = None,
        persistent: bool = True,
    ) -> aio_pika.Message:
        """Encode *message* into an AMQP message with the protocol's properties."""
        return aio_pika.Message(
            body=self._serializer.encode(message),
            content_type=self._serializer.content_type,
            delivery_mode=(
                aio_pika.DeliveryMode.PERSISTENT
                if persistent
                else aio_pika.DeliveryMode.NOT_PERSISTENT
            ),
            correlation_id=correlation_id,
            reply_to=reply_to,
            message_id=message_id or str(uuid.uuid4()),
            headers=headers or {},
        )

    async def publish(
        self,
        topic: TopicDescriptor,
        message: Any,
        *,
        ensure_queue: bool = False,
        **kwargs: Any,
    ) -> str:
        """Publish *message* to *topic*; returns the message id.

        Keyword arguments (``correlation_id``, ``reply_to``, ``headers``,
        ``message_id``, ``persistent``) become AMQP message properties.
        """
        declared = await self._topology.declare(topic, with_queue=ensure_queue)
        amqp_message = self.build_message(message, **kwargs)
        await self.publish_raw(
            declared.exchange, amqp_message, topic.publish_routing_key
        )
        logger.debug(
            "Published %s to %s (routing key %r)",
            amqp_message.message_id,
            topic.exchange or "<default>",
            topic.publish_routing_key,
        )
        return str(amqp_message.message_id)

    async def send_to_queue(
        self,
        queue: str,
        message: Any,
        *,
        declare: bool = True,
        **kwargs: Any,
    ) -> str:
        """Publish to *queue* through the default exchange."""
        if declare:
            await self._topology.declare_queue(queue, durable=True)
        channel = await self._connection.ensure_channel()
        amqp_message = self.build_message(message, **kwargs)
        await self.publish_raw(channel.default_exchange, amqp_message, queue)
        return str(amqp_message.message_id)

    async def reply(self, request: MessageEnvelope, message: Any) -> None:
        """Answer *request* on its ``reply_to`` queue with its correlation id."""
        if not request.expects_reply:
            raise MessagingError(
                f"Message {request.message_id} carries no reply_to/correlation_id"
            )
        await self.send_to_queue(
            request.reply_to,  # type: ignore[arg-type]
            message,
            declare=False,
            correlation_id=request.correlation_id,
            persistent=True,
        )
        logger.debug(
            "Replied to %s with correlation id %s",
            request.reply_to,
            request.correlation_id,
        )

    async def publish_raw(
        self,
        exchange: AbstractExchange,
        message: aio_pika.Message,
        routing_key: str,
    ) -> None:
        try:
            await exchange.publish(message, routing_key=routing_key)
        except (AMQPError, ConnectionError) as e:
            logger.error(
                "Failed to publish to %s (routing key %r): %s",
                exchange.name or "<default>",
                routing_key,
                e,
            )
            raise MessagingConnectionError(str(e)) from e

    async def health_check(self) -> bool:
        """Return True if the connection is healthy."""
        return await self._connection.health_check()
