"""Exchange/queue topology: the fixed routing table and an idempotent builder."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from aio_pika.exceptions import AMQPError, ChannelPreconditionFailed

from .exceptions import MessagingConnectionError, TopologyError

if TYPE_CHECKING:
    from aio_pika.abc import AbstractChannel, AbstractExchange, AbstractQueue

    from .ports import BrokerConnection

logger = logging.getLogger(__name__)


def _broker_error(action: str, error: BaseException) -> MessagingConnectionError:
    logger.error("Failed to %s: %s", action, error)
    return MessagingConnectionError(f"Failed to {action}: {error}")


class ExchangeType(str, Enum):
    DIRECT = "direct"
    FANOUT = "fanout"


@dataclass(frozen=True)
class TopicDescriptor:
    """Where a workflow's messages go.

    ``exchange=None`` means the broker's default exchange: the message is
    routed straight to ``queue`` by name.
    """

    name: str
    queue: str | None = None
    exchange: str | None = None
    exchange_type: ExchangeType = ExchangeType.DIRECT
    routing_key: str = ""
    durable: bool = True

    def __post_init__(self) -> None:
        if self.exchange is None and not self.queue:
            raise ValueError(f"Topic {self.name!r} needs an exchange or a queue")
        if self.exchange_type is ExchangeType.FANOUT and self.routing_key:
            raise ValueError(f"Fanout topic {self.name!r} must not set a routing key")

    @property
    def publish_routing_key(self) -> str:
        """Routing key used when publishing to this topic."""
        if self.exchange is None:
            return self.queue or ""
        return self.routing_key


class Topics:
    """The wire contract shared by every service."""

    OTP_BROADCAST = TopicDescriptor(
        name="otp-broadcast",
        exchange="user.request",
        exchange_type=ExchangeType.FANOUT,
        queue="user_request_queue",
    )
    PAYMENT_CONFIRMATION_MAIL = TopicDescriptor(
        name="payment-confirmation-mail",
        exchange="payment.request",
        queue="payment_mail_queue",
        routing_key="payment_confirmation",
    )
    ORDER_CONFIRMATION_MAIL = TopicDescriptor(
        name="order-confirmation-mail",
        exchange="order.request",
        queue="order_confirmation_queue",
        routing_key="order.confirmation",
    )
    LOW_STOCK_NOTICE = TopicDescriptor(
        name="low-stock-notice",
        exchange="product.request",
        queue="product_queue",
        routing_key="product_quantity_less",
    )
    USER_DETAILS_RPC = TopicDescriptor(
        name="user-details-rpc",
        queue="user.details.request",
    )
    PRODUCT_DETAILS_RPC = TopicDescriptor(
        name="product-details-rpc",
        queue="product_request_queue",
    )
    PAYMENT_STATUS = TopicDescriptor(
        name="payment-status",
        exchange="payment_exchange",
        queue="payment_order_queue",
        routing_key="payment_status",
    )
    PAYMENT_INITIATION = TopicDescriptor(
        name="payment-initiation",
        queue="order_request_queue",
    )
    SELLER_ACK = TopicDescriptor(
        name="seller-ack",
        queue="seller_request_queue",
    )

    @classmethod
    def all(cls) -> list[TopicDescriptor]:
        return [v for v in vars(cls).values() if isinstance(v, TopicDescriptor)]


@dataclass(frozen=True)
class DeclaredTopic:
    """Broker objects resolved for a topic."""

    exchange: AbstractExchange
    queue: AbstractQueue | None


class TopologyBuilder:
    """Declares exchanges, queues and bindings once per channel.

    Redeclaring with identical parameters returns the cached object without a
    broker round trip; conflicting parameters raise :class:`TopologyError`
    before the broker is asked (the broker would close the channel).
    """

    def __init__(self, connection: BrokerConnection) -> None:
        self._connection = connection
        self._channel: AbstractChannel | None = None
        self._exchanges: dict[str, tuple[tuple[Any, ...], AbstractExchange]] = {}
        self._queues: dict[str, tuple[tuple[Any, ...], AbstractQueue]] = {}
        self._bindings: set[tuple[str, str, str]] = set()

    async def _current_channel(self) -> AbstractChannel:
        channel = await self._connection.ensure_channel()
        if channel is not self._channel:
            # New channel after reconnect: cached broker objects are stale.
            self.reset()
            self._channel = channel
        return channel

    def reset(self) -> None:
        """Forget everything declared so far."""
        self._exchanges.clear()
        self._queues.clear()
        self._bindings.clear()
        self._channel = None

    async def declare_exchange(
        self,
        name: str,
        exchange_type: ExchangeType = ExchangeType.DIRECT,
        *,
        durable: bool = True,
    ) -> AbstractExchange:
        channel = await self._current_channel()
        params = (ExchangeType(exchange_type).value, durable)
        cached = self._exchanges.get(name)
        if cached is not None:
            if cached[0] != params:
                raise TopologyError(
                    f"Exchange {name!r} already declared as {cached[0]}, "
                    f"cannot redeclare as {params}"
                )
            return cached[1]
        try:
            exchange = await channel.declare_exchange(
                name, params[0], durable=durable
            )
        except ChannelPreconditionFailed as e:
            raise TopologyError(f"Exchange {name!r}: {e}") from e
        except (AMQPError, ConnectionError) as e:
            raise _broker_error(f"declare exchange {name!r}", e) from e
        self._exchanges[name] = (params, exchange)
        logger.debug("Declared exchange %s (%s, durable=%s)", name, *params)
        return exchange

    async def declare_queue(
        self,
        name: str,
        *,
        durable: bool = True,
        arguments: dict[str, Any] | None = None,
    ) -> AbstractQueue:
        channel = await self._current_channel()
        params = (durable, tuple(sorted((arguments or {}).items())))
        cached = self._queues.get(name)
        if cached is not None:
            if cached[0] != params:
                raise TopologyError(
                    f"Queue {name!r} already declared with different parameters"
                )
            return cached[1]
        try:
            queue = await channel.declare_queue(
                name, durable=durable, arguments=arguments or None
            )
        except ChannelPreconditionFailed as e:
            raise TopologyError(f"Queue {name!r}: {e}") from e
        except (AMQPError, ConnectionError) as e:
            raise _broker_error(f"declare queue {name!r}", e) from e
        self._queues[name] = (params, queue)
        logger.debug("Declared queue %s (durable=%s)", name, durable)
        return queue

    async def bind(
        self,
        queue: AbstractQueue,
        exchange: AbstractExchange,
        routing_key: str = "",
    ) -> None:
        key = (queue.name, exchange.name, routing_key)
        if key in self._bindings:
            return
        try:
            await queue.bind(exchange, routing_key=routing_key)
        except (AMQPError, ConnectionError) as e:
            raise _broker_error(f"bind {queue.name!r} to {exchange.name!r}", e) from e
        self._bindings.add(key)
        logger.debug(
            "Bound queue %s to %s with key %r", queue.name, exchange.name, routing_key
        )

    async def declare(
        self, topic: TopicDescriptor, *, with_queue: bool = True
    ) -> DeclaredTopic:
        """Assert the topic's exchange and (optionally) its queue and binding."""
        channel = await self._current_channel()
        queue = None
        if with_queue and topic.queue:
            queue = await self.declare_queue(topic.queue, durable=topic.durable)
        if topic.exchange is None:
            return DeclaredTopic(exchange=channel.default_exchange, queue=queue)
        exchange = await self.declare_exchange(
            topic.exchange, topic.exchange_type, durable=topic.durable
        )
        if queue is not None:
            await self.bind(queue, exchange, topic.routing_key)
        return DeclaredTopic(exchange=exchange, queue=queue)

    async def declare_reply_queue(
        self, *, message_ttl_ms: int | None = None
    ) -> AbstractQueue:
        """Exclusive, broker-named queue for one request. Never cached."""
        channel = await self._current_channel()
        arguments = (
            {"x-message-ttl": message_ttl_ms} if message_ttl_ms is not None else None
        )
        try:
            return await channel.declare_queue(
                None, exclusive=True, auto_delete=True, arguments=arguments
            )
        except (AMQPError, ConnectionError) as e:
            raise _broker_error("declare reply queue", e) from e

    async def declare_dead_letter(
        self, dead_letter_exchange: str, source_queue: str
    ) -> AbstractExchange:
        """Declare ``<source_queue>.dlq`` bound to the DLX under the source name."""
        exchange = await self.declare_exchange(
            dead_letter_exchange, ExchangeType.DIRECT, durable=True
        )
        dlq = await self.declare_queue(f"{source_queue}.dlq", durable=True)
        await self.bind(dlq, exchange, source_queue)
        return exchange
