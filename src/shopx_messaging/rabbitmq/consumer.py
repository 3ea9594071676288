"""Per-queue consumers with ack/nack, bounded redelivery and dead-lettering."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

import aio_pika
from aio_pika.exceptions import AMQPError
from pydantic import ValidationError

from ..envelope import ATTEMPT_HEADER, MessageEnvelope
from ..exceptions import DeadLetterError, MessagingError, MessagingSerializationError
from ..retry import RetryPolicy
from ..serialization import JsonSerializer
from ..topology import TopicDescriptor, TopologyBuilder
from .publisher import EventPublisher

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from aio_pika.abc import AbstractIncomingMessage, AbstractQueue

    from ..dead_letter import DeadLetterRouter
    from ..idempotency import IdempotencyFilter
    from ..ports import BrokerConnection

logger = logging.getLogger(__name__)


class ConsumerState(str, Enum):
    UNBOUND = "unbound"
    DECLARED = "declared"
    CONSUMING = "consuming"


@dataclass
class Subscription:
    """A handler attached to one queue."""

    topic: TopicDescriptor
    handler: Callable[..., Awaitable[Any]]
    with_envelope: bool = False
    state: ConsumerState = ConsumerState.UNBOUND
    queue: AbstractQueue | None = None
    consumer_tag: str | None = None

    @property
    def queue_name(self) -> str:
        return self.topic.queue or ""


class EventConsumer:
    """Consumes workflow queues and dispatches decoded payloads to handlers.

    Per message: decode JSON, run the handler, ack on success. On failure the
    message is redelivered with its ``x-delivery-attempt`` header incremented
    until the retry policy gives up; then it is dead-lettered (or rejected when
    no dead-letter router is configured). A body that cannot be decoded is
    never retried. With an unbounded policy failures are ``nack(requeue=True)``.
    """

    def __init__(
        self,
        connection: BrokerConnection,
        topology: TopologyBuilder | None = None,
        *,
        publisher: EventPublisher | None = None,
        serializer: JsonSerializer | None = None,
        retry_policy: RetryPolicy | None = None,
        dead_letter: DeadLetterRouter | None = None,
        idempotency: IdempotencyFilter | None = None,
    ) -> None:
        """Configure consumer.

        Args:
            connection: Shared connection manager.
            topology: Shared topology builder; created if omitted.
            publisher: Used for replies and redelivery; created if omitted.
            serializer: For decoding bodies; default JsonSerializer().
            retry_policy: Redelivery limit and backoff; default RetryPolicy().
            dead_letter: If set, used when retries are exhausted.
            idempotency: If set, already-processed message ids are acked
                without running the handler.
        """
        self._connection = connection
        self._topology = topology or TopologyBuilder(connection)
        self._serializer = serializer or JsonSerializer()
        self._publisher = publisher or EventPublisher(
            connection, self._topology, serializer=self._serializer
        )
        self._retry_policy = retry_policy or RetryPolicy()
        self._dead_letter = dead_letter
        self._idempotency = idempotency
        self._subscriptions: dict[str, Subscription] = {}

    def state(self, queue_name: str) -> ConsumerState:
        sub = self._subscriptions.get(queue_name)
        return sub.state if sub is not None else ConsumerState.UNBOUND

    @property
    def subscriptions(self) -> list[Subscription]:
        return list(self._subscriptions.values())

    async def subscribe(
        self,
        topic: TopicDescriptor,
        handler: Callable[..., Awaitable[Any]],
        *,
        with_envelope: bool = False,
    ) -> Subscription:
        """Declare the topic's queue (and exchange/binding) and start consuming.

        ``handler(payload)`` is awaited per message, or
        ``handler(payload, envelope)`` when ``with_envelope`` is True.
        """
        if not topic.queue:
            raise ValueError(f"Topic {topic.name!r} has no queue to consume from")
        existing = self._subscriptions.get(topic.queue)
        if existing is not None and existing.state is ConsumerState.CONSUMING:
            raise MessagingError(f"Queue {topic.queue!r} already has a consumer")

        sub = Subscription(topic=topic, handler=handler, with_envelope=with_envelope)
        self._subscriptions[topic.queue] = sub

        declared = await self._topology.declare(topic)
        sub.queue = declared.queue
        sub.state = ConsumerState.DECLARED
        if self._dead_letter is not None:
            await self._dead_letter.prepare(topic.queue)

        async def on_message(raw: AbstractIncomingMessage) -> None:
            await self._on_message(sub, raw)

        sub.consumer_tag = await sub.queue.consume(on_message, no_ack=False)  # type: ignore[union-attr]
        sub.state = ConsumerState.CONSUMING
        logger.info(
            "Consuming %s (exchange %s, routing key %r)",
            topic.queue,
            topic.exchange or "<default>",
            topic.routing_key,
        )
        return sub

    async def serve(
        self,
        topic: TopicDescriptor,
        handler: Callable[[Any], Awaitable[Any]],
    ) -> Subscription:
        """Answer requests on *topic*: the handler's return value is the reply."""

        async def respond(payload: Any, envelope: MessageEnvelope) -> None:
            result = await handler(payload)
            if not envelope.expects_reply:
                logger.warning(
                    "Request %s on %s has no reply_to; dropping reply",
                    envelope.message_id,
                    topic.queue,
                )
                return
            await self._publisher.reply(envelope, result)

        return await self.subscribe(topic, respond, with_envelope=True)

    async def stop(self) -> None:
        """Cancel every consumer; queues and bindings stay on the broker."""
        for sub in self._subscriptions.values():
            if sub.state is not ConsumerState.CONSUMING:
                continue
            try:
                await sub.queue.cancel(sub.consumer_tag)  # type: ignore[union-attr,arg-type]
            except (AMQPError, ConnectionError) as e:
                logger.warning("Failed to cancel consumer on %s: %s", sub.queue_name, e)
            sub.state = ConsumerState.DECLARED
            sub.consumer_tag = None

    async def health_check(self) -> bool:
        """Return True if the connection is healthy."""
        return await self._connection.health_check()

    # ── per-message pipeline ──────────────────────────────────────────

    async def _on_message(
        self, sub: Subscription, raw: AbstractIncomingMessage
    ) -> None:
        try:
            await self._process(sub, raw)
        except Exception:  # noqa: BLE001
            # Settling the message failed (channel gone); the broker requeues
            # unacked deliveries when the channel closes.
            logger.exception("Failed to settle message on %s", sub.queue_name)

    async def _process(self, sub: Subscription, raw: AbstractIncomingMessage) -> None:
        try:
            payload = self._serializer.decode(raw.body)
            envelope = MessageEnvelope.from_incoming(raw, payload)
        except (MessagingSerializationError, ValidationError) as e:
            logger.error("Undecodable message on %s: %s", sub.queue_name, e)
            envelope = _fallback_envelope(raw)
            await self._give_up(sub, raw, envelope, f"undecodable message: {e}", e)
            return

        try:
            duplicate = await self._is_duplicate(envelope)
        except Exception as e:  # noqa: BLE001
            logger.exception(
                "Idempotency check failed for message %s on %s",
                envelope.message_id,
                sub.queue_name,
            )
            await self._handle_failure(sub, raw, envelope, e)
            return
        if duplicate:
            logger.info(
                "Skipping duplicate message %s on %s",
                envelope.message_id,
                sub.queue_name,
            )
            await raw.ack()
            return

        try:
            if sub.with_envelope:
                await sub.handler(payload, envelope)
            else:
                await sub.handler(payload)
        except Exception as e:  # noqa: BLE001
            logger.exception(
                "Handler failed for message %s on %s (attempt %d)",
                envelope.message_id,
                sub.queue_name,
                envelope.attempt,
            )
            await self._handle_failure(sub, raw, envelope, e)
            return

        if self._idempotency is not None:
            try:
                await self._idempotency.mark_processed(envelope.message_id)
            except Exception:  # noqa: BLE001
                # The handler already ran; a retry would run it again.
                logger.exception(
                    "Could not record message %s as processed", envelope.message_id
                )
        await raw.ack()

    async def _is_duplicate(self, envelope: MessageEnvelope) -> bool:
        if self._idempotency is None:
            return False
        return await self._idempotency.is_duplicate(envelope.message_id)


    async def _handle_failure(
        self,
        sub: Subscription,
        raw: AbstractIncomingMessage,
        envelope: MessageEnvelope,
        error: Exception,
    ) -> None:
        policy = self._retry_policy
        if not policy.bounded:
            await raw.nack(requeue=True)
            return
        if policy.should_retry(envelope.attempt):
            await policy.wait_before_retry(envelope.attempt)
            await self._redeliver(sub, raw, envelope)
            return
        reason = str(error) or type(error).__name__
        await self._give_up(sub, raw, envelope, reason, error)

    async def _redeliver(
        self,
        sub: Subscription,
        raw: AbstractIncomingMessage,
        envelope: MessageEnvelope,
    ) -> None:
        """Put the message back on its queue with the attempt header bumped."""
        retry = aio_pika.Message(
            body=raw.body,
            content_type=raw.content_type,
            delivery_mode=raw.delivery_mode,
            correlation_id=raw.correlation_id,
            reply_to=raw.reply_to,
            message_id=envelope.message_id,
            headers={**envelope.headers, ATTEMPT_HEADER: envelope.attempt + 1},
        )
        try:
            channel = await self._connection.ensure_channel()
            await self._publisher.publish_raw(
                channel.default_exchange, retry, sub.queue_name
            )
        except MessagingError as e:
            logger.warning(
                "Could not republish %s for retry (%s); requeueing instead",
                envelope.message_id,
                e,
            )
            await raw.nack(requeue=True)
            return
        await raw.ack()
        logger.warning(
            "Redelivering message %s on %s (attempt %d/%s)",
            envelope.message_id,
            sub.queue_name,
            envelope.attempt + 1,
            self._retry_policy.max_attempts,
        )

    async def _give_up(
        self,
        sub: Subscription,
        raw: AbstractIncomingMessage,
        envelope: MessageEnvelope,
        reason: str,
        error: BaseException | None,
    ) -> None:
        if self._dead_letter is None:
            logger.error(
                "Rejecting message %s on %s without requeue: %s",
                envelope.message_id,
                sub.queue_name,
                reason,
            )
            await raw.reject(requeue=False)
            return
        try:
            await self._dead_letter.route(
                raw.body,
                envelope,
                source_queue=sub.queue_name,
                reason=reason,
                exception=error,
            )
        except DeadLetterError:
            logger.exception(
                "Dead-lettering failed; requeueing %s", envelope.message_id
            )
            await raw.nack(requeue=True)
            return
        await raw.ack()


def _fallback_envelope(raw: AbstractIncomingMessage) -> MessageEnvelope:
    """Envelope for a message whose body or properties could not be parsed."""
    headers = dict(raw.headers or {})
    try:
        attempt = max(1, int(headers.get(ATTEMPT_HEADER, 1)))
    except (TypeError, ValueError):
        attempt = 1
    return MessageEnvelope(
        payload=None,
        message_id=raw.message_id or MessageEnvelope().message_id,
        correlation_id=raw.correlation_id or None,
        headers=headers,
        attempt=attempt,
    )
