"""Awaitable request/reply over exclusive reply queues."""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import TYPE_CHECKING, Any

from aio_pika.exceptions import AMQPError
from pydantic import TypeAdapter, ValidationError

from ..exceptions import (
    MessagingSerializationError,
    RequestCancelledError,
    RequestTimeoutError,
)
from ..pending import PendingRequestTable
from ..serialization import JsonSerializer
from ..topology import TopicDescriptor, TopologyBuilder
from .publisher import EventPublisher

if TYPE_CHECKING:
    from aio_pika.abc import AbstractIncomingMessage, AbstractQueue

    from ..config import MessagingSettings
    from ..ports import BrokerConnection

logger = logging.getLogger(__name__)

_UNSET: Any = object()


class RequestReplyClient:
    """Turns a publish on a request queue plus a consume on a reply queue into a call.

    Each call declares its own exclusive, broker-named reply queue and a fresh
    correlation id, so concurrent calls never see each other's replies. A reply
    whose correlation id does not match is left unacknowledged and ignored.
    """

    def __init__(
        self,
        connection: BrokerConnection,
        topology: TopologyBuilder | None = None,
        *,
        publisher: EventPublisher | None = None,
        serializer: JsonSerializer | None = None,
        timeout: float | None = 30.0,
        reply_message_ttl_ms: int | None = 30000,
        max_pending: int = 1024,
    ) -> None:
        """Configure the client.

        Args:
            connection: Shared connection manager.
            topology: Shared topology builder; created if omitted.
            publisher: Publisher used for the request; created if omitted.
            serializer: Reply decoder; default JsonSerializer().
            timeout: Default seconds to wait for a reply (None waits forever).
            reply_message_ttl_ms: x-message-ttl on reply queues (None disables).
            max_pending: Bound on concurrently outstanding requests.
        """
        self._connection = connection
        self._topology = topology or TopologyBuilder(connection)
        self._serializer = serializer or JsonSerializer()
        self._publisher = publisher or EventPublisher(
            connection, self._topology, serializer=self._serializer
        )
        self._timeout = timeout
        self._reply_ttl = reply_message_ttl_ms
        self._pending = PendingRequestTable(max_pending)
        self._closed = False

    @classmethod
    def from_settings(
        cls,
        connection: BrokerConnection,
        settings: MessagingSettings,
        **kwargs: Any,
    ) -> RequestReplyClient:
        return cls(
            connection,
            timeout=settings.request_timeout,
            reply_message_ttl_ms=settings.reply_message_ttl_ms,
            max_pending=settings.max_pending_requests,
            **kwargs,
        )

    @property
    def pending(self) -> PendingRequestTable:
        return self._pending

    async def request(
        self,
        topic: TopicDescriptor,
        payload: Any,
        *,
        timeout: float | None = _UNSET,
        response_model: Any = None,
        message_ttl_ms: int | None = _UNSET,
    ) -> Any:
        """Publish *payload* to *topic* and wait for the matching reply.

        Raises:
            RequestTimeoutError: no reply within *timeout* seconds.
            MessagingSerializationError: the reply is not valid JSON or does
                not validate against *response_model*.
            RequestCancelledError: the client was closed while waiting.
        """
        if self._closed:
            raise RequestCancelledError("Request/reply client is closed")
        timeout = self._timeout if timeout is _UNSET else timeout
        ttl = self._reply_ttl if message_ttl_ms is _UNSET else message_ttl_ms

        reply_queue = await self._topology.declare_reply_queue(message_ttl_ms=ttl)
        correlation_id = str(uuid.uuid4())
        try:
            entry = self._pending.register(correlation_id, reply_queue.name)
        except Exception:
            await self._cleanup(reply_queue, None)
            raise

        try:
            entry.consumer_tag = await reply_queue.consume(
                lambda raw: self._on_reply(correlation_id, raw),
                no_ack=False,
            )
            await self._publisher.publish(
                topic,
                payload,
                ensure_queue=True,
                correlation_id=correlation_id,
                reply_to=reply_queue.name,
                persistent=True,
            )
            logger.debug(
                "Sent request %s to %s (reply queue %s)",
                correlation_id,
                topic.queue or topic.exchange,
                reply_queue.name,
            )
            try:
                reply = await asyncio.wait_for(entry.future, timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    "Request %s to %s timed out after %ss",
                    correlation_id,
                    topic.name,
                    timeout,
                )
                raise RequestTimeoutError(correlation_id, timeout or 0.0) from None
        finally:
            self._pending.discard(correlation_id)
            await self._cleanup(reply_queue, entry.consumer_tag)

        if response_model is None:
            return reply
        try:
            return TypeAdapter(response_model).validate_python(reply)
        except ValidationError as e:
            raise MessagingSerializationError(
                f"Reply to {topic.name} does not match expected shape: {e}"
            ) from e

    async def _on_reply(
        self, correlation_id: str, raw: AbstractIncomingMessage
    ) -> None:
        if raw.correlation_id != correlation_id:
            logger.debug(
                "Ignoring reply with correlation id %s (expected %s)",
                raw.correlation_id,
                correlation_id,
            )
            return
        try:
            payload = self._serializer.decode(raw.body)
        except MessagingSerializationError as e:
            logger.error("Error parsing reply %s: %s", correlation_id, e)
            await self._ack(raw)
            self._pending.reject(correlation_id, e)
            return
        await self._ack(raw)
        if not self._pending.resolve(correlation_id, payload):
            logger.debug("Late reply for %s discarded", correlation_id)

    async def _ack(self, raw: AbstractIncomingMessage) -> None:
        try:
            await raw.ack()
        except (AMQPError, ConnectionError) as e:
            logger.warning("Failed to ack reply %s: %s", raw.correlation_id, e)

    async def _cleanup(self, queue: AbstractQueue, consumer_tag: str | None) -> None:
        """Cancel the reply consumer and delete the exclusive queue."""
        try:
            if consumer_tag is not None:
                await queue.cancel(consumer_tag)
            await queue.delete(if_unused=False, if_empty=False)
        except (AMQPError, ConnectionError) as e:
            logger.debug("Reply queue %s cleanup failed: %s", queue.name, e)

    async def close(self) -> None:
        """Fail outstanding requests; further calls raise RequestCancelledError."""
        self._closed = True
        count = self._pending.reject_all(
            RequestCancelledError("Request/reply client closed")
        )
        if count:
            logger.warning("Cancelled %d pending request(s) on close", count)
