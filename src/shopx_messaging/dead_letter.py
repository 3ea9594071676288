"""Park messages that keep failing on ``<queue>.dlq``."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import aio_pika

from .exceptions import DeadLetterError, MessagingError

if TYPE_CHECKING:
    from collections.abc import Callable, Coroutine

    from .envelope import MessageEnvelope
    from .rabbitmq.publisher import EventPublisher

logger = logging.getLogger(__name__)


class DeadLetterRouter:
    """Routes messages that fail after max retries to a dead-letter exchange.

    The DLX is a durable direct exchange; each source queue gets a
    ``<queue>.dlq`` bound under the source queue's name. The original body is
    kept byte-for-byte and failure metadata travels in ``x-dlq-*`` headers.
    """

    def __init__(
        self,
        publisher: EventPublisher,
        *,
        exchange_name: str = "shopx.dlx",
        on_dead_letter: (
            Callable[
                [MessageEnvelope, str, BaseException | None], Coroutine[Any, Any, None]
            ]
            | None
        ) = None,
    ) -> None:
        """Configure dead-letter handling.

        Args:
            publisher: Publisher sharing the service's connection and topology.
            exchange_name: Name of the dead-letter exchange.
            on_dead_letter: Optional async callable (envelope, reason, exception)
                invoked after the message is parked, e.g. for alerting.
        """
        self._publisher = publisher
        self._exchange_name = exchange_name
        self._on_dead_letter = on_dead_letter

    @property
    def exchange_name(self) -> str:
        return self._exchange_name

    async def prepare(self, source_queue: str) -> None:
        """Declare the DLX and the source queue's DLQ ahead of the first failure."""
        await self._publisher.topology.declare_dead_letter(
            self._exchange_name, source_queue
        )

    async def route(
        self,
        body: bytes,
        envelope: MessageEnvelope,
        *,
        source_queue: str,
        reason: str,
        exception: BaseException | None = None,
    ) -> None:
        """Publish the failed message to the DLX, then run ``on_dead_letter``."""
        headers: dict[str, Any] = {
            **envelope.headers,
            "x-dlq-reason": reason[:1024],
            "x-dlq-error-type": type(exception).__name__ if exception else "",
            "x-dlq-attempts": envelope.attempt,
            "x-original-queue": source_queue,
            "x-dlq-timestamp": datetime.now(timezone.utc).isoformat(),
        }
        message = aio_pika.Message(
            body=body,
            content_type="application/json",
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            message_id=envelope.message_id,
            correlation_id=envelope.correlation_id,
            headers=headers,
        )
        try:
            exchange = await self._publisher.topology.declare_dead_letter(
                self._exchange_name, source_queue
            )
            await self._publisher.publish_raw(exchange, message, source_queue)
        except MessagingError as e:
            raise DeadLetterError(
                f"Could not dead-letter message from {source_queue}: {e}",
                message_id=envelope.message_id,
            ) from e
        logger.warning(
            "Message %s from %s dead-lettered after %d attempt(s): %s",
            envelope.message_id,
            source_queue,
            envelope.attempt,
            reason,
        )
        if self._on_dead_letter is not None:
            await self._on_dead_letter(envelope, reason, exception)
