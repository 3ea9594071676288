"""In-process broker for tests: the channel surface the aio-pika adapters use.

Supports direct and fanout exchanges, the default exchange, durable and
exclusive queues, bindings, ack / nack(requeue) / reject, ``x-message-ttl``
and per-queue FIFO delivery. Each queue delivers one message at a time to its
consumers (round robin), so publish order is delivery order.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from aio_pika.exceptions import (
    ChannelInvalidStateError,
    ChannelNotFoundEntity,
    ChannelPreconditionFailed,
    MessageProcessError,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    import aio_pika

logger = logging.getLogger(__name__)

_tags = itertools.count(1)


@dataclass
class _Stored:
    message: aio_pika.Message
    exchange: str
    routing_key: str
    enqueued_at: float = field(default_factory=time.monotonic)
    redelivered: bool = False


class InMemoryIncomingMessage:
    """Delivered message with aio-pika's settle methods."""

    def __init__(
        self,
        queue: InMemoryQueue,
        consumer_tag: str,
        stored: _Stored,
    ) -> None:
        self._queue = queue
        self._stored = stored
        self.consumer_tag = consumer_tag
        self.delivery_tag = next(_tags)
        message = stored.message
        self.body: bytes = message.body
        self.headers: dict[str, Any] = dict(message.headers or {})
        self.content_type = message.content_type
        self.delivery_mode = message.delivery_mode
        self.correlation_id = message.correlation_id
        self.reply_to = message.reply_to
        self.message_id = message.message_id
        self.exchange = stored.exchange
        self.routing_key = stored.routing_key
        self.redelivered = stored.redelivered
        self.processed = False

    def _settle(self) -> None:
        if self.processed:
            raise MessageProcessError("Message already processed", self)  # type: ignore[arg-type]
        self.processed = True
        self._queue._unacked.pop(self.delivery_tag, None)

    async def ack(self, multiple: bool = False) -> None:  # noqa: ARG002
        self._settle()
        self._queue.broker.acked.append((self._queue.name, self.body))

    async def nack(self, multiple: bool = False, requeue: bool = True) -> None:  # noqa: ARG002
        self._settle()
        if requeue:
            self._queue.requeue(self._stored)
        else:
            self._queue.broker.dropped.append((self._queue.name, self.body))

    async def reject(self, requeue: bool = False) -> None:
        await self.nack(requeue=requeue)


class InMemoryExchange:
    def __init__(
        self,
        broker: InMemoryBroker,
        name: str,
        exchange_type: str,
        durable: bool,
    ) -> None:
        self.broker = broker
        self.name = name
        self.type = exchange_type
        self.durable = durable
        self.bindings: list[tuple[str, str]] = []

    async def publish(
        self,
        message: aio_pika.Message,
        routing_key: str,
        **kwargs: Any,  # noqa: ARG002
    ) -> None:
        self.broker._check_open()
        if self.name == "":
            targets = [routing_key] if routing_key in self.broker.queues else []
        elif self.type == "fanout":
            targets = [q for q, _ in self.bindings]
        else:
            targets = [q for q, key in self.bindings if key == routing_key]
        self.broker.published.append((self.name, routing_key, message))
        for queue_name in dict.fromkeys(targets):
            queue = self.broker.queues.get(queue_name)
            if queue is not None:
                queue.enqueue(_Stored(message, self.name, routing_key))


class InMemoryQueue:
    def __init__(
        self,
        broker: InMemoryBroker,
        name: str,
        *,
        durable: bool,
        exclusive: bool,
        auto_delete: bool,
        arguments: dict[str, Any] | None,
        owner: InMemoryChannel | None,
    ) -> None:
        self.broker = broker
        self.name = name
        self.durable = durable
        self.exclusive = exclusive
        self.auto_delete = auto_delete
        self.arguments = dict(arguments or {})
        self.owner = owner
        self._messages: deque[_Stored] = deque()
        self._consumers: dict[str, Callable[[Any], Awaitable[Any]]] = {}
        self._unacked: dict[int, tuple[str, _Stored]] = {}
        self._rr: deque[str] = deque()
        self._wakeup = asyncio.Event()
        self._pump_task: asyncio.Task[None] | None = None
        self._in_flight = 0
        self.deleted = False

    # ── broker-side state ─────────────────────────────────────────────

    @property
    def depth(self) -> int:
        return len(self._messages)

    @property
    def consumer_count(self) -> int:
        return len(self._consumers)

    @property
    def unacked_count(self) -> int:
        return len(self._unacked)

    @property
    def idle(self) -> bool:
        return self._in_flight == 0 and (not self._messages or not self._consumers)

    def peek(self) -> list[bytes]:
        return [s.message.body for s in self._messages]

    def enqueue(self, stored: _Stored) -> None:
        self._messages.append(stored)
        self._wakeup.set()

    def requeue(self, stored: _Stored) -> None:
        stored.redelivered = True
        self._messages.appendleft(stored)
        self._wakeup.set()

    def _expired(self, stored: _Stored) -> bool:
        ttl = self.arguments.get("x-message-ttl")
        if ttl is None:
            return False
        return (time.monotonic() - stored.enqueued_at) * 1000 > ttl

    # ── aio-pika queue surface ────────────────────────────────────────

    async def bind(self, exchange: Any, routing_key: str = "", **kwargs: Any) -> None:  # noqa: ARG002
        self.broker._check_open()
        target = self.broker.exchanges.get(exchange.name)
        if target is None:
            raise ChannelNotFoundEntity(f"no exchange {exchange.name!r}")
        if (self.name, routing_key) not in target.bindings:
            target.bindings.append((self.name, routing_key))

    async def consume(
        self,
        callback: Callable[[Any], Awaitable[Any]],
        no_ack: bool = False,  # noqa: ARG002
        **kwargs: Any,  # noqa: ARG002
    ) -> str:
        self.broker._check_open()
        tag = f"ctag-{next(_tags)}"
        self._consumers[tag] = callback
        self._rr.append(tag)
        if self._pump_task is None or self._pump_task.done():
            self._pump_task = asyncio.get_running_loop().create_task(self._pump())
        self._wakeup.set()
        return tag

    async def cancel(self, consumer_tag: str, **kwargs: Any) -> None:  # noqa: ARG002
        self._consumers.pop(consumer_tag, None)
        if consumer_tag in self._rr:
            self._rr.remove(consumer_tag)
        for tag, (owner_tag, stored) in list(self._unacked.items()):
            if owner_tag == consumer_tag:
                del self._unacked[tag]
                self.requeue(stored)
        if self.auto_delete and not self._consumers:
            self.broker._remove_queue(self.name)

    async def delete(
        self,
        if_unused: bool = True,  # noqa: ARG002
        if_empty: bool = True,  # noqa: ARG002
        **kwargs: Any,  # noqa: ARG002
    ) -> None:
        self.broker._remove_queue(self.name)

    # ── delivery ──────────────────────────────────────────────────────

    async def _pump(self) -> None:
        while not self.deleted:
            await self._wakeup.wait()
            self._wakeup.clear()
            while self._messages and self._consumers and not self.deleted:
                stored = self._messages.popleft()
                if self._expired(stored):
                    self.broker.dropped.append((self.name, stored.message.body))
                    continue
                tag = self._rr[0]
                self._rr.rotate(-1)
                delivery = InMemoryIncomingMessage(self, tag, stored)
                self._unacked[delivery.delivery_tag] = (tag, stored)
                self._in_flight += 1
                try:
                    await self._consumers[tag](delivery)
                except Exception:  # noqa: BLE001
                    logger.exception("Consumer %s on %s raised", tag, self.name)
                finally:
                    self._in_flight -= 1
                await asyncio.sleep(0)

    def _stop(self) -> None:
        self.deleted = True
        self._wakeup.set()
        if self._pump_task is not None and not self._pump_task.done():
            if self._pump_task is not asyncio.current_task():
                self._pump_task.cancel()


class InMemoryChannel:
    """One channel on the in-memory broker."""

    def __init__(self, broker: InMemoryBroker) -> None:
        self.broker = broker
        self.is_closed = False
        self.prefetch_count: int | None = None
        self.default_exchange = broker.exchanges[""]

    async def set_qos(self, prefetch_count: int = 0, **kwargs: Any) -> None:  # noqa: ARG002
        self.prefetch_count = prefetch_count

    async def declare_exchange(
        self,
        name: str,
        type: Any = "direct",  # noqa: A002
        *,
        durable: bool = False,
        **kwargs: Any,  # noqa: ARG002
    ) -> InMemoryExchange:
        self._check_open()
        exchange_type = str(getattr(type, "value", type))
        existing = self.broker.exchanges.get(name)
        if existing is not None:
            if (existing.type, existing.durable) != (exchange_type, durable):
                raise ChannelPreconditionFailed(
                    f"PRECONDITION_FAILED - inequivalent arg for exchange {name!r}"
                )
            return existing
        exchange = InMemoryExchange(self.broker, name, exchange_type, durable)
        self.broker.exchanges[name] = exchange
        return exchange

    async def declare_queue(
        self,
        name: str | None = None,
        *,
        durable: bool = False,
        exclusive: bool = False,
        auto_delete: bool = False,
        arguments: dict[str, Any] | None = None,
        **kwargs: Any,  # noqa: ARG002
    ) -> InMemoryQueue:
        self._check_open()
        if not name:
            name = f"amq.gen-{next(_tags)}"
        existing = self.broker.queues.get(name)
        if existing is not None:
            wanted = (durable, dict(arguments or {}))
            if (existing.durable, existing.arguments) != wanted:
                raise ChannelPreconditionFailed(
                    f"PRECONDITION_FAILED - inequivalent arg for queue {name!r}"
                )
            return existing
        queue = InMemoryQueue(
            self.broker,
            name,
            durable=durable,
            exclusive=exclusive,
            auto_delete=auto_delete,
            arguments=arguments,
            owner=self if exclusive else None,
        )
        self.broker.queues[name] = queue
        return queue

    def _check_open(self) -> None:
        if self.is_closed:
            raise ChannelInvalidStateError("channel closed")
        self.broker._check_open()

    async def close(self) -> None:
        self.is_closed = True
        for queue in list(self.broker.queues.values()):
            if queue.owner is self:
                self.broker._remove_queue(queue.name)
            else:
                # Deliveries left unacked by this channel go back to their queue.
                for tag, (_, stored) in list(queue._unacked.items()):
                    del queue._unacked[tag]
                    queue.requeue(stored)


class InMemoryBroker:
    """Shared broker state for every in-memory connection in a test."""

    def __init__(self) -> None:
        self.exchanges: dict[str, InMemoryExchange] = {
            "": InMemoryExchange(self, "", "direct", True)
        }
        self.queues: dict[str, InMemoryQueue] = {}
        self.published: list[tuple[str, str, aio_pika.Message]] = []
        self.acked: list[tuple[str, bytes]] = []
        self.dropped: list[tuple[str, bytes]] = []
        self.available = True

    def _check_open(self) -> None:
        if not self.available:
            raise ConnectionError("broker unavailable")

    def _remove_queue(self, name: str) -> None:
        queue = self.queues.pop(name, None)
        if queue is None:
            return
        for exchange in self.exchanges.values():
            exchange.bindings = [b for b in exchange.bindings if b[0] != name]
        queue._stop()

    def queue(self, name: str) -> InMemoryQueue:
        return self.queues[name]

    def bindings(self, exchange: str) -> list[tuple[str, str]]:
        return list(self.exchanges[exchange].bindings)

    def messages(self, queue: str) -> list[bytes]:
        """Bodies currently waiting on *queue* (not yet delivered)."""
        return self.queues[queue].peek()

    async def drain(self, timeout: float = 2.0) -> None:
        """Wait until no queue with a consumer has work in progress or waiting."""

        async def _settled() -> None:
            quiet = 0
            while quiet < 5:
                await asyncio.sleep(0)
                if all(q.idle for q in list(self.queues.values())):
                    quiet += 1
                else:
                    quiet = 0

        await asyncio.wait_for(_settled(), timeout)

    async def close(self) -> None:
        for name in list(self.queues):
            self._remove_queue(name)
