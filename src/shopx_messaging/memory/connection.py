"""BrokerConnection over an InMemoryBroker."""

from __future__ import annotations

import logging

from ..exceptions import MessagingConnectionError
from .broker import InMemoryBroker, InMemoryChannel

logger = logging.getLogger(__name__)


class InMemoryConnection:
    """One service process's connection to a shared in-memory broker.

    Mirrors RabbitMQConnectionManager: the channel is opened lazily by
    ``ensure_channel()`` and ``close()`` drops the channel's exclusive queues.
    """

    def __init__(self, broker: InMemoryBroker | None = None) -> None:
        self.broker = broker or InMemoryBroker()
        self._channel: InMemoryChannel | None = None
        self.connect_count = 0

    async def ensure_channel(self) -> InMemoryChannel:
        if self._channel is not None and not self._channel.is_closed:
            return self._channel
        if not self.broker.available:
            logger.error("Failed to connect to in-memory broker: unavailable")
            raise MessagingConnectionError("broker unavailable")
        self._channel = InMemoryChannel(self.broker)
        self.connect_count += 1
        return self._channel

    async def connect(self) -> None:
        await self.ensure_channel()

    async def close(self) -> None:
        if self._channel is not None:
            await self._channel.close()
            self._channel = None

    async def health_check(self) -> bool:
        return (
            self.broker.available
            and self._channel is not None
            and not self._channel.is_closed
        )
