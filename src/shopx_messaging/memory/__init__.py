"""In-memory broker for tests."""

from __future__ import annotations

from .broker import (
    InMemoryBroker,
    InMemoryChannel,
    InMemoryExchange,
    InMemoryIncomingMessage,
    InMemoryQueue,
)
from .connection import InMemoryConnection

__all__ = [
    "InMemoryBroker",
    "InMemoryChannel",
    "InMemoryConnection",
    "InMemoryExchange",
    "InMemoryIncomingMessage",
    "InMemoryQueue",
]
