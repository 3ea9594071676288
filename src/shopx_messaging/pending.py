"""Bounded map of outstanding requests keyed by correlation id."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any

from .exceptions import MessagingError


@dataclass
class PendingRequest:
    """One outstanding request waiting for its reply."""

    correlation_id: str
    reply_queue: str
    future: asyncio.Future[Any]
    created_at: float = field(default_factory=time.monotonic)
    consumer_tag: str | None = None

    @property
    def age(self) -> float:
        return time.monotonic() - self.created_at


class PendingRequestTable:
    """Correlation id -> pending continuation.

    Every entry leaves the table exactly once, through :meth:`resolve`,
    :meth:`reject` or :meth:`discard`, so a correlation id is never paired with
    a second reply. All access happens on the event loop; no locking needed.
    """

    def __init__(self, max_size: int = 1024) -> None:
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        self._max_size = max_size
        self._entries: dict[str, PendingRequest] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, correlation_id: object) -> bool:
        return correlation_id in self._entries

    @property
    def max_size(self) -> int:
        return self._max_size

    def register(self, correlation_id: str, reply_queue: str) -> PendingRequest:
        if correlation_id in self._entries:
            raise MessagingError(
                f"Correlation id {correlation_id!r} is already pending"
            )
        if len(self._entries) >= self._max_size:
            raise MessagingError(
                f"Too many pending requests ({self._max_size}); refusing new request"
            )
        entry = PendingRequest(
            correlation_id=correlation_id,
            reply_queue=reply_queue,
            future=asyncio.get_running_loop().create_future(),
        )
        self._entries[correlation_id] = entry
        return entry

    def get(self, correlation_id: str) -> PendingRequest | None:
        return self._entries.get(correlation_id)

    def resolve(self, correlation_id: str, value: Any) -> bool:
        """Complete the request with *value*. False if it is not pending."""
        entry = self._entries.pop(correlation_id, None)
        if entry is None or entry.future.done():
            return False
        entry.future.set_result(value)
        return True

    def reject(self, correlation_id: str, exc: BaseException) -> bool:
        """Fail the request with *exc*. False if it is not pending."""
        entry = self._entries.pop(correlation_id, None)
        if entry is None or entry.future.done():
            return False
        entry.future.set_exception(exc)
        return True

    def discard(self, correlation_id: str) -> PendingRequest | None:
        """Drop the entry without completing it (the caller already gave up)."""
        return self._entries.pop(correlation_id, None)

    def reject_all(self, exc: BaseException) -> int:
        """Fail every outstanding request; returns how many were pending."""
        count = 0
        for correlation_id in list(self._entries):
            if self.reject(correlation_id, exc):
                count += 1
        return count
