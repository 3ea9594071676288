"""Deduplicate redeliveries by message id."""

from __future__ import annotations

from collections import OrderedDict
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .ports import ICacheService

PROCESSED_MARKER = "1"


class IdempotencyFilter:
    """Remembers which message ids a consumer has already handled.

    A redelivered message whose id is known is acked without running the
    handler again. Ids live in an async cache when one is given, so every
    replica of a service shares them and they expire after ``ttl_seconds``.
    Without a cache the filter keeps the latest ``max_entries`` ids of this
    process only.
    """

    def __init__(
        self,
        cache: ICacheService | None = None,
        *,
        key_prefix: str = "shopx:processed:",
        ttl_seconds: int = 24 * 60 * 60,
        max_entries: int = 10_000,
    ) -> None:
        self._cache = cache
        self._key_prefix = key_prefix
        self._ttl_seconds = ttl_seconds
        self._max_entries = max_entries
        self._recent: OrderedDict[str, None] = OrderedDict()

    def __len__(self) -> int:
        return len(self._recent)

    async def is_duplicate(self, message_id: str) -> bool:
        if self._cache is None:
            return message_id in self._recent
        return await self._cache.get(self._key_prefix + message_id) is not None

    async def mark_processed(self, message_id: str) -> None:
        if self._cache is not None:
            await self._cache.set(
                self._key_prefix + message_id, PROCESSED_MARKER, ttl=self._ttl_seconds
            )
            return
        self._recent.pop(message_id, None)
        self._recent[message_id] = None
        if len(self._recent) > self._max_entries:
            self._recent.popitem(last=False)

    def clear(self) -> None:
        """Forget the ids held in memory; cached ids are left to expire."""
        self._recent.clear()
