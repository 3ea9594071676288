"""Redelivery limits and backoff for failing handlers."""

from __future__ import annotations

import asyncio
import random

from .config import MessagingSettings


class RetryPolicy:
    """How often a failing message is delivered again, and how long to wait first.

    Attempts are 1-based and count the first delivery. ``max_attempts=None``
    never gives up: the consumer then requeues failures indefinitely.

    Backoff doubles from ``base_delay`` per attempt up to ``max_delay``. With
    ``jitter`` the delay is scaled by a random factor in [0.5, 1.5].
    """

    def __init__(
        self,
        *,
        max_attempts: int | None = 5,
        base_delay: float = 0.0,
        max_delay: float = 30.0,
        jitter: bool = True,
    ) -> None:
        if max_attempts is not None and max_attempts < 1:
            raise ValueError("max_attempts must be >= 1 or None")
        if min(base_delay, max_delay) < 0:
            raise ValueError("base_delay and max_delay must be >= 0")
        if base_delay > max_delay:
            raise ValueError("base_delay must be <= max_delay")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter

    @classmethod
    def from_settings(cls, settings: MessagingSettings) -> RetryPolicy:
        return cls(
            max_attempts=settings.max_delivery_attempts,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
        )

    @property
    def bounded(self) -> bool:
        return self.max_attempts is not None

    def should_retry(self, attempt: int) -> bool:
        """Whether delivery *attempt* failing still leaves another one."""
        if attempt < 1:
            return False
        if self.max_attempts is None:
            return True
        return attempt < self.max_attempts

    def delay_for_attempt(self, attempt: int) -> float:
        if attempt < 1 or not self.base_delay:
            return 0.0
        delay = min(self.base_delay * 2 ** (attempt - 1), self.max_delay)
        if self.jitter:
            delay *= random.uniform(0.5, 1.5)  # noqa: S311
        return float(delay)

    async def wait_before_retry(self, attempt: int) -> None:
        delay = self.delay_for_attempt(attempt)
        if delay:
            await asyncio.sleep(delay)
