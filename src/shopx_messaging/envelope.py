"""Immutable transport view of one broker message."""

from __future__ import annotations

import uuid
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

ATTEMPT_HEADER = "x-delivery-attempt"


class MessageKind(str, Enum):
    """What role a message plays in the protocol."""

    REQUEST = "request"
    REPLY = "reply"
    EVENT = "event"


class MessageEnvelope(BaseModel):
    """Decoded payload plus the AMQP properties the protocol relies on.

    A request carries both ``correlation_id`` and ``reply_to``; a reply carries
    only ``correlation_id``; an event carries neither.
    """

    model_config = ConfigDict(frozen=True)

    payload: Any = None
    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    correlation_id: str | None = None
    reply_to: str | None = None
    persistent: bool = True
    headers: dict[str, Any] = Field(default_factory=dict)
    attempt: int = Field(default=1, ge=1, description="Delivery attempt count")
    exchange: str = ""
    routing_key: str = ""
    redelivered: bool = False

    @model_validator(mode="after")
    def _reply_to_needs_correlation(self) -> MessageEnvelope:
        if self.reply_to and not self.correlation_id:
            raise ValueError("reply_to requires correlation_id")
        return self

    @property
    def kind(self) -> MessageKind:
        if self.reply_to:
            return MessageKind.REQUEST
        if self.correlation_id:
            return MessageKind.REPLY
        return MessageKind.EVENT

    @property
    def expects_reply(self) -> bool:
        return self.kind is MessageKind.REQUEST

    @classmethod
    def from_incoming(cls, raw: Any, payload: Any) -> MessageEnvelope:
        """Build an envelope from an aio-pika style incoming message."""
        headers = dict(raw.headers or {})
        try:
            attempt = max(1, int(headers.get(ATTEMPT_HEADER, 1)))
        except (TypeError, ValueError):
            attempt = 1
        return cls(
            payload=payload,
            message_id=raw.message_id or str(uuid.uuid4()),
            correlation_id=raw.correlation_id or None,
            reply_to=raw.reply_to or None,
            persistent=_is_persistent(raw.delivery_mode),
            headers=headers,
            attempt=attempt,
            exchange=raw.exchange or "",
            routing_key=raw.routing_key or "",
            redelivered=bool(raw.redelivered),
        )


def _is_persistent(delivery_mode: Any) -> bool:
    return int(getattr(delivery_mode, "value", delivery_mode) or 1) == 2
