"""Tests for MessageEnvelope."""

from __future__ import annotations

from types import SimpleNamespace

import aio_pika
import pytest
from pydantic import ValidationError

from shopx_messaging.envelope import ATTEMPT_HEADER, MessageEnvelope, MessageKind


def _raw(**overrides: object) -> SimpleNamespace:
    fields: dict[str, object] = {
        "headers": {},
        "message_id": "m-1",
        "correlation_id": None,
        "reply_to": None,
        "delivery_mode": aio_pika.DeliveryMode.PERSISTENT,
        "exchange": "order.request",
        "routing_key": "order.confirmation",
        "redelivered": False,
    }
    fields.update(overrides)
    return SimpleNamespace(**fields)


def test_defaults() -> None:
    e = MessageEnvelope(payload={"a": 1})
    assert e.message_id
    assert e.attempt == 1
    assert e.persistent is True
    assert e.kind is MessageKind.EVENT


def test_kind_from_properties() -> None:
    assert MessageEnvelope(correlation_id="c", reply_to="q").kind is MessageKind.REQUEST
    assert MessageEnvelope(correlation_id="c").kind is MessageKind.REPLY
    assert MessageEnvelope(correlation_id="c", reply_to="q").expects_reply


def test_reply_to_without_correlation_rejected() -> None:
    with pytest.raises(ValidationError, match="reply_to requires correlation_id"):
        MessageEnvelope(reply_to="amq.gen-1")


def test_frozen() -> None:
    e = MessageEnvelope()
    with pytest.raises(ValidationError):
        e.attempt = 2  # type: ignore[misc]


def test_from_incoming_reads_properties() -> None:
    raw = _raw(
        headers={ATTEMPT_HEADER: 3, "x-trace": "t"},
        correlation_id="c-1",
        reply_to="amq.gen-7",
        redelivered=True,
    )
    e = MessageEnvelope.from_incoming(raw, {"productIds": ["p1"]})
    assert e.payload == {"productIds": ["p1"]}
    assert e.message_id == "m-1"
    assert e.attempt == 3
    assert e.headers["x-trace"] == "t"
    assert e.kind is MessageKind.REQUEST
    assert e.persistent is True
    assert e.redelivered is True
    assert e.exchange == "order.request"
    assert e.routing_key == "order.confirmation"


def test_from_incoming_bad_attempt_header_defaults_to_one() -> None:
    e = MessageEnvelope.from_incoming(_raw(headers={ATTEMPT_HEADER: "x"}), None)
    assert e.attempt == 1


def test_from_incoming_missing_message_id_generates_one() -> None:
    e = MessageEnvelope.from_incoming(
        _raw(message_id=None, delivery_mode=aio_pika.DeliveryMode.NOT_PERSISTENT), None
    )
    assert e.message_id
    assert e.persistent is False
