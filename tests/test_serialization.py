"""Tests for JsonSerializer."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from shopx_messaging.exceptions import MessagingSerializationError
from shopx_messaging.serialization import JsonSerializer
from shopx_messaging.workflows.schemas import (
    OrderItem,
    ProductDetailsRequest,
    SellerAck,
)


@pytest.fixture
def serializer() -> JsonSerializer:
    return JsonSerializer()


def test_models_use_camel_case_aliases(serializer: JsonSerializer) -> None:
    body = serializer.encode(ProductDetailsRequest(product_ids=["p1", "p2"]))
    assert body == b'{"productIds": ["p1", "p2"]}'


def test_list_of_models(serializer: JsonSerializer) -> None:
    body = serializer.encode([SellerAck(seller_id="s1", order_id="o1")])
    assert serializer.decode(body) == [{"sellerId": "s1", "orderId": "o1"}]


def test_nested_datetime_is_iso(serializer: JsonSerializer) -> None:
    when = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    decoded = serializer.decode(serializer.encode({"at": when}))
    assert decoded["at"] == "2024-05-01T12:00:00+00:00"


def test_bytes_pass_through(serializer: JsonSerializer) -> None:
    assert serializer.encode(b'{"raw": true}') == b'{"raw": true}'


def test_decode_to_model(serializer: JsonSerializer) -> None:
    payload = serializer.decode(
        b'{"productId": "p1", "quantity": 2, "productPrice": 5.5, "sellerId": "s1"}'
    )
    item = OrderItem.model_validate(payload)
    assert item.total_price == 11.0


def test_decode_invalid_json_raises(serializer: JsonSerializer) -> None:
    with pytest.raises(MessagingSerializationError):
        serializer.decode(b"not json")
    with pytest.raises(MessagingSerializationError):
        serializer.decode(b"\xff\xfe")


def test_encode_unserializable_raises(serializer: JsonSerializer) -> None:
    with pytest.raises(MessagingSerializationError):
        serializer.encode({"x": object()})


def test_content_type(serializer: JsonSerializer) -> None:
    assert serializer.content_type == "application/json"
