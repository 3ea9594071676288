"""PaymentWorkflow and OneTimeCodeStore."""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

import pytest

from shopx_messaging import ServiceMessaging
from shopx_messaging.exceptions import (
    InvalidPaymentCodeError,
    MessagingConnectionError,
)
from shopx_messaging.memory import InMemoryBroker
from shopx_messaging.topology import Topics
from shopx_messaging.workflows import OneTimeCodeStore, PaymentWorkflow
from shopx_messaging.workflows.schemas import PaymentInitiation, PaymentStatus


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_codes_are_six_digits_and_single_use() -> None:
    store = OneTimeCodeStore()
    code = store.issue("o1")
    assert len(code) == 6 and code.isdigit()
    store.consume("o1", code)
    with pytest.raises(InvalidPaymentCodeError, match="already used"):
        store.consume("o1", code)


def test_code_is_bound_to_its_order() -> None:
    store = OneTimeCodeStore()
    code = store.issue("o1")
    with pytest.raises(InvalidPaymentCodeError):
        store.consume("o2", code)
    store.consume("o1", code)


def test_code_expires_after_fifty_minutes() -> None:
    clock = _Clock()
    store = OneTimeCodeStore(clock=clock)
    fresh = store.issue("o1")
    stale = store.issue("o2")
    clock.now += 49 * 60
    store.consume("o1", fresh)
    clock.now += 2 * 60
    with pytest.raises(InvalidPaymentCodeError, match="expired"):
        store.consume("o2", stale)
    assert len(store) == 0


def test_reissuing_replaces_the_earlier_code() -> None:
    store = OneTimeCodeStore()
    first = store.issue("o1")
    second = store.issue("o1")
    assert len(store) == 1
    if first != second:
        with pytest.raises(InvalidPaymentCodeError, match="not found"):
            store.consume("o1", first)
    store.consume("o1", second)


def test_purge_expired() -> None:
    clock = _Clock()
    store = OneTimeCodeStore(ttl=10, clock=clock)
    store.issue("o1")
    clock.now += 11
    store.issue("o2")
    assert len(store) == 1
    assert store.purge_expired() == 0


def _bodies(broker: InMemoryBroker, queue: str) -> list[Any]:
    return [json.loads(b) for b in broker.messages(queue)]


@pytest.fixture
def workflow(
    make_service: Callable[..., ServiceMessaging], payments: Any
) -> PaymentWorkflow:
    return PaymentWorkflow(payments, publisher=make_service().publisher)


@pytest.mark.asyncio
async def test_initiate_creates_payment_and_reports_pending(
    broker: InMemoryBroker, workflow: PaymentWorkflow, payments: Any
) -> None:
    record = await workflow.initiate(
        PaymentInitiation(order_id="o1", user_id="u1", total_amount=25.0)
    )
    assert record.payment_id == "pay-o1"
    assert len(payments.codes["o1"]) == 6
    assert _bodies(broker, "payment_order_queue") == [
        {
            "type": "PENDING",
            "data": {
                "paymentId": "pay-o1",
                "orderId": "o1",
                "paymentStatus": "PENDING",
            },
        }
    ]


@pytest.mark.asyncio
async def test_valid_code_settles_payment(
    broker: InMemoryBroker, workflow: PaymentWorkflow, payments: Any
) -> None:
    await workflow.initiate(
        PaymentInitiation(order_id="o1", user_id="u1", total_amount=25.0)
    )
    result = await workflow.validate_code("o1", payments.codes["o1"])

    assert result.status is PaymentStatus.SUCCESS
    assert payments.completed == [("pay-o1", "o1")]
    statuses = [m["type"] for m in _bodies(broker, "payment_order_queue")]
    assert statuses == ["PENDING", "SUCCESS"]
    [mail] = _bodies(broker, "payment_mail_queue")
    assert mail["type"] == "CONFIRMATION"
    assert mail["userId"] == "u1"
    assert mail["amount"] == 25.0


@pytest.mark.asyncio
async def test_wrong_code_fails_without_publishing(
    broker: InMemoryBroker, workflow: PaymentWorkflow, payments: Any
) -> None:
    await workflow.initiate(
        PaymentInitiation(order_id="o1", user_id="u1", total_amount=1.0)
    )
    wrong = "000000" if payments.codes["o1"] != "000000" else "000001"
    result = await workflow.validate_code("o1", wrong)

    assert result.status is PaymentStatus.FAILED
    assert result.message == "Code not found or already used"
    assert payments.completed == []
    assert len(broker.messages("payment_order_queue")) == 1


@pytest.mark.asyncio
async def test_unknown_order_raises(workflow: PaymentWorkflow) -> None:
    with pytest.raises(InvalidPaymentCodeError):
        await workflow.validate_code("nope", "123456")


@pytest.mark.asyncio
async def test_completion_failure_reports_failed_and_reraises(
    broker: InMemoryBroker, workflow: PaymentWorkflow, payments: Any
) -> None:
    await workflow.initiate(
        PaymentInitiation(order_id="o1", user_id="u1", total_amount=1.0)
    )
    payments.fail_completion = True

    with pytest.raises(RuntimeError, match="unavailable"):
        await workflow.validate_code("o1", payments.codes["o1"])

    statuses = [m["type"] for m in _bodies(broker, "payment_order_queue")]
    assert statuses == ["PENDING", "FAILED"]
    [mail] = _bodies(broker, "payment_mail_queue")
    assert mail["type"] == "CANCELLATION"


@pytest.mark.asyncio
async def test_initiation_is_consumed_from_order_request_queue(
    broker: InMemoryBroker, make_service: Callable[..., ServiceMessaging], payments: Any
) -> None:
    payment_svc, order_svc = make_service(), make_service()
    await PaymentWorkflow(payments, publisher=payment_svc.publisher).start(
        payment_svc.consumer
    )
    await order_svc.publisher.publish(
        Topics.PAYMENT_INITIATION,
        PaymentInitiation(order_id="o7", user_id="u1", total_amount=3.0),
        ensure_queue=True,
    )
    await broker.drain()

    assert "o7" in payments.records
    assert broker.queue("order_request_queue").depth == 0


@pytest.mark.asyncio
async def test_repeated_initiation_reuses_the_payment(
    broker: InMemoryBroker, workflow: PaymentWorkflow, payments: Any
) -> None:
    request = PaymentInitiation(order_id="o1", user_id="u1", total_amount=5.0)
    first = await workflow.initiate(request)
    code = payments.codes["o1"]
    second = await workflow.initiate(request)

    assert second == first
    assert payments.codes["o1"] == code
    assert len(workflow.codes) == 1
    statuses = [m["type"] for m in _bodies(broker, "payment_order_queue")]
    assert statuses == ["PENDING", "PENDING"]
    result = await workflow.validate_code("o1", code)
    assert result.status is PaymentStatus.SUCCESS


@pytest.mark.asyncio
async def test_redelivered_initiation_after_failed_status_publish(
    broker: InMemoryBroker,
    make_service: Callable[..., ServiceMessaging],
    payments: Any,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    payment_svc, order_svc = make_service(), make_service()
    workflow = PaymentWorkflow(payments, publisher=payment_svc.publisher)
    await workflow.start(payment_svc.consumer)

    publish = payment_svc.publisher.publish
    failures = [MessagingConnectionError("channel closed")]

    async def publish_failing_once(topic: Any, message: Any, **kwargs: Any) -> str:
        if topic is Topics.PAYMENT_STATUS and failures:
            raise failures.pop()
        return await publish(topic, message, **kwargs)

    monkeypatch.setattr(payment_svc.publisher, "publish", publish_failing_once)

    await order_svc.publisher.publish(
        Topics.PAYMENT_INITIATION,
        PaymentInitiation(order_id="o8", user_id="u1", total_amount=3.0),
        ensure_queue=True,
    )
    await broker.drain()

    assert failures == []
    assert list(payments.records) == ["o8"]
    assert len(workflow.codes) == 1
    [status] = _bodies(broker, "payment_order_queue")
    assert status["type"] == "PENDING"
    assert status["data"]["paymentId"] == "pay-o8"
    result = await workflow.validate_code("o8", payments.codes["o8"])
    assert result.status is PaymentStatus.SUCCESS
