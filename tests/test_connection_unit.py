"""Unit tests for RabbitMQConnectionManager with aio_pika.connect_robust patched."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from aio_pika.exceptions import AMQPConnectionError

from shopx_messaging.config import MessagingSettings
from shopx_messaging.exceptions import MessagingConnectionError
from shopx_messaging.rabbitmq.connection import RabbitMQConnectionManager


def _mock_connection() -> MagicMock:
    channel = MagicMock()
    channel.is_closed = False
    channel.set_qos = AsyncMock()
    channel.close = AsyncMock()
    conn = MagicMock()
    conn.is_closed = False
    conn.channel = AsyncMock(return_value=channel)
    conn.close = AsyncMock()
    return conn


@pytest.mark.asyncio
async def test_ensure_channel_connects_once() -> None:
    conn = _mock_connection()
    with patch(
        "shopx_messaging.rabbitmq.connection.aio_pika.connect_robust",
        new=AsyncMock(return_value=conn),
    ) as connect:
        manager = RabbitMQConnectionManager("amqp://h/", prefetch_count=5)
        first = await manager.ensure_channel()
        second = await manager.ensure_channel()
    assert first is second
    connect.assert_awaited_once_with("amqp://h/")
    conn.channel.assert_awaited_once_with(publisher_confirms=True)
    first.set_qos.assert_awaited_once_with(prefetch_count=5)
    assert await manager.health_check() is True


@pytest.mark.asyncio
async def test_closed_channel_is_reopened() -> None:
    conn = _mock_connection()
    with patch(
        "shopx_messaging.rabbitmq.connection.aio_pika.connect_robust",
        new=AsyncMock(return_value=conn),
    ) as connect:
        manager = RabbitMQConnectionManager()
        channel = await manager.ensure_channel()
        channel.is_closed = True
        assert await manager.health_check() is False
        await manager.ensure_channel()
    connect.assert_awaited_once()
    assert conn.channel.await_count == 2


@pytest.mark.asyncio
async def test_connect_failure_is_wrapped() -> None:
    with patch(
        "shopx_messaging.rabbitmq.connection.aio_pika.connect_robust",
        new=AsyncMock(side_effect=AMQPConnectionError("refused")),
    ):
        manager = RabbitMQConnectionManager()
        with pytest.raises(MessagingConnectionError):
            await manager.ensure_channel()
    assert await manager.health_check() is False


@pytest.mark.asyncio
async def test_close_closes_channel_then_connection() -> None:
    conn = _mock_connection()
    order: list[str] = []
    with patch(
        "shopx_messaging.rabbitmq.connection.aio_pika.connect_robust",
        new=AsyncMock(return_value=conn),
    ):
        manager = RabbitMQConnectionManager()
        channel = await manager.ensure_channel()
    channel.close.side_effect = lambda: order.append("channel")
    conn.close.side_effect = lambda: order.append("connection")
    await manager.close()
    assert order == ["channel", "connection"]
    with pytest.raises(MessagingConnectionError):
        _ = manager.channel


def test_from_settings_passes_connection_name() -> None:
    settings = MessagingSettings(url="amqp://x/", connection_name="order-service")
    manager = RabbitMQConnectionManager.from_settings(settings)
    assert manager._url == "amqp://x/"
    assert manager._connect_kwargs == {
        "client_properties": {"connection_name": "order-service"}
    }
