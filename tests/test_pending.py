"""Tests for PendingRequestTable."""

from __future__ import annotations

import pytest

from shopx_messaging.exceptions import MessagingError, RequestCancelledError
from shopx_messaging.pending import PendingRequestTable


@pytest.mark.asyncio
async def test_register_and_resolve_removes_entry() -> None:
    table = PendingRequestTable()
    entry = table.register("c1", "amq.gen-1")
    assert "c1" in table
    assert table.get("c1") is entry
    assert entry.reply_queue == "amq.gen-1"
    assert entry.age >= 0
    assert table.resolve("c1", {"ok": True}) is True
    assert await entry.future == {"ok": True}
    assert "c1" not in table
    assert len(table) == 0


@pytest.mark.asyncio
async def test_resolve_unknown_returns_false() -> None:
    assert PendingRequestTable().resolve("nope", 1) is False


@pytest.mark.asyncio
async def test_duplicate_correlation_id_rejected() -> None:
    table = PendingRequestTable()
    table.register("c1", "q")
    with pytest.raises(MessagingError, match="already pending"):
        table.register("c1", "q")


@pytest.mark.asyncio
async def test_bounded() -> None:
    table = PendingRequestTable(max_size=2)
    table.register("c1", "q1")
    table.register("c2", "q2")
    with pytest.raises(MessagingError, match="Too many pending"):
        table.register("c3", "q3")
    table.discard("c1")
    table.register("c3", "q3")
    assert len(table) == 2


@pytest.mark.asyncio
async def test_reject_sets_exception() -> None:
    table = PendingRequestTable()
    entry = table.register("c1", "q")
    assert table.reject("c1", ValueError("bad reply")) is True
    with pytest.raises(ValueError, match="bad reply"):
        await entry.future
    assert table.reject("c1", ValueError("again")) is False


@pytest.mark.asyncio
async def test_reject_all() -> None:
    table = PendingRequestTable()
    entries = [table.register(f"c{i}", "q") for i in range(3)]
    assert table.reject_all(RequestCancelledError("closing")) == 3
    assert len(table) == 0
    for entry in entries:
        assert isinstance(entry.future.exception(), RequestCancelledError)


@pytest.mark.asyncio
async def test_discard_leaves_future_untouched() -> None:
    table = PendingRequestTable()
    entry = table.register("c1", "q")
    assert table.discard("c1") is entry
    assert not entry.future.done()
    assert table.discard("c1") is None
