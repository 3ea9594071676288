"""Ports: the broker surface the adapters need, and the collaborators workflows call.

Persistence, mail/SMS delivery and product/user lookups live in the services
themselves; the messaging core only reaches them through these protocols.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from aio_pika.abc import AbstractChannel

    from .workflows.schemas import (
        MailOptions,
        NewOrder,
        OrderDetails,
        Payment,
        PaymentInitiation,
        PaymentRecord,
        Product,
        SellerAck,
        SMSContext,
        UserDetails,
    )


@runtime_checkable
class BrokerConnection(Protocol):
    """
    Owns the single connection/channel pair of a service process.

    ``ensure_channel`` connects lazily on first use and is a no-op afterwards.
    """

    async def ensure_channel(self) -> AbstractChannel: ...

    async def close(self) -> None: ...

    async def health_check(self) -> bool: ...


@runtime_checkable
class ICacheService(Protocol):
    """Minimal async key/value cache used for distributed idempotency."""

    async def get(self, key: str) -> Any | None: ...

    async def set(self, key: str, value: Any, ttl: int | None = None) -> None: ...


# ── Collaborators ─────────────────────────────────────────────────────


@runtime_checkable
class ProductLookup(Protocol):
    async def by_ids(self, product_ids: list[str]) -> list[Product]: ...


@runtime_checkable
class UserLookup(Protocol):
    async def by_id(self, user_id: str) -> UserDetails | None: ...


@runtime_checkable
class OrderPersistence(Protocol):
    """Order storage as seen from the order workflow."""

    async def create_order(self, order: NewOrder) -> OrderDetails: ...

    async def get_order(self, order_id: str) -> OrderDetails | None: ...

    async def update_payment_status(self, payment: Payment) -> None: ...


@runtime_checkable
class PaymentProcessor(Protocol):
    """Payment storage as seen from the payment workflow."""

    async def create_payment(
        self, request: PaymentInitiation, code: str
    ) -> PaymentRecord: ...

    async def get_payment_by_order(self, order_id: str) -> PaymentRecord | None: ...

    async def complete_payment(self, payment_id: str, order_id: str) -> None: ...


@runtime_checkable
class SellerOrders(Protocol):
    async def record_order(self, ack: SellerAck) -> None: ...


@runtime_checkable
class NotificationDispatch(Protocol):
    """Mail/SMS delivery; rendering and providers are the service's concern."""

    async def send_mail(self, options: MailOptions) -> None: ...

    async def send_sms(self, context: SMSContext) -> None: ...
