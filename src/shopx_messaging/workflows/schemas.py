"""Payload schemas exchanged between services.

Field names are snake_case in Python and camelCase on the wire, matching the
JSON the other services produce and expect.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Base for every payload: camelCase aliases, unknown fields tolerated."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class OrderType(str, Enum):
    CONFIRMATION = "CONFIRMATION"
    CANCELLATION = "CANCELLATION"


class PaymentType(str, Enum):
    CONFIRMATION = "CONFIRMATION"
    CANCELLATION = "CANCELLATION"


class PaymentStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"
    PENDING = "PENDING"

    @property
    def is_terminal(self) -> bool:
        return self is not PaymentStatus.PENDING


# ── Products ──────────────────────────────────────────────────────────


class ProductDetailsRequest(WireModel):
    product_ids: list[str] = Field(min_length=1)


class Product(WireModel):
    model_config = ConfigDict(extra="allow")

    product_id: str
    product_name: str = ""
    product_price: float = Field(ge=0)
    seller_id: str = ""
    stock: int = 0


class LowStockProduct(WireModel):
    product_name: str
    quantity: int


class LowStockNotificationData(WireModel):
    email: str
    seller_name: str
    low_stock_products: list[LowStockProduct]
    inventory_dashboard_link: str


# ── Orders ────────────────────────────────────────────────────────────


class OrderItemInput(WireModel):
    product_id: str
    quantity: int = Field(gt=0)


class CreateOrderInput(WireModel):
    user_id: str = Field(min_length=1)
    order_items: list[OrderItemInput] = Field(min_length=1)


class OrderItem(WireModel):
    product_id: str
    quantity: int
    product_price: float
    seller_id: str = ""

    @property
    def total_price(self) -> float:
        return self.quantity * self.product_price


class NewOrder(WireModel):
    """A priced order ready to persist with PENDING status."""

    user_id: str
    items: list[OrderItem]
    total_amount: float


class OrderDetails(WireModel):
    order_id: str
    user_id: str
    total_amount: float
    items: list[OrderItem] = Field(default_factory=list)
    payment_status: PaymentStatus = PaymentStatus.PENDING
    created_at: datetime | None = None


class OrderConfirmationData(WireModel):
    user_id: str
    order_id: str
    order_date: datetime | str | None = None
    order_items: list[OrderItem] = Field(default_factory=list)
    total_amount: float | str
    order_link: str


class OrderCancellationData(WireModel):
    user_id: str
    order_id: str
    reason: str
    support_link: str


class OrderRequest(WireModel):
    """Order mail request: confirmation or cancellation."""

    type: OrderType
    cancellation_data: OrderCancellationData | None = None
    confirmation_data: OrderConfirmationData | None = None

    @model_validator(mode="after")
    def _data_matches_type(self) -> OrderRequest:
        if self.type is OrderType.CONFIRMATION and self.confirmation_data is None:
            raise ValueError("CONFIRMATION requires confirmationData")
        if self.type is OrderType.CANCELLATION and self.cancellation_data is None:
            raise ValueError("CANCELLATION requires cancellationData")
        return self

    @property
    def user_id(self) -> str:
        data = (
            self.confirmation_data
            if self.type is OrderType.CONFIRMATION
            else self.cancellation_data
        )
        return data.user_id  # type: ignore[union-attr]


class SellerAck(WireModel):
    seller_id: str
    order_id: str


# ── Payments ──────────────────────────────────────────────────────────


class PaymentInitiation(WireModel):
    order_id: str
    user_id: str
    total_amount: float


class Payment(WireModel):
    payment_id: str
    order_id: str
    payment_status: PaymentStatus


class PaymentStatusMessage(WireModel):
    type: PaymentStatus
    data: Payment


class PaymentRecord(WireModel):
    payment_id: str
    order_id: str
    user_id: str
    amount: float
    status: PaymentStatus = PaymentStatus.PENDING


class PaymentValidationResult(WireModel):
    status: PaymentStatus
    message: str


class PaymentMailRequest(WireModel):
    type: PaymentType
    user_id: str
    order_id: str
    amount: float | str
    receipt_link: str | None = None
    retry_payment_link: str | None = None
    support_link: str | None = None


# ── Users ─────────────────────────────────────────────────────────────


class OTPRequest(WireModel):
    user_id: str
    first_name: str
    last_name: str
    email: str
    phone_no: str
    email_otp: int = Field(alias="emailOTP")
    sms_otp: int = Field(alias="smsOTP")


class UserDetailsRequest(WireModel):
    user_id: str


class Address(WireModel):
    id: str = ""
    user_id: str = ""
    street: str = ""
    city: str = ""
    state: str = ""
    country: str = ""
    postal_code: str = ""
    is_default: bool = False


class UserDetails(WireModel):
    user_id: str
    first_name: str
    last_name: str
    email: str
    phone_no: str = ""
    addresses: list[Address] = Field(default_factory=list)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def default_address(self) -> Address | None:
        for address in self.addresses:
            if address.is_default:
                return address
        return self.addresses[0] if self.addresses else None


# ── Notification delivery ─────────────────────────────────────────────


class MailOptions(WireModel):
    to: str
    subject: str
    template: str
    context: dict[str, Any] = Field(default_factory=dict)


class SMSContext(WireModel):
    phone_number: str
    otp: str | None = None
    service_name: str | None = None
    validity_period: int | None = None
    message: str | None = None
    support_contact: str | None = None
