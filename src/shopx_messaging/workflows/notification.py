"""Notification-side workflow: order, payment, low-stock and OTP events to mail/SMS."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from ..exceptions import WorkflowError
from ..retry import RetryPolicy
from ..topology import Topics
from .schemas import (
    LowStockNotificationData,
    MailOptions,
    OrderCancellationData,
    OrderConfirmationData,
    OrderRequest,
    OrderType,
    OTPRequest,
    PaymentMailRequest,
    PaymentType,
    SMSContext,
    UserDetails,
    UserDetailsRequest,
)

if TYPE_CHECKING:
    from ..ports import NotificationDispatch
    from ..rabbitmq import EventConsumer, RequestReplyClient
    from ..rabbitmq.consumer import Subscription

logger = logging.getLogger(__name__)

OTP_EXPIRY_MINUTES = 5
SERVICE_NAME = "ShopXIndia"
SUPPORT_CONTACT = "support@shopxindia.com"
SUPPORT_LINK = "https://shopxindia.com/support"


def _current_year() -> int:
    return datetime.now(timezone.utc).year


class NotificationMailer:
    """Composes the mails and SMS each event turns into and hands them to dispatch."""

    def __init__(
        self,
        dispatch: NotificationDispatch,
        *,
        sms_retry: RetryPolicy | None = None,
        year: Callable[[], int] = _current_year,
    ) -> None:
        self._dispatch = dispatch
        self._sms_retry = sms_retry or RetryPolicy(max_attempts=3, base_delay=0.0)
        self._year = year

    async def send_order_confirmation_mail(
        self, confirm: OrderConfirmationData, user: UserDetails
    ) -> MailOptions:
        address = user.default_address()
        shipping = (
            f"{address.street}, {address.city} {address.country} {address.postal_code}"
            if address is not None
            else ""
        )
        options = MailOptions(
            to=user.email,
            subject=f"Order #{confirm.order_id} Placed Successfully !",
            template="orderconfirmation",
            context={
                "userName": user.full_name,
                "orderId": confirm.order_id,
                "orderDate": _jsonable(confirm.order_date),
                "shippingAddress": shipping,
                "orderItems": [
                    item.model_dump(mode="json", by_alias=True)
                    for item in confirm.order_items
                ],
                "totalAmount": confirm.total_amount,
                "orderLink": confirm.order_link,
                "year": self._year(),
            },
        )
        await self._dispatch.send_mail(options)
        return options

    async def send_order_cancellation_mail(
        self, cancel: OrderCancellationData, user: UserDetails
    ) -> MailOptions:
        options = MailOptions(
            to=user.email,
            subject=f"Order #{cancel.order_id} Cancelled !",
            template="ordercancellation",
            context={
                "userName": user.full_name,
                "orderId": cancel.order_id,
                "reason": cancel.reason,
                "supportLink": cancel.support_link,
                "year": self._year(),
            },
        )
        await self._dispatch.send_mail(options)
        return options

    async def send_payment_confirmation_mail(
        self, request: PaymentMailRequest, user: UserDetails
    ) -> MailOptions:
        options = MailOptions(
            to=user.email,
            subject="Payment Success",
            template="paymentconfirmation",
            context={
                "userName": user.full_name,
                "orderId": request.order_id,
                "amount": request.amount,
                "receiptLink": request.receipt_link,
                "year": self._year(),
            },
        )
        await self._dispatch.send_mail(options)
        return options

    async def send_payment_cancellation_mail(
        self, request: PaymentMailRequest, user: UserDetails
    ) -> MailOptions:
        options = MailOptions(
            to=user.email,
            subject="Payment Unsuccessfull",
            template="paymentcancellation",
            context={
                "userName": user.full_name,
                "orderId": request.order_id,
                "amount": request.amount,
                "retryPaymentLink": request.retry_payment_link,
                "supportLink": request.support_link,
                "year": self._year(),
            },
        )
        await self._dispatch.send_mail(options)
        return options

    async def send_low_stock_mail(self, data: LowStockNotificationData) -> MailOptions:
        options = MailOptions(
            to=data.email,
            subject="Low Product Warning !",
            template="selleracknowledgement",
            context={
                "sellerName": data.seller_name,
                "lowStockProducts": [
                    p.model_dump(mode="json", by_alias=True)
                    for p in data.low_stock_products
                ],
                "inventoryDashboardLink": data.inventory_dashboard_link,
                "year": self._year(),
            },
        )
        await self._dispatch.send_mail(options)
        return options

    async def send_otp(self, request: OTPRequest) -> None:
        """Mail the email OTP, then text the SMS OTP (retried)."""
        await self._dispatch.send_mail(
            MailOptions(
                to=request.email,
                subject="Email Verification !",
                template="userotp",
                context={
                    "userName": f"{request.first_name} {request.last_name}",
                    "otp": request.email_otp,
                    "otpExpiry": OTP_EXPIRY_MINUTES,
                    "supportLink": SUPPORT_LINK,
                    "year": self._year(),
                },
            )
        )
        await self._send_sms_with_retry(
            SMSContext(
                phone_number=request.phone_no,
                otp=str(request.sms_otp),
                service_name=SERVICE_NAME,
                validity_period=OTP_EXPIRY_MINUTES,
                support_contact=SUPPORT_CONTACT,
            )
        )

    async def _send_sms_with_retry(self, context: SMSContext) -> None:
        attempt = 1
        while True:
            try:
                await self._dispatch.send_sms(context)
                return
            except Exception as e:
                if not self._sms_retry.should_retry(attempt):
                    raise
                logger.warning(
                    "SMS to %s failed (attempt %d): %s",
                    context.phone_number,
                    attempt,
                    e,
                )
                await self._sms_retry.wait_before_retry(attempt)
                attempt += 1


def _jsonable(value: Any) -> Any:
    return value.isoformat() if isinstance(value, datetime) else value


class NotificationWorkflow:
    """Consumes the four notification topics and sends the matching mail.

    Order and payment events only carry a user id; the recipient is looked up
    over the user-details request/reply topic before composing the mail.
    """

    def __init__(
        self,
        mailer: NotificationMailer,
        *,
        rpc: RequestReplyClient,
        user_timeout: float | None = None,
    ) -> None:
        self._mailer = mailer
        self._rpc = rpc
        self._user_timeout = user_timeout

    async def start(self, consumer: EventConsumer) -> list[Subscription]:
        return [
            await consumer.subscribe(Topics.OTP_BROADCAST, self.on_otp_request),
            await consumer.subscribe(
                Topics.PAYMENT_CONFIRMATION_MAIL, self.on_payment_mail
            ),
            await consumer.subscribe(
                Topics.ORDER_CONFIRMATION_MAIL, self.on_order_mail
            ),
            await consumer.subscribe(Topics.LOW_STOCK_NOTICE, self.on_low_stock),
        ]

    async def request_user_details(self, user_id: str) -> UserDetails:
        kwargs = {} if self._user_timeout is None else {"timeout": self._user_timeout}
        user = await self._rpc.request(
            Topics.USER_DETAILS_RPC,
            UserDetailsRequest(user_id=user_id),
            response_model=UserDetails | None,
            **kwargs,
        )
        if user is None:
            raise WorkflowError(f"User {user_id!r} not found")
        return user

    async def on_otp_request(self, payload: object) -> None:
        request = OTPRequest.model_validate(payload)
        logger.info("Sending OTP notification to user %s", request.user_id)
        await self._mailer.send_otp(request)

    async def on_payment_mail(self, payload: object) -> None:
        request = PaymentMailRequest.model_validate(payload)
        user = await self.request_user_details(request.user_id)
        if request.type is PaymentType.CANCELLATION:
            await self._mailer.send_payment_cancellation_mail(request, user)
        else:
            await self._mailer.send_payment_confirmation_mail(request, user)

    async def on_order_mail(self, payload: object) -> None:
        request = OrderRequest.model_validate(payload)
        user = await self.request_user_details(request.user_id)
        if request.type is OrderType.CANCELLATION:
            await self._mailer.send_order_cancellation_mail(
                request.cancellation_data, user  # type: ignore[arg-type]
            )
        else:
            await self._mailer.send_order_confirmation_mail(
                request.confirmation_data, user  # type: ignore[arg-type]
            )

    async def on_low_stock(self, payload: object) -> None:
        data = LowStockNotificationData.model_validate(payload)
        logger.info("Sending low stock notification to seller %s", data.seller_name)
        await self._mailer.send_low_stock_mail(data)
