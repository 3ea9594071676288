"""Order-side workflow: order creation and payment status handling."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from ..exceptions import OrderNotFoundError, ProductNotFoundError
from ..topology import Topics
from .schemas import (
    CreateOrderInput,
    NewOrder,
    OrderCancellationData,
    OrderConfirmationData,
    OrderDetails,
    OrderItem,
    OrderRequest,
    OrderType,
    PaymentInitiation,
    PaymentStatus,
    PaymentStatusMessage,
    Product,
    ProductDetailsRequest,
    SellerAck,
)

if TYPE_CHECKING:
    from ..ports import OrderPersistence
    from ..rabbitmq import EventConsumer, EventPublisher, RequestReplyClient
    from ..rabbitmq.consumer import Subscription

logger = logging.getLogger(__name__)

ORDER_LINK = "http://shopxindia.shop/orders"
SUPPORT_LINK = "https://shopxindia.com/support"


class OrderWorkflow:
    """Creates orders and reacts to payment status events.

    Order creation resolves products over request/reply, persists the order
    as PENDING and asks the payment service to initiate payment. Payment
    status events update the order; SUCCESS also triggers the confirmation
    mail and the seller acknowledgements, FAILED a cancellation mail.

    A status for an unknown order raises OrderNotFoundError so the consumer
    redelivers it: the event may have overtaken the order's creation. A
    PENDING status never overwrites a terminal one. A repeated terminal status
    leaves the order alone but publishes its follow-up events again, so a
    redelivery finishes what a failed publish left undone.
    """

    def __init__(
        self,
        orders: OrderPersistence,
        *,
        publisher: EventPublisher,
        rpc: RequestReplyClient,
        product_timeout: float | None = None,
    ) -> None:
        self._orders = orders
        self._publisher = publisher
        self._rpc = rpc
        self._product_timeout = product_timeout

    async def start(self, consumer: EventConsumer) -> Subscription:
        return await consumer.subscribe(Topics.PAYMENT_STATUS, self.on_payment_status)

    async def fetch_products(self, product_ids: list[str]) -> list[Product]:
        kwargs = (
            {} if self._product_timeout is None else {"timeout": self._product_timeout}
        )
        return await self._rpc.request(
            Topics.PRODUCT_DETAILS_RPC,
            ProductDetailsRequest(product_ids=product_ids),
            response_model=list[Product],
            **kwargs,
        )

    async def create_order(self, data: CreateOrderInput) -> OrderDetails:
        """Price and persist a new order, then request payment for it.

        Raises:
            ProductNotFoundError: a requested product does not exist; nothing
                is persisted.
            RequestTimeoutError: the product service did not answer.
        """
        wanted = list(dict.fromkeys(item.product_id for item in data.order_items))
        products = {p.product_id: p for p in await self.fetch_products(wanted)}
        missing = [pid for pid in wanted if pid not in products]
        if missing:
            raise ProductNotFoundError(missing)

        items = [
            OrderItem(
                product_id=item.product_id,
                quantity=item.quantity,
                product_price=products[item.product_id].product_price,
                seller_id=products[item.product_id].seller_id,
            )
            for item in data.order_items
        ]
        new_order = NewOrder(
            user_id=data.user_id,
            items=items,
            total_amount=sum(item.total_price for item in items),
        )
        order = await self._orders.create_order(new_order)
        logger.info("Created order %s for user %s", order.order_id, order.user_id)

        await self._publisher.publish(
            Topics.PAYMENT_INITIATION,
            PaymentInitiation(
                order_id=order.order_id,
                user_id=order.user_id,
                total_amount=order.total_amount,
            ),
            ensure_queue=True,
        )
        return order

    async def on_payment_status(self, payload: object) -> None:
        message = PaymentStatusMessage.model_validate(payload)
        await self.handle_payment_status(message)

    async def handle_payment_status(self, message: PaymentStatusMessage) -> None:
        payment = message.data
        order = await self._orders.get_order(payment.order_id)
        if order is None:
            raise OrderNotFoundError(payment.order_id)

        current = order.payment_status
        if current.is_terminal and message.type is PaymentStatus.PENDING:
            logger.info(
                "Ignoring stale PENDING for order %s (already %s)",
                order.order_id,
                current.value,
            )
            return

        if current is message.type and current.is_terminal:
            # Redelivery after a failed follow-up publish: the status is
            # stored, the events below may not be.
            logger.info(
                "Order %s already %s; republishing follow-up events",
                order.order_id,
                current.value,
            )
        else:
            await self._orders.update_payment_status(payment)
            logger.info(
                "Order %s payment %s -> %s",
                order.order_id,
                current.value,
                message.type.value,
            )

        if message.type is PaymentStatus.SUCCESS:
            await self._request_confirmation_mail(order)
            await self._request_seller_ack(order)
        elif message.type is PaymentStatus.FAILED:
            await self._request_cancellation_mail(order, "Payment failed")

    async def _request_confirmation_mail(self, order: OrderDetails) -> None:
        request = OrderRequest(
            type=OrderType.CONFIRMATION,
            confirmation_data=OrderConfirmationData(
                user_id=order.user_id,
                order_id=order.order_id,
                order_date=order.created_at,
                order_items=order.items,
                total_amount=order.total_amount,
                order_link=ORDER_LINK,
            ),
        )
        await self._publisher.publish(
            Topics.ORDER_CONFIRMATION_MAIL, request, ensure_queue=True
        )

    async def _request_cancellation_mail(
        self, order: OrderDetails, reason: str
    ) -> None:
        request = OrderRequest(
            type=OrderType.CANCELLATION,
            cancellation_data=OrderCancellationData(
                user_id=order.user_id,
                order_id=order.order_id,
                reason=reason,
                support_link=SUPPORT_LINK,
            ),
        )
        await self._publisher.publish(
            Topics.ORDER_CONFIRMATION_MAIL, request, ensure_queue=True
        )

    async def _request_seller_ack(self, order: OrderDetails) -> None:
        sellers = dict.fromkeys(
            item.seller_id for item in order.items if item.seller_id
        )
        if not sellers:
            return
        acks = [SellerAck(seller_id=sid, order_id=order.order_id) for sid in sellers]
        await self._publisher.publish(Topics.SELLER_ACK, acks, ensure_queue=True)
        logger.info("Notified %d seller(s) about order %s", len(acks), order.order_id)
