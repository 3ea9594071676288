"""Product-side workflow: answers product lookups and raises low-stock notices."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from ..topology import Topics
from .schemas import LowStockNotificationData, Product, ProductDetailsRequest

if TYPE_CHECKING:
    from ..ports import ProductLookup
    from ..rabbitmq import EventConsumer, EventPublisher
    from ..rabbitmq.consumer import Subscription

logger = logging.getLogger(__name__)


class ProductWorkflow:
    def __init__(self, products: ProductLookup, *, publisher: EventPublisher) -> None:
        self._products = products
        self._publisher = publisher

    async def start(self, consumer: EventConsumer) -> Subscription:
        return await consumer.serve(Topics.PRODUCT_DETAILS_RPC, self.on_product_details)

    async def on_product_details(self, payload: object) -> list[Product]:
        """Reply with the products that exist; unknown ids are left out."""
        request = ProductDetailsRequest.model_validate(payload)
        products = await self._products.by_ids(request.product_ids)
        logger.debug(
            "Resolved %d of %d product(s)", len(products), len(request.product_ids)
        )
        return products

    async def notify_low_stock(self, data: LowStockNotificationData) -> str:
        message_id = await self._publisher.publish(Topics.LOW_STOCK_NOTICE, data)
        logger.info(
            "Low-stock notice for seller %s (%d product(s))",
            data.seller_name,
            len(data.low_stock_products),
        )
        return message_id
