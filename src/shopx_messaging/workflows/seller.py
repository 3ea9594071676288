"""Seller-side workflow: records orders sellers have to fulfil."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from pydantic import TypeAdapter

from ..topology import Topics
from .schemas import SellerAck

if TYPE_CHECKING:
    from ..ports import SellerOrders
    from ..rabbitmq import EventConsumer
    from ..rabbitmq.consumer import Subscription

logger = logging.getLogger(__name__)

_ACKS = TypeAdapter(list[SellerAck])


class SellerWorkflow:
    def __init__(self, sellers: SellerOrders) -> None:
        self._sellers = sellers

    async def start(self, consumer: EventConsumer) -> Subscription:
        return await consumer.subscribe(Topics.SELLER_ACK, self.on_seller_ack)

    async def on_seller_ack(self, payload: object) -> None:
        # A single object is accepted as well as the usual list.
        acks = _ACKS.validate_python(
            payload if isinstance(payload, list) else [payload]
        )
        for ack in acks:
            await self._sellers.record_order(ack)
        logger.info("Recorded %d seller acknowledgement(s)", len(acks))
