"""User-side workflow: answers user detail lookups and broadcasts OTPs."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from ..topology import Topics
from .schemas import OTPRequest, UserDetails, UserDetailsRequest

if TYPE_CHECKING:
    from ..ports import UserLookup
    from ..rabbitmq import EventConsumer, EventPublisher
    from ..rabbitmq.consumer import Subscription

logger = logging.getLogger(__name__)


class UserWorkflow:
    def __init__(self, users: UserLookup, *, publisher: EventPublisher) -> None:
        self._users = users
        self._publisher = publisher

    async def start(self, consumer: EventConsumer) -> Subscription:
        return await consumer.serve(Topics.USER_DETAILS_RPC, self.on_user_details)

    async def on_user_details(self, payload: object) -> UserDetails | None:
        """Reply with the user, or JSON null when the id is unknown."""
        request = UserDetailsRequest.model_validate(payload)
        user = await self._users.by_id(request.user_id)
        if user is None:
            logger.warning(
                "User details requested for unknown user %s", request.user_id
            )
        return user

    async def request_otp(self, request: OTPRequest) -> str:
        """Broadcast an OTP request to every subscriber of the user fanout."""
        message_id = await self._publisher.publish(Topics.OTP_BROADCAST, request)
        logger.info("OTP request for user %s published", request.user_id)
        return message_id
