"""Payment-side workflow: payment initiation and one-time code validation."""

from __future__ import annotations

import logging
import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from ..exceptions import InvalidPaymentCodeError
from ..topology import Topics
from .schemas import (
    Payment,
    PaymentInitiation,
    PaymentMailRequest,
    PaymentStatus,
    PaymentStatusMessage,
    PaymentType,
    PaymentValidationResult,
)

if TYPE_CHECKING:
    from ..ports import PaymentProcessor
    from ..rabbitmq import EventConsumer, EventPublisher
    from ..rabbitmq.consumer import Subscription
    from .schemas import PaymentRecord

logger = logging.getLogger(__name__)

CODE_EXPIRY_SECONDS = 50 * 60
RECEIPT_LINK = "http://www.shopxindia.com"


@dataclass
class _IssuedCode:
    order_id: str
    issued_at: float


class OneTimeCodeStore:
    """Six-digit payment codes, each valid once and for a limited time."""

    def __init__(
        self,
        *,
        ttl: float = CODE_EXPIRY_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl
        self._clock = clock
        self._codes: dict[str, _IssuedCode] = {}

    def __len__(self) -> int:
        return len(self._codes)

    def issue(self, order_id: str) -> str:
        """New code for *order_id*; codes issued for it earlier stop working."""
        self.purge_expired()
        for stale in [c for c, i in self._codes.items() if i.order_id == order_id]:
            del self._codes[stale]
        while True:
            code = f"{secrets.randbelow(1_000_000):06d}"
            if code not in self._codes:
                break
        self._codes[code] = _IssuedCode(order_id=order_id, issued_at=self._clock())
        return code

    def consume(self, order_id: str, code: str) -> None:
        """Use up *code* for *order_id*.

        Raises:
            InvalidPaymentCodeError: unknown, already used, issued for another
                order, or expired.
        """
        issued = self._codes.get(code)
        if issued is None or issued.order_id != order_id:
            raise InvalidPaymentCodeError(order_id, "Code not found or already used")
        del self._codes[code]
        if self._clock() - issued.issued_at > self._ttl:
            raise InvalidPaymentCodeError(order_id, "Code has expired")

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [c for c, i in self._codes.items() if now - i.issued_at > self._ttl]
        for code in expired:
            del self._codes[code]
        return len(expired)


class PaymentWorkflow:
    """Initiates payments for new orders and settles them by one-time code."""

    def __init__(
        self,
        payments: PaymentProcessor,
        *,
        publisher: EventPublisher,
        codes: OneTimeCodeStore | None = None,
    ) -> None:
        self._payments = payments
        self._publisher = publisher
        self._codes = codes or OneTimeCodeStore()

    @property
    def codes(self) -> OneTimeCodeStore:
        return self._codes

    async def start(self, consumer: EventConsumer) -> Subscription:
        return await consumer.subscribe(
            Topics.PAYMENT_INITIATION, self.on_payment_initiation
        )

    async def on_payment_initiation(self, payload: object) -> None:
        await self.initiate(PaymentInitiation.model_validate(payload))

    async def initiate(self, request: PaymentInitiation) -> PaymentRecord:
        """Create the order's payment and announce it as PENDING.

        A redelivered initiation reuses the payment already created for the
        order and only republishes its status.
        """
        existing = await self._payments.get_payment_by_order(request.order_id)
        if existing is not None:
            logger.info(
                "Payment %s already exists for order %s",
                existing.payment_id,
                existing.order_id,
            )
            if not existing.status.is_terminal:
                await self._publish_status(existing, PaymentStatus.PENDING)
            return existing

        code = self._codes.issue(request.order_id)
        record = await self._payments.create_payment(request, code)
        logger.info(
            "Payment %s created for order %s", record.payment_id, record.order_id
        )
        await self._publish_status(record, PaymentStatus.PENDING)
        return record

    async def validate_code(self, order_id: str, code: str) -> PaymentValidationResult:
        """Settle the order's payment with *code*.

        An unknown, used or expired code yields a FAILED result and nothing is
        published. A failure while completing the payment publishes FAILED to
        the order service and is re-raised.

        Raises:
            InvalidPaymentCodeError: there is no payment for *order_id*.
        """
        record = await self._payments.get_payment_by_order(order_id)
        if record is None:
            raise InvalidPaymentCodeError(
                order_id, "Invalid payment processing request"
            )

        try:
            self._codes.consume(order_id, code)
        except InvalidPaymentCodeError as e:
            logger.info("Rejected payment code for order %s: %s", order_id, e.reason)
            return PaymentValidationResult(
                status=PaymentStatus.FAILED, message=e.reason
            )

        try:
            await self._payments.complete_payment(record.payment_id, order_id)
        except Exception:
            logger.exception("Completing payment %s failed", record.payment_id)
            await self._publish_status(record, PaymentStatus.FAILED)
            await self._publisher.publish(
                Topics.PAYMENT_CONFIRMATION_MAIL,
                self._mail_request(record, PaymentType.CANCELLATION),
                ensure_queue=True,
            )
            raise

        await self._publish_status(record, PaymentStatus.SUCCESS)
        await self._publisher.publish(
            Topics.PAYMENT_CONFIRMATION_MAIL,
            self._mail_request(record, PaymentType.CONFIRMATION),
            ensure_queue=True,
        )
        return PaymentValidationResult(
            status=PaymentStatus.SUCCESS, message="Code is valid"
        )

    async def _publish_status(
        self, record: PaymentRecord, status: PaymentStatus
    ) -> None:
        message = PaymentStatusMessage(
            type=status,
            data=Payment(
                payment_id=record.payment_id,
                order_id=record.order_id,
                payment_status=status,
            ),
        )
        await self._publisher.publish(Topics.PAYMENT_STATUS, message, ensure_queue=True)

    @staticmethod
    def _mail_request(record: PaymentRecord, kind: PaymentType) -> PaymentMailRequest:
        return PaymentMailRequest(
            type=kind,
            user_id=record.user_id,
            order_id=record.order_id,
            amount=record.amount,
            receipt_link=RECEIPT_LINK,
            retry_payment_link=RECEIPT_LINK,
            support_link=RECEIPT_LINK,
        )
