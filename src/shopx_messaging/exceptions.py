"""Messaging and workflow exceptions for shopx-messaging."""

from __future__ import annotations


class ShopXError(Exception):
    """Root exception for the shopx messaging toolkit."""


class MessagingError(ShopXError):
    """Base class for all messaging-related infrastructure errors."""


class MessagingConnectionError(MessagingError):
    """Raised when connectivity to the message broker fails."""


class MessagingSerializationError(MessagingError):
    """Raised when message serialization or deserialization fails."""


class TopologyError(MessagingError):
    """Raised when an exchange or queue is redeclared with conflicting parameters."""


class RequestTimeoutError(MessagingError):
    """Raised when no reply arrives for a request within its timeout."""

    def __init__(self, correlation_id: str, timeout: float) -> None:
        self.correlation_id = correlation_id
        self.timeout = timeout
        super().__init__(
            f"No reply for correlation_id={correlation_id!r} within {timeout}s"
        )


class RequestCancelledError(MessagingError):
    """Raised for requests still pending when the client shuts down."""


class DeadLetterError(MessagingError):
    """Raised when a failed message could not be published to the DLX."""

    def __init__(self, message: str, message_id: str | None = None) -> None:
        self.message_id = message_id
        super().__init__(message)


class WorkflowError(ShopXError):
    """Base class for business failures inside cross-service workflows."""


class ProductNotFoundError(WorkflowError):
    """Raised when the product service cannot resolve every requested id."""

    def __init__(self, missing: list[str]) -> None:
        self.missing = missing
        super().__init__(f"Products not found: {', '.join(missing) or 'unknown'}")


class OrderNotFoundError(WorkflowError):
    """Raised when an order referenced by a message does not exist."""

    def __init__(self, order_id: str) -> None:
        self.order_id = order_id
        super().__init__(f"Order with id={order_id!r} not found")


class InvalidPaymentCodeError(WorkflowError):
    """Raised when a one-time payment code is unknown, used or expired."""

    def __init__(self, order_id: str, reason: str) -> None:
        self.order_id = order_id
        self.reason = reason
        super().__init__(f"Invalid payment code for order {order_id!r}: {reason}")
