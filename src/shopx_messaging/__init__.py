"""ShopX messaging: request/reply and event propagation over RabbitMQ."""

from __future__ import annotations

from .config import MessagingSettings
from .dead_letter import DeadLetterRouter
from .envelope import ATTEMPT_HEADER, MessageEnvelope, MessageKind
from .exceptions import (
    DeadLetterError,
    InvalidPaymentCodeError,
    MessagingConnectionError,
    MessagingError,
    MessagingSerializationError,
    OrderNotFoundError,
    ProductNotFoundError,
    RequestCancelledError,
    RequestTimeoutError,
    ShopXError,
    TopologyError,
    WorkflowError,
)
from .idempotency import IdempotencyFilter
from .pending import PendingRequest, PendingRequestTable
from .ports import BrokerConnection, ICacheService
from .retry import RetryPolicy
from .serialization import JsonSerializer
from .service import ServiceMessaging
from .topology import ExchangeType, TopicDescriptor, Topics, TopologyBuilder

__all__ = [
    "ATTEMPT_HEADER",
    "BrokerConnection",
    "DeadLetterError",
    "DeadLetterRouter",
    "ExchangeType",
    "ICacheService",
    "IdempotencyFilter",
    "InvalidPaymentCodeError",
    "JsonSerializer",
    "MessageEnvelope",
    "MessageKind",
    "MessagingConnectionError",
    "MessagingError",
    "MessagingSerializationError",
    "MessagingSettings",
    "OrderNotFoundError",
    "PendingRequest",
    "PendingRequestTable",
    "ProductNotFoundError",
    "RequestCancelledError",
    "RequestTimeoutError",
    "RetryPolicy",
    "ServiceMessaging",
    "ShopXError",
    "TopicDescriptor",
    "Topics",
    "TopologyBuilder",
    "TopologyError",
    "WorkflowError",
]
