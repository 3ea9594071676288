"""Cross-service workflows built on the messaging core."""

from __future__ import annotations

from .notification import NotificationMailer, NotificationWorkflow
from .order import OrderWorkflow
from .payment import OneTimeCodeStore, PaymentWorkflow
from .product import ProductWorkflow
from .seller import SellerWorkflow
from .user import UserWorkflow

__all__ = [
    "NotificationMailer",
    "NotificationWorkflow",
    "OneTimeCodeStore",
    "OrderWorkflow",
    "PaymentWorkflow",
    "ProductWorkflow",
    "SellerWorkflow",
    "UserWorkflow",
]
