"""
Points purchases paid through PIX

This package provides:
- Fee and points arithmetic on exact decimals
- Order lifecycle: pending → completed / failed / cancelled / expired
- A per-user points ledger with pending and available balances
- Signed gateway webhooks with idempotent replay handling
- Status polling that converges with the webhook path
- Audit history for every order status change
"""

from .config import Settings
from .models import (
    ChangedBy,
    Order,
    OrderStatus,
    OrderStatusHistory,
    PaymentMethod,
    PointsTransaction,
    PointsTransactionType,
    UserBalance,
    WebhookLog,
)
from .service import PointsService
from .storage import InMemoryStorage
from .webhooks import WebhookProcessor

__all__ = [
    "Settings",
    "ChangedBy",
    "Order",
    "OrderStatus",
    "OrderStatusHistory",
    "PaymentMethod",
    "PointsTransaction",
    "PointsTransactionType",
    "UserBalance",
    "WebhookLog",
    "PointsService",
    "InMemoryStorage",
    "WebhookProcessor",
]
