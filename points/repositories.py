"""
Persistence contracts, one per aggregate.

Orders and balances are the only rows that get rewritten; ledger entries are
retyped once, history and webhook logs are append-only.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import AsyncContextManager, Optional

from .models import (
    ChangedBy,
    Order,
    OrderStatus,
    OrderStatusHistory,
    PointsTransaction,
    PointsTransactionType,
    UserBalance,
    WebhookLog,
)


class OrderRepository(ABC):
    @abstractmethod
    async def find_by_id(self, order_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def find_by_user_id(self, user_id: str) -> list[Order]:
        pass

    @abstractmethod
    async def find_by_gateway_transaction_id(self, transaction_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def find_pending_by_user_id(self, user_id: str) -> list[Order]:
        pass

    @abstractmethod
    async def find_by_status(self, status: OrderStatus) -> list[Order]:
        pass

    @abstractmethod
    async def find_expired_orders(self) -> list[Order]:
        """PENDING orders whose expiry moment has passed."""

    @abstractmethod
    async def save(self, order: Order) -> Order:
        pass

    @abstractmethod
    async def update(self, order: Order) -> Order:
        """
        Replace the stored snapshot. Must refuse to move a stored order out of
        a terminal status (raises StateConflictError).
        """


class UserBalanceRepository(ABC):
    @abstractmethod
    async def find_by_user_id(self, user_id: str) -> Optional[UserBalance]:
        pass

    @abstractmethod
    async def save(self, balance: UserBalance) -> UserBalance:
        pass

    @abstractmethod
    async def update(self, balance: UserBalance) -> UserBalance:
        pass

    @abstractmethod
    async def add_pending(self, user_id: str, amount: Decimal) -> UserBalance:
        pass

    @abstractmethod
    async def convert_pending_to_available(self, user_id: str, amount: Decimal) -> UserBalance:
        """Atomic read-modify-write, exclusive per user."""

    @abstractmethod
    async def release_pending(self, user_id: str, amount: Decimal) -> UserBalance:
        pass

    @abstractmethod
    async def credit_points(self, user_id: str, amount: Decimal) -> UserBalance:
        pass

    @abstractmethod
    async def debit_points(self, user_id: str, amount: Decimal) -> UserBalance:
        pass


class PointsTransactionRepository(ABC):
    @abstractmethod
    async def find_by_id(self, transaction_id: str) -> Optional[PointsTransaction]:
        pass

    @abstractmethod
    async def find_by_user_id(self, user_id: str) -> list[PointsTransaction]:
        pass

    @abstractmethod
    async def find_by_order_id(self, order_id: str) -> list[PointsTransaction]:
        pass

    @abstractmethod
    async def find_by_type(self, type_: PointsTransactionType) -> list[PointsTransaction]:
        pass

    @abstractmethod
    async def find_by_user_id_and_date_range(
        self, user_id: str, start: datetime, end: datetime
    ) -> list[PointsTransaction]:
        pass

    @abstractmethod
    async def save(self, transaction: PointsTransaction) -> PointsTransaction:
        pass

    @abstractmethod
    async def update(self, transaction: PointsTransaction) -> PointsTransaction:
        pass


class OrderStatusHistoryRepository(ABC):
    @abstractmethod
    async def find_by_id(self, history_id: str) -> Optional[OrderStatusHistory]:
        pass

    @abstractmethod
    async def find_by_order_id(self, order_id: str) -> list[OrderStatusHistory]:
        pass

    @abstractmethod
    async def find_by_user_id(self, user_id: str) -> list[OrderStatusHistory]:
        pass

    @abstractmethod
    async def find_by_status(self, status: OrderStatus) -> list[OrderStatusHistory]:
        pass

    @abstractmethod
    async def find_by_changed_by(self, changed_by: ChangedBy) -> list[OrderStatusHistory]:
        pass

    @abstractmethod
    async def find_by_date_range(self, start: datetime, end: datetime) -> list[OrderStatusHistory]:
        pass

    @abstractmethod
    async def find_by_order_id_and_date_range(
        self, order_id: str, start: datetime, end: datetime
    ) -> list[OrderStatusHistory]:
        pass

    @abstractmethod
    async def find_recent_by_order_id(self, order_id: str, limit: int = 10) -> list[OrderStatusHistory]:
        """Newest first."""

    @abstractmethod
    async def save(self, history: OrderStatusHistory) -> OrderStatusHistory:
        pass


class WebhookLogRepository(ABC):
    @abstractmethod
    async def find_by_id(self, log_id: str) -> Optional[WebhookLog]:
        pass

    @abstractmethod
    async def find_by_webhook_id(self, webhook_id: str) -> Optional[WebhookLog]:
        pass

    @abstractmethod
    async def find_by_transaction_id(self, transaction_id: str) -> list[WebhookLog]:
        pass

    @abstractmethod
    async def find_by_external_id(self, external_id: str) -> list[WebhookLog]:
        pass

    @abstractmethod
    async def find_last_valid_by_external_id(self, external_id: str) -> Optional[WebhookLog]:
        pass

    @abstractmethod
    async def find_by_date_range(self, start: datetime, end: datetime) -> list[WebhookLog]:
        pass

    @abstractmethod
    async def find_failed(self, limit: int = 50) -> list[WebhookLog]:
        pass

    @abstractmethod
    async def save(self, log: WebhookLog) -> WebhookLog:
        pass

    @abstractmethod
    async def update(self, log: WebhookLog) -> WebhookLog:
        pass

    @abstractmethod
    async def delete_older_than(self, days: int) -> int:
        pass


class Storage(ABC):
    """Bundle of repositories sharing one atomic scope."""

    orders: OrderRepository
    balances: UserBalanceRepository
    transactions: PointsTransactionRepository
    history: OrderStatusHistoryRepository
    webhook_logs: WebhookLogRepository

    @abstractmethod
    def atomic(self) -> AsyncContextManager[None]:
        """All writes inside the scope land together or not at all."""
