import asyncio
import weakref
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, AsyncIterator, Callable, Optional

from .errors import BalanceNotFoundError, OrderNotFoundError, StateConflictError
from .models import (
    ChangedBy,
    Order,
    OrderStatus,
    OrderStatusHistory,
    PointsTransaction,
    PointsTransactionType,
    UserBalance,
    WebhookLog,
    utcnow,
)
from .repositories import (
    OrderRepository,
    OrderStatusHistoryRepository,
    PointsTransactionRepository,
    Storage,
    UserBalanceRepository,
    WebhookLogRepository,
)

_MISSING = object()


class KeyedLocks:
    """One asyncio.Lock per key, dropped once nothing holds or awaits it."""

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def __getitem__(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def __len__(self) -> int:
        return len(self._locks)


class InMemoryStorage(Storage):
    def __init__(self):
        self.order_rows: dict[str, Order] = {}
        self.balance_rows: dict[str, UserBalance] = {}
        self.transaction_rows: dict[str, PointsTransaction] = {}
        self.history_rows: dict[str, OrderStatusHistory] = {}
        self.webhook_log_rows: dict[str, WebhookLog] = {}

        self._journal: ContextVar[Optional[list]] = ContextVar(f"journal-{id(self)}", default=None)
        self._user_locks = KeyedLocks()

        self.orders = InMemoryOrderRepository(self)
        self.balances = InMemoryUserBalanceRepository(self)
        self.transactions = InMemoryPointsTransactionRepository(self)
        self.history = InMemoryOrderStatusHistoryRepository(self)
        self.webhook_logs = InMemoryWebhookLogRepository(self)

    def put(self, table: dict, key: str, value: Any) -> None:
        journal = self._journal.get()
        if journal is not None:
            journal.append((table, key, table.get(key, _MISSING)))
        table[key] = value

    def delete(self, table: dict, key: str) -> None:
        journal = self._journal.get()
        if journal is not None:
            journal.append((table, key, table.get(key, _MISSING)))
        table.pop(key, None)

    def user_lock(self, user_id: str) -> asyncio.Lock:
        return self._user_locks[user_id]

    @asynccontextmanager
    async def atomic(self) -> AsyncIterator[None]:
        if self._journal.get() is not None:
            # nested scopes join the outer one
            yield
            return

        journal: list = []
        token = self._journal.set(journal)
        try:
            yield
        except BaseException:
            for table, key, previous in reversed(journal):
                if previous is _MISSING:
                    table.pop(key, None)
                else:
                    table[key] = previous
            raise
        finally:
            self._journal.reset(token)


class InMemoryOrderRepository(OrderRepository):
    def __init__(self, storage: InMemoryStorage):
        self.storage = storage

    @property
    def _rows(self) -> dict[str, Order]:
        return self.storage.order_rows

    def _select(self, predicate: Callable[[Order], bool]) -> list[Order]:
        return sorted((o for o in self._rows.values() if predicate(o)), key=lambda o: o.created_at)

    async def find_by_id(self, order_id: str) -> Optional[Order]:
        return self._rows.get(order_id)

    async def find_by_user_id(self, user_id: str) -> list[Order]:
        return self._select(lambda o: o.user_id == user_id)

    async def find_by_gateway_transaction_id(self, transaction_id: str) -> Optional[Order]:
        for order in self._rows.values():
            if order.gateway_transaction_id == transaction_id:
                return order
        return None

    async def find_pending_by_user_id(self, user_id: str) -> list[Order]:
        return self._select(lambda o: o.user_id == user_id and o.status == OrderStatus.PENDING)

    async def find_by_status(self, status: OrderStatus) -> list[Order]:
        return self._select(lambda o: o.status == status)

    async def find_expired_orders(self) -> list[Order]:
        now = utcnow()
        return self._select(lambda o: o.status == OrderStatus.PENDING and o.is_expired(now))

    async def save(self, order: Order) -> Order:
        if order.id in self._rows:
            raise StateConflictError(f"Order {order.id} already exists")
        self.storage.put(self._rows, order.id, order)
        return order

    async def update(self, order: Order) -> Order:
        stored = self._rows.get(order.id)
        if stored is None:
            raise OrderNotFoundError(f"Order {order.id} not found")
        if stored.is_terminal():
            raise StateConflictError(f"Order {order.id} is already {stored.status.value}")
        self.storage.put(self._rows, order.id, order)
        return order


class InMemoryUserBalanceRepository(UserBalanceRepository):
    def __init__(self, storage: InMemoryStorage):
        self.storage = storage

    @property
    def _rows(self) -> dict[str, UserBalance]:
        return self.storage.balance_rows

    async def find_by_user_id(self, user_id: str) -> Optional[UserBalance]:
        return self._rows.get(user_id)

    async def save(self, balance: UserBalance) -> UserBalance:
        if balance.user_id in self._rows:
            raise StateConflictError(f"Balance for user {balance.user_id} already exists")
        self.storage.put(self._rows, balance.user_id, balance)
        return balance

    async def update(self, balance: UserBalance) -> UserBalance:
        if balance.user_id not in self._rows:
            raise BalanceNotFoundError(f"Balance for user {balance.user_id} not found")
        self.storage.put(self._rows, balance.user_id, balance)
        return balance

    async def _mutate(self, user_id: str, mutate: Callable[[UserBalance], UserBalance]) -> UserBalance:
        async with self.storage.user_lock(user_id):
            current = self._rows.get(user_id)
            if current is None:
                raise BalanceNotFoundError(f"Balance for user {user_id} not found")
            updated = mutate(current)
            self.storage.put(self._rows, user_id, updated)
            return updated

    async def add_pending(self, user_id: str, amount: Decimal) -> UserBalance:
        return await self._mutate(user_id, lambda b: b.add_pending(amount))

    async def convert_pending_to_available(self, user_id: str, amount: Decimal) -> UserBalance:
        return await self._mutate(user_id, lambda b: b.convert_pending_to_available(amount))

    async def release_pending(self, user_id: str, amount: Decimal) -> UserBalance:
        return await self._mutate(user_id, lambda b: b.release_pending(amount))

    async def credit_points(self, user_id: str, amount: Decimal) -> UserBalance:
        return await self._mutate(user_id, lambda b: b.credit_points(amount))

    async def debit_points(self, user_id: str, amount: Decimal) -> UserBalance:
        return await self._mutate(user_id, lambda b: b.debit_points(amount))


class InMemoryPointsTransactionRepository(PointsTransactionRepository):
    def __init__(self, storage: InMemoryStorage):
        self.storage = storage

    @property
    def _rows(self) -> dict[str, PointsTransaction]:
        return self.storage.transaction_rows

    def _select(self, predicate: Callable[[PointsTransaction], bool]) -> list[PointsTransaction]:
        return sorted((t for t in self._rows.values() if predicate(t)), key=lambda t: t.created_at)

    async def find_by_id(self, transaction_id: str) -> Optional[PointsTransaction]:
        return self._rows.get(transaction_id)

    async def find_by_user_id(self, user_id: str) -> list[PointsTransaction]:
        return self._select(lambda t: t.user_id == user_id)

    async def find_by_order_id(self, order_id: str) -> list[PointsTransaction]:
        return self._select(lambda t: t.order_id == order_id)

    async def find_by_type(self, type_: PointsTransactionType) -> list[PointsTransaction]:
        return self._select(lambda t: t.type == type_)

    async def find_by_user_id_and_date_range(
        self, user_id: str, start: datetime, end: datetime
    ) -> list[PointsTransaction]:
        return self._select(lambda t: t.user_id == user_id and start <= t.created_at <= end)

    async def save(self, transaction: PointsTransaction) -> PointsTransaction:
        self.storage.put(self._rows, transaction.id, transaction)
        return transaction

    async def update(self, transaction: PointsTransaction) -> PointsTransaction:
        stored = self._rows.get(transaction.id)
        if stored is None:
            raise StateConflictError(f"Points transaction {transaction.id} does not exist")
        if not stored.is_pending():
            raise StateConflictError(f"Points transaction {transaction.id} is already {stored.type.value}")
        self.storage.put(self._rows, transaction.id, transaction)
        return transaction


class InMemoryOrderStatusHistoryRepository(OrderStatusHistoryRepository):
    def __init__(self, storage: InMemoryStorage):
        self.storage = storage

    @property
    def _rows(self) -> dict[str, OrderStatusHistory]:
        return self.storage.history_rows

    def _select(self, predicate: Callable[[OrderStatusHistory], bool]) -> list[OrderStatusHistory]:
        return sorted((h for h in self._rows.values() if predicate(h)), key=lambda h: h.created_at)

    async def find_by_id(self, history_id: str) -> Optional[OrderStatusHistory]:
        return self._rows.get(history_id)

    async def find_by_order_id(self, order_id: str) -> list[OrderStatusHistory]:
        return self._select(lambda h: h.order_id == order_id)

    async def find_by_user_id(self, user_id: str) -> list[OrderStatusHistory]:
        order_ids = {o.id for o in self.storage.order_rows.values() if o.user_id == user_id}
        return self._select(lambda h: h.order_id in order_ids)

    async def find_by_status(self, status: OrderStatus) -> list[OrderStatusHistory]:
        return self._select(lambda h: h.new_status == status)

    async def find_by_changed_by(self, changed_by: ChangedBy) -> list[OrderStatusHistory]:
        return self._select(lambda h: h.changed_by == changed_by)

    async def find_by_date_range(self, start: datetime, end: datetime) -> list[OrderStatusHistory]:
        return self._select(lambda h: start <= h.created_at <= end)

    async def find_by_order_id_and_date_range(
        self, order_id: str, start: datetime, end: datetime
    ) -> list[OrderStatusHistory]:
        return self._select(lambda h: h.order_id == order_id and start <= h.created_at <= end)

    async def find_recent_by_order_id(self, order_id: str, limit: int = 10) -> list[OrderStatusHistory]:
        rows = await self.find_by_order_id(order_id)
        return list(reversed(rows))[:limit]

    async def save(self, history: OrderStatusHistory) -> OrderStatusHistory:
        if history.id in self._rows:
            raise StateConflictError(f"History row {history.id} already exists")
        self.storage.put(self._rows, history.id, history)
        return history


class InMemoryWebhookLogRepository(WebhookLogRepository):
    def __init__(self, storage: InMemoryStorage):
        self.storage = storage

    @property
    def _rows(self) -> dict[str, WebhookLog]:
        return self.storage.webhook_log_rows

    def _select(self, predicate: Callable[[WebhookLog], bool]) -> list[WebhookLog]:
        return sorted((w for w in self._rows.values() if predicate(w)), key=lambda w: w.created_at)

    async def find_by_id(self, log_id: str) -> Optional[WebhookLog]:
        return self._rows.get(log_id)

    async def find_by_webhook_id(self, webhook_id: str) -> Optional[WebhookLog]:
        for log in self._rows.values():
            if log.webhook_id == webhook_id:
                return log
        return None

    async def find_by_transaction_id(self, transaction_id: str) -> list[WebhookLog]:
        return self._select(lambda w: w.transaction_id == transaction_id)

    async def find_by_external_id(self, external_id: str) -> list[WebhookLog]:
        return self._select(lambda w: w.external_id == external_id)

    async def find_last_valid_by_external_id(self, external_id: str) -> Optional[WebhookLog]:
        valid = [w for w in self._rows.values() if w.external_id == external_id and w.is_valid]
        if not valid:
            return None
        return max(valid, key=lambda w: w.processed_at)

    async def find_by_date_range(self, start: datetime, end: datetime) -> list[WebhookLog]:
        return self._select(lambda w: start <= w.created_at <= end)

    async def find_failed(self, limit: int = 50) -> list[WebhookLog]:
        failed = self._select(lambda w: w.has_error())
        return list(reversed(failed))[:limit]

    async def save(self, log: WebhookLog) -> WebhookLog:
        self.storage.put(self._rows, log.id, log)
        return log

    async def update(self, log: WebhookLog) -> WebhookLog:
        if log.id not in self._rows:
            raise StateConflictError(f"Webhook log {log.id} does not exist")
        self.storage.put(self._rows, log.id, log)
        return log

    async def delete_older_than(self, days: int) -> int:
        cutoff = utcnow() - timedelta(days=days)
        stale = [w.id for w in self._rows.values() if w.created_at < cutoff]
        for log_id in stale:
            self.storage.delete(self._rows, log_id)
        return len(stale)
