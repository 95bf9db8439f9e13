"""
Unit Tests for the in-memory storage

Tests cover:
1. Atomic scope commit and rollback
2. Terminal status guards on order and ledger entry updates
3. Balance mutations and lookups
4. History and webhook log queries
5. Per-key lock bookkeeping
"""

import gc

import pytest
from datetime import timedelta
from decimal import Decimal

from points.errors import BalanceNotFoundError, InsufficientPendingError, StateConflictError
from points.models import (
    ChangedBy,
    Order,
    OrderStatus,
    OrderStatusHistory,
    PaymentMethod,
    PointsTransaction,
    PointsTransactionType,
    UserBalance,
    WebhookLog,
    utcnow,
)
from points.storage import InMemoryStorage, KeyedLocks

USER_ID = "user-7"


def make_order(order_id="order-1", user_id=USER_ID):
    return Order(
        id=order_id,
        user_id=user_id,
        requested_amount=Decimal("10.00"),
        fee_amount=Decimal("0.50"),
        total_amount=Decimal("10.50"),
        points_amount=Decimal("10.00"),
        payment_method=PaymentMethod.PIX,
    )


@pytest.mark.asyncio
class TestAtomicScope:
    """Tests for the journaled atomic scope."""

    async def test_commit(self):
        """Writes inside a scope persist on exit."""
        storage = InMemoryStorage()
        async with storage.atomic():
            await storage.orders.save(make_order())
            await storage.balances.save(UserBalance(user_id=USER_ID))

        assert await storage.orders.find_by_id("order-1") is not None
        assert await storage.balances.find_by_user_id(USER_ID) is not None

    async def test_rollback_restores_previous_values(self):
        """A failing scope restores the previous rows."""
        storage = InMemoryStorage()
        await storage.balances.save(UserBalance(user_id=USER_ID))
        await storage.balances.add_pending(USER_ID, Decimal("10"))

        with pytest.raises(RuntimeError):
            async with storage.atomic():
                await storage.balances.convert_pending_to_available(USER_ID, Decimal("10"))
                await storage.orders.save(make_order())
                raise RuntimeError("boom")

        balance = await storage.balances.find_by_user_id(USER_ID)
        assert balance.pending_points == Decimal("10")
        assert balance.available_points == Decimal("0")
        assert await storage.orders.find_by_id("order-1") is None

    async def test_nested_scope_joins_outer(self):
        """An inner scope rolls back with the outer one."""
        storage = InMemoryStorage()

        with pytest.raises(RuntimeError):
            async with storage.atomic():
                async with storage.atomic():
                    await storage.orders.save(make_order())
                raise RuntimeError("outer failure")

        assert storage.order_rows == {}

    async def test_writes_outside_scope_are_immediate(self):
        """Writes outside a scope apply at once."""
        storage = InMemoryStorage()
        await storage.orders.save(make_order())
        assert "order-1" in storage.order_rows


@pytest.mark.asyncio
class TestOrderRepository:
    """Tests for order persistence rules."""

    async def test_duplicate_save_rejected(self):
        """Saving an existing order is a conflict."""
        storage = InMemoryStorage()
        await storage.orders.save(make_order())
        with pytest.raises(StateConflictError):
            await storage.orders.save(make_order())

    async def test_terminal_order_cannot_change_status(self):
        """A stored terminal order rejects every later write, same status included."""
        storage = InMemoryStorage()
        order = await storage.orders.save(make_order())
        completed = await storage.orders.update(order.update_status(OrderStatus.COMPLETED))

        with pytest.raises(StateConflictError):
            await storage.orders.update(order.update_status(OrderStatus.FAILED))
        with pytest.raises(StateConflictError):
            await storage.orders.update(order.update_status(OrderStatus.COMPLETED, {"note": "replay"}))

        assert await storage.orders.find_by_id(order.id) == completed

    async def test_find_expired_orders(self):
        """Only pending orders past expiry are returned."""
        storage = InMemoryStorage()
        fresh = make_order("fresh").set_gateway_data("tx-1", None, None)
        stale = make_order("stale")._replace(expires_at=utcnow() - timedelta(minutes=1))
        await storage.orders.save(fresh)
        await storage.orders.save(stale)

        expired = await storage.orders.find_expired_orders()
        assert [o.id for o in expired] == ["stale"]

    async def test_find_by_gateway_transaction_id(self):
        """Orders are found by gateway transaction id."""
        storage = InMemoryStorage()
        await storage.orders.save(make_order().set_gateway_data("tx-9", None, None))

        assert (await storage.orders.find_by_gateway_transaction_id("tx-9")).id == "order-1"
        assert await storage.orders.find_by_gateway_transaction_id("tx-0") is None


@pytest.mark.asyncio
class TestBalanceRepository:
    """Tests for atomic balance mutations."""

    async def test_missing_balance(self):
        """Mutating a missing balance raises."""
        storage = InMemoryStorage()
        with pytest.raises(BalanceNotFoundError):
            await storage.balances.add_pending("nobody", Decimal("1"))

    async def test_failed_mutation_leaves_balance_unchanged(self):
        """A rejected mutation leaves the balance as it was."""
        storage = InMemoryStorage()
        await storage.balances.save(UserBalance(user_id=USER_ID))
        await storage.balances.add_pending(USER_ID, Decimal("5"))

        with pytest.raises(InsufficientPendingError):
            await storage.balances.convert_pending_to_available(USER_ID, Decimal("6"))

        balance = await storage.balances.find_by_user_id(USER_ID)
        assert balance.pending_points == Decimal("5")
        assert balance.available_points == Decimal("0")


@pytest.mark.asyncio
class TestPointsTransactionRepository:
    """Tests for ledger entry persistence rules."""

    async def test_settled_entry_cannot_be_rewritten(self):
        """Only a PENDING entry may be updated."""
        storage = InMemoryStorage()
        entry = await storage.transactions.save(
            PointsTransaction(
                user_id=USER_ID,
                order_id="order-1",
                type=PointsTransactionType.PENDING,
                amount=Decimal("10.00"),
                description="Pending points purchase",
            )
        )
        credited = await storage.transactions.update(entry.update_type(PointsTransactionType.CREDIT))

        with pytest.raises(StateConflictError):
            await storage.transactions.update(entry.update_type(PointsTransactionType.CREDIT))
        with pytest.raises(StateConflictError):
            await storage.transactions.update(entry.update_type(PointsTransactionType.REFUND))

        assert await storage.transactions.find_by_id(entry.id) == credited


@pytest.mark.asyncio
class TestKeyedLocks:
    """Tests for per-key lock bookkeeping."""

    async def test_same_key_same_lock(self):
        """Callers asking for one key while it is in use share the lock."""
        locks = KeyedLocks()
        lock = locks["user-1"]
        assert locks["user-1"] is lock
        assert locks["user-2"] is not lock

    async def test_lock_dropped_after_use(self):
        """A lock nobody holds or awaits is released from the map."""
        locks = KeyedLocks()
        async with locks["user-1"]:
            assert len(locks) == 1
        gc.collect()
        assert len(locks) == 0


@pytest.mark.asyncio
class TestQueries:
    """Tests for history and webhook log lookups."""

    async def test_history_by_user_and_recent(self):
        """History is found by user and most recent first."""
        storage = InMemoryStorage()
        await storage.orders.save(make_order("a"))
        await storage.orders.save(make_order("b", user_id="someone-else"))
        for reason in ("first", "second", "third"):
            await storage.history.save(
                OrderStatusHistory(
                    order_id="a",
                    previous_status=OrderStatus.PENDING,
                    new_status=OrderStatus.PENDING,
                    changed_by=ChangedBy.SYSTEM,
                    reason=reason,
                )
            )
        await storage.history.save(
            OrderStatusHistory(order_id="b", new_status=OrderStatus.PENDING, changed_by=ChangedBy.SYSTEM, reason="b")
        )

        assert len(await storage.history.find_by_user_id(USER_ID)) == 3
        recent = await storage.history.find_recent_by_order_id("a", limit=2)
        assert [h.reason for h in recent] == ["third", "second"]

    async def test_webhook_log_lookups(self):
        """Webhook logs are found by webhook id, order, failure and transaction."""
        storage = InMemoryStorage()
        valid = await storage.webhook_logs.save(
            WebhookLog(webhook_id="wh-1", transaction_id="tx-1", external_id="a", status="PENDING", is_valid=True)
        )
        await storage.webhook_logs.save(
            WebhookLog(transaction_id="tx-1", external_id="a", status="COMPLETED", error_message="Signature mismatch")
        )

        assert (await storage.webhook_logs.find_by_webhook_id("wh-1")).id == valid.id
        assert (await storage.webhook_logs.find_last_valid_by_external_id("a")).id == valid.id
        assert len(await storage.webhook_logs.find_failed()) == 1
        assert len(await storage.webhook_logs.find_by_transaction_id("tx-1")) == 2

    async def test_delete_older_than(self):
        """Old webhook logs are purged."""
        storage = InMemoryStorage()
        await storage.webhook_logs.save(
            WebhookLog(
                transaction_id="tx-1",
                external_id="a",
                status="PENDING",
                created_at=utcnow() - timedelta(days=40),
            )
        )
        await storage.webhook_logs.save(WebhookLog(transaction_id="tx-2", external_id="b", status="PENDING"))

        assert await storage.webhook_logs.delete_older_than(30) == 1
        assert len(storage.webhook_log_rows) == 1
