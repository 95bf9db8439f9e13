import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog

from .calculation import calculate_purchase_details
from .config import Settings
from .errors import (
    BalanceNotFoundError,
    CreditPointsError,
    GatewayTimeoutError,
    IntegrationError,
    InvalidStateTransitionError,
    NotFoundError,
    OrderNotFoundError,
    PointsError,
    StateConflictError,
    TransactionMismatchError,
    TransactionNotFoundError,
    ValidationError,
)
from .gateway import CreateTransactionRequest, PaymentGateway, map_gateway_status
from .models import (
    FAILURE_STATUSES,
    ChangedBy,
    CreateOrderRequest,
    CreateOrderResponse,
    CreditPointsRequest,
    CreditPointsResponse,
    HistoryPage,
    Order,
    OrderStatus,
    OrderStatusHistory,
    OrderStatusResponse,
    PaymentMethod,
    PointsTransaction,
    PointsTransactionType,
    UserBalance,
    new_id,
    utcnow,
)
from .repositories import Storage
from .storage import InMemoryStorage, KeyedLocks

logger = structlog.get_logger(__name__)

NOT_FOUND_ERROR_INTERVAL = timedelta(minutes=1)
MAX_HISTORY_PAGE_SIZE = 100


def _as_utc(value: datetime) -> datetime:
    # naive datetimes are taken as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _balance_snapshot(balance: UserBalance) -> dict:
    return {
        "available_points": str(balance.available_points),
        "pending_points": str(balance.pending_points),
        "total_points": str(balance.total_points),
    }


class PointsService:
    """
    Points purchase use cases: order creation, the poll side of payment
    reconciliation, the credit unit and the read-side queries.

    Every order status change goes through here so it is paired with an
    OrderStatusHistory row.
    """

    def __init__(
        self,
        storage: Optional[Storage] = None,
        gateway: Optional[PaymentGateway] = None,
        settings: Optional[Settings] = None,
    ):
        self.storage = storage or InMemoryStorage()
        self.gateway = gateway
        self.settings = settings or Settings()
        self._order_locks = KeyedLocks()

    async def create_order(self, request: CreateOrderRequest) -> CreateOrderResponse:
        details = calculate_purchase_details(request.requested_amount)

        order = Order(
            id=new_id(),
            user_id=request.user_id,
            requested_amount=details.requested_amount,
            fee_amount=details.fee_amount,
            total_amount=details.total_amount,
            points_amount=details.points_amount,
            payment_method=request.payment_method,
            metadata={"description": request.description} if request.description else {},
        )
        entry = PointsTransaction(
            user_id=order.user_id,
            order_id=order.id,
            type=PointsTransactionType.PENDING,
            amount=order.points_amount,
            description=request.description or f"Points purchase - order {order.id}",
            metadata={
                "requested_amount": str(order.requested_amount),
                "fee_amount": str(order.fee_amount),
                "total_amount": str(order.total_amount),
            },
        )

        async with self.storage.atomic():
            if await self.storage.balances.find_by_user_id(order.user_id) is None:
                await self.storage.balances.save(UserBalance(user_id=order.user_id))
            await self.storage.orders.save(order)
            await self.storage.transactions.save(entry)
            await self.storage.balances.add_pending(order.user_id, order.points_amount)
            await self.storage.history.save(
                OrderStatusHistory(
                    order_id=order.id,
                    previous_status=None,
                    new_status=OrderStatus.PENDING,
                    changed_by=ChangedBy.SYSTEM,
                    reason="Order created by user",
                    metadata={
                        "user_id": order.user_id,
                        "payment_method": order.payment_method.value,
                        "points_amount": str(order.points_amount),
                        "total_amount": str(order.total_amount),
                    },
                )
            )

        logger.info(
            "order_created",
            order_id=order.id,
            user_id=order.user_id,
            total_amount=str(order.total_amount),
            payment_method=order.payment_method.value,
        )

        if order.payment_method == PaymentMethod.PIX:
            order = await self._create_pix_transaction(order)

        return CreateOrderResponse(
            order_id=order.id,
            user_id=order.user_id,
            status=order.status,
            requested_amount=order.requested_amount,
            fee_amount=order.fee_amount,
            total_amount=order.total_amount,
            points_amount=order.points_amount,
            qr_code=order.qr_code,
            qr_image_url=order.qr_image_url,
            expires_at=order.expires_at,
            gateway_transaction_id=order.gateway_transaction_id,
        )

    async def _create_pix_transaction(self, order: Order) -> Order:
        request = CreateTransactionRequest(
            amount=order.total_amount,
            crypto_amount=order.points_amount,
            wallet_address=self.settings.internal_wallet_address,
            external_id=order.id,
        )
        try:
            if self.gateway is None:
                raise IntegrationError("Payment gateway not configured")
            transaction = await asyncio.wait_for(
                self.gateway.create_transaction(request),
                timeout=self.settings.gateway_create_timeout_seconds,
            )
        except (IntegrationError, asyncio.TimeoutError) as e:
            error = str(e) or type(e).__name__
            logger.error("pix_transaction_failed", order_id=order.id, error=error)
            await self.apply_status(
                order,
                OrderStatus.FAILED,
                ChangedBy.SYSTEM,
                "Failed to create PIX transaction",
                metadata={"failure_reason": "gateway integration failure", "error": error},
            )
            raise IntegrationError(f"Failed to create PIX transaction for order {order.id}") from e

        updated = order.set_gateway_data(
            transaction.transaction_id,
            transaction.qr_copy_paste,
            transaction.qr_image_url,
            expiry_minutes=self.settings.order_expiry_minutes,
        )
        async with self.storage.atomic():
            await self.storage.orders.update(updated)
            await self.storage.history.save(
                OrderStatusHistory(
                    order_id=order.id,
                    previous_status=order.status,
                    new_status=updated.status,
                    changed_by=ChangedBy.SYSTEM,
                    reason="PIX transaction created",
                    metadata={
                        "gateway_transaction_id": transaction.transaction_id,
                        "expires_at": updated.expires_at.isoformat(),
                    },
                )
            )

        logger.info(
            "pix_transaction_created",
            order_id=order.id,
            gateway_transaction_id=transaction.transaction_id,
            expires_at=updated.expires_at.isoformat(),
        )
        return updated

    async def get_order(self, order_id: str) -> Order:
        order = await self.storage.orders.find_by_id(order_id)
        if order is None:
            raise OrderNotFoundError(f"Order {order_id} not found")
        return order

    async def check_order_status(self, order_id: str) -> OrderStatusResponse:
        order = await self.get_order(order_id)
        original_status = order.status

        last_webhook = await self.storage.webhook_logs.find_last_valid_by_external_id(order.id)
        last_webhook_at = last_webhook.processed_at if last_webhook else None

        if order.gateway_transaction_id and not order.is_terminal():
            if (
                self.settings.webhook_fallback_enabled
                and last_webhook is not None
                and last_webhook.is_processed_recently(self.settings.webhook_fallback_minutes)
            ):
                logger.debug("gateway_poll_skipped", order_id=order.id, last_webhook_at=last_webhook_at.isoformat())
            else:
                order = await self._poll_gateway(order)

        order = await self.expire_if_due(order)

        return OrderStatusResponse(
            order_id=order.id,
            status=order.status,
            status_changed=order.status != original_status,
            gateway_transaction_id=order.gateway_transaction_id,
            points_amount=order.points_amount,
            requested_amount=order.requested_amount,
            total_amount=order.total_amount,
            updated_at=order.updated_at,
            last_webhook_at=last_webhook_at,
        )

    async def _poll_gateway(self, order: Order) -> Order:
        if self.gateway is None:
            logger.warning("gateway_not_configured", order_id=order.id)
            return order

        try:
            remote = await asyncio.wait_for(
                self.gateway.get_transaction_status(order.gateway_transaction_id),
                timeout=self.settings.gateway_timeout_seconds,
            )
        except asyncio.TimeoutError:
            await self._record_gateway_error(order, GatewayTimeoutError("Payment gateway timeout"))
            return order
        except IntegrationError as e:
            await self._record_gateway_error(order, e)
            return order

        new_status = map_gateway_status(remote.status)
        if new_status == order.status:
            return order

        metadata = {
            "gateway_status": remote.status,
            "gateway_updated_at": remote.updated_at,
            "txid": remote.txid,
        }
        try:
            if new_status == OrderStatus.COMPLETED:
                await self.credit_points(
                    CreditPointsRequest(
                        order_id=order.id,
                        gateway_transaction_id=order.gateway_transaction_id,
                        metadata=metadata,
                    ),
                    changed_by=ChangedBy.POLLING_SERVICE,
                )
            else:
                await self.apply_status(
                    order,
                    new_status,
                    ChangedBy.POLLING_SERVICE,
                    f"Status updated from gateway: {remote.status}",
                    metadata=metadata,
                )
        except PointsError as e:
            # a concurrent webhook may have settled the order first
            logger.warning("poll_status_not_applied", order_id=order.id, target_status=new_status.value, error=str(e))

        return await self.get_order(order.id)

    async def _record_gateway_error(self, order: Order, error: IntegrationError) -> None:
        not_found = isinstance(error, TransactionNotFoundError)
        error_type = "transaction_not_found" if not_found else type(error).__name__
        logger.warning("gateway_status_check_failed", order_id=order.id, error=str(error), error_type=error_type)

        if not_found:
            cutoff = utcnow() - NOT_FOUND_ERROR_INTERVAL
            for row in await self.storage.history.find_recent_by_order_id(order.id, limit=5):
                if row.metadata.get("error_type") == error_type and row.created_at > cutoff:
                    return

        await self.storage.history.save(
            OrderStatusHistory(
                order_id=order.id,
                previous_status=order.status,
                new_status=order.status,
                changed_by=ChangedBy.POLLING_SERVICE,
                reason="Gateway status check failed",
                metadata={"error": str(error), "error_type": error_type},
            )
        )

    async def apply_status(
        self,
        order: Order,
        new_status: OrderStatus,
        changed_by: ChangedBy,
        reason: str,
        metadata: Optional[dict] = None,
    ) -> Order:
        """Move the order to `new_status` and append the matching history row."""
        updated = order.update_status(new_status, metadata)
        async with self.storage.atomic():
            await self.storage.orders.update(updated)
            await self.storage.history.save(
                OrderStatusHistory(
                    order_id=order.id,
                    previous_status=order.status,
                    new_status=new_status,
                    changed_by=changed_by,
                    reason=reason,
                    metadata=metadata or {},
                )
            )

        logger.info(
            "order_status_changed",
            order_id=order.id,
            previous_status=order.status.value,
            new_status=new_status.value,
            changed_by=changed_by.value,
        )

        if new_status in FAILURE_STATUSES and self.settings.release_pending_on_failure:
            await self.release_pending_points(order.id, changed_by=changed_by)
        return updated

    async def expire_if_due(self, order: Order) -> Order:
        if order.status != OrderStatus.PENDING or not order.is_expired():
            return order
        try:
            return await self.apply_status(
                order,
                OrderStatus.EXPIRED,
                ChangedBy.SYSTEM,
                "Order expired without payment confirmation",
                metadata={"expired_at": order.expires_at.isoformat()},
            )
        except StateConflictError as e:
            logger.info("order_expiry_skipped", order_id=order.id, error=str(e))
            return await self.get_order(order.id)

    async def expire_overdue_orders(self) -> list[Order]:
        expired = []
        for order in await self.storage.orders.find_expired_orders():
            updated = await self.expire_if_due(order)
            if updated.status == OrderStatus.EXPIRED:
                expired.append(updated)
        if expired:
            logger.info("overdue_orders_expired", count=len(expired))
        return expired

    async def credit_points(
        self,
        request: CreditPointsRequest,
        changed_by: ChangedBy = ChangedBy.SYSTEM,
    ) -> CreditPointsResponse:
        async with self._order_locks[request.order_id]:
            order = await self.get_order(request.order_id)
            if not order.can_be_completed():
                raise InvalidStateTransitionError(
                    f"Order {order.id} cannot be completed from {order.status.value}"
                )
            if request.gateway_transaction_id and request.gateway_transaction_id != order.gateway_transaction_id:
                raise TransactionMismatchError(f"Gateway transaction does not match order {order.id}")

            entries = await self.storage.transactions.find_by_order_id(order.id)
            pending = [e for e in entries if e.is_pending()]
            if len(pending) != 1:
                raise NotFoundError(f"Expected one pending points entry for order {order.id}, found {len(pending)}")
            entry = pending[0]

            balance = await self.storage.balances.find_by_user_id(order.user_id)
            if balance is None:
                raise BalanceNotFoundError(f"Balance for user {order.user_id} not found")

            try:
                async with self.storage.atomic():
                    await self.storage.orders.update(
                        order.update_status(OrderStatus.COMPLETED, {"points_credited": str(order.points_amount)})
                    )
                    credited = entry.update_type(
                        PointsTransactionType.CREDIT,
                        metadata={"credited_at": utcnow().isoformat(), **request.metadata},
                    )
                    await self.storage.transactions.update(credited)
                    new_balance = await self.storage.balances.convert_pending_to_available(
                        order.user_id, order.points_amount
                    )
                    await self.storage.history.save(
                        OrderStatusHistory(
                            order_id=order.id,
                            previous_status=order.status,
                            new_status=OrderStatus.COMPLETED,
                            changed_by=changed_by,
                            reason="Payment confirmed, points credited",
                            metadata={
                                "points_amount": str(order.points_amount),
                                "transaction_id": credited.id,
                                "balance_before": _balance_snapshot(balance),
                                "balance_after": _balance_snapshot(new_balance),
                            },
                        )
                    )
            except StateConflictError as e:
                # another unit settled the order first
                logger.warning("points_credit_conflict", order_id=order.id, error=str(e))
                raise CreditPointsError(f"Order {order.id} was settled concurrently") from e
            except Exception as e:
                logger.exception("points_credit_failed", order_id=order.id, user_id=order.user_id)
                await self.apply_status(
                    order,
                    OrderStatus.FAILED,
                    changed_by,
                    "Points credit failed",
                    metadata={"error": str(e), "error_type": type(e).__name__},
                )
                raise CreditPointsError(f"Failed to credit points for order {order.id}") from e

        logger.info(
            "points_credited",
            order_id=order.id,
            user_id=order.user_id,
            points_amount=str(order.points_amount),
            available_points=str(new_balance.available_points),
        )
        return CreditPointsResponse(
            success=True,
            user_id=order.user_id,
            points_amount=order.points_amount,
            new_available_balance=new_balance.available_points,
            transaction_id=credited.id,
        )

    async def release_pending_points(
        self, order_id: str, changed_by: ChangedBy = ChangedBy.SYSTEM
    ) -> Optional[UserBalance]:
        """
        Give back the pending points of an order that ended without payment.

        Returns None when the order has no pending entry left.
        """
        order = await self.get_order(order_id)
        if order.status not in FAILURE_STATUSES:
            raise InvalidStateTransitionError(
                f"Pending points of order {order.id} can only be released after a failure"
            )

        entries = await self.storage.transactions.find_by_order_id(order.id)
        pending = [e for e in entries if e.is_pending()]
        if not pending:
            return None

        async with self.storage.atomic():
            balance = None
            for entry in pending:
                balance = await self.storage.balances.release_pending(order.user_id, entry.amount)
                await self.storage.transactions.update(
                    entry.update_type(
                        PointsTransactionType.REFUND,
                        metadata={"released_at": utcnow().isoformat(), "order_status": order.status.value},
                    )
                )
            await self.storage.history.save(
                OrderStatusHistory(
                    order_id=order.id,
                    previous_status=order.status,
                    new_status=order.status,
                    changed_by=changed_by,
                    reason="Pending points released",
                    metadata={"released_points": str(sum(e.amount for e in pending))},
                )
            )

        logger.info("pending_points_released", order_id=order.id, user_id=order.user_id)
        return balance

    async def get_balance(self, user_id: str) -> UserBalance:
        balance = await self.storage.balances.find_by_user_id(user_id)
        if balance is None:
            raise BalanceNotFoundError(f"Balance for user {user_id} not found")
        return balance

    async def get_order_history(self, order_id: str) -> list[OrderStatusHistory]:
        await self.get_order(order_id)
        return await self.storage.history.find_by_order_id(order_id)

    async def get_transaction_history(
        self,
        user_id: Optional[str] = None,
        order_id: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        page: int = 1,
        limit: int = 20,
    ) -> HistoryPage:
        if page < 1:
            raise ValidationError("Page must be greater than 0")
        if limit < 1 or limit > MAX_HISTORY_PAGE_SIZE:
            raise ValidationError(f"Limit must be between 1 and {MAX_HISTORY_PAGE_SIZE}")

        has_range = start_date is not None and end_date is not None
        if has_range:
            start_date, end_date = _as_utc(start_date), _as_utc(end_date)
        if order_id:
            if has_range:
                rows = await self.storage.history.find_by_order_id_and_date_range(order_id, start_date, end_date)
            else:
                rows = await self.storage.history.find_by_order_id(order_id)
        elif user_id:
            rows = await self.storage.history.find_by_user_id(user_id)
            if has_range:
                rows = [r for r in rows if start_date <= r.created_at <= end_date]
        elif has_range:
            rows = await self.storage.history.find_by_date_range(start_date, end_date)
        else:
            raise ValidationError("At least one filter (order_id, user_id, or date range) must be provided")

        rows = sorted(rows, key=lambda r: r.created_at, reverse=True)
        total = len(rows)
        start = (page - 1) * limit
        return HistoryPage(
            items=rows[start:start + limit],
            total=total,
            page=page,
            limit=limit,
            total_pages=(total + limit - 1) // limit,
        )
