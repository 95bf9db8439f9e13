"""
Push side of payment reconciliation.

Every delivery that gets past the idempotency check leaves a WebhookLog row,
including rejected ones. Status changes are applied through PointsService so
the push and poll paths share the status mapping, the credit unit and the
expiry rule.
"""

import time
from datetime import timedelta
from typing import Mapping, Optional

import structlog

from .config import Settings
from .errors import PointsError, StateConflictError
from .gateway import map_gateway_status
from .models import (
    ChangedBy,
    CreditPointsRequest,
    OrderStatus,
    OrderStatusHistory,
    WebhookHealth,
    WebhookLog,
    WebhookPayload,
    WebhookResult,
    WebhookWindowStats,
    utcnow,
)
from .service import PointsService
from .signature import WebhookSignatureValidator

logger = structlog.get_logger(__name__)

SIGNATURE_HEADERS = ("x-alfred-signature", "x-webhook-signature")


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class WebhookProcessor:
    def __init__(
        self,
        service: PointsService,
        settings: Optional[Settings] = None,
        validator: Optional[WebhookSignatureValidator] = None,
    ):
        self.service = service
        self.storage = service.storage
        self.settings = settings or service.settings
        self.validator = validator or WebhookSignatureValidator(
            self.settings.webhook_secret,
            allow_unsigned=self.settings.webhook_allow_unsigned,
            production=self.settings.is_production,
        )

    async def process(
        self,
        payload: WebhookPayload,
        raw_body: bytes,
        headers: Optional[Mapping[str, str]] = None,
        validator: Optional[WebhookSignatureValidator] = None,
    ) -> WebhookResult:
        started = time.monotonic()
        log = logger.bind(
            transaction_id=payload.transaction_id,
            order_id=payload.external_id,
            webhook_status=payload.status,
            webhook_id=payload.webhook_id,
        )

        if not self.settings.webhook_enabled:
            log.warning("webhook_disabled")
            return WebhookResult(
                success=False,
                message="Webhooks are disabled",
                processed=False,
                error_code="disabled",
            )

        webhook_log = None
        try:
            if await self._already_processed(payload):
                log.info("webhook_already_processed")
                return WebhookResult(
                    success=True,
                    message="Webhook already processed",
                    processed=False,
                    order_id=payload.external_id,
                    processing_time_ms=_elapsed_ms(started),
                )

            signature = payload.signature or _header_signature(headers)
            check = (validator or self.validator).validate(raw_body, signature)

            webhook_log = await self.storage.webhook_logs.save(
                WebhookLog(
                    webhook_id=payload.webhook_id,
                    transaction_id=payload.transaction_id,
                    external_id=payload.external_id,
                    status=payload.status,
                    previous_status=payload.previous_status,
                    payload=payload.model_dump(mode="json", by_alias=True),
                    signature=signature or "",
                    is_valid=check.is_valid,
                    error_message=None if check.is_valid else check.reason,
                )
            )
            log = log.bind(webhook_log_id=webhook_log.id)

            if not check.is_valid:
                log.warning("webhook_signature_invalid", reason=check.reason)
                return self._reject(webhook_log, started, f"Invalid signature: {check.reason}", "invalid_signature")

            order = await self.storage.orders.find_by_id(payload.external_id)
            if order is None:
                log.warning("webhook_order_not_found")
                webhook_log = await self.storage.webhook_logs.update(webhook_log.mark_invalid("Order not found"))
                return self._reject(webhook_log, started, "Order not found", "order_not_found")

            if order.gateway_transaction_id != payload.transaction_id:
                log.error("webhook_transaction_mismatch", order_transaction_id=order.gateway_transaction_id)
                webhook_log = await self.storage.webhook_logs.update(
                    webhook_log.mark_invalid("Transaction ID mismatch")
                )
                return self._reject(webhook_log, started, "Transaction ID mismatch", "transaction_mismatch")

            new_status = map_gateway_status(payload.status)

            if new_status == order.status:
                await self.service.expire_if_due(order)
                webhook_log = await self._finish(webhook_log, started)
                log.info("webhook_status_unchanged", current_status=order.status.value)
                return WebhookResult(
                    success=True,
                    message="Status unchanged - no processing needed",
                    processed=False,
                    order_id=order.id,
                    processing_time_ms=webhook_log.processing_time_ms,
                    webhook_log_id=webhook_log.id,
                )

            if order.is_terminal():
                log.warning("webhook_state_conflict", current_status=order.status.value, target_status=new_status.value)
                webhook_log = await self._finish(webhook_log, started)
                return WebhookResult(
                    success=False,
                    message=f"Order is already {order.status.value}",
                    processed=False,
                    order_id=order.id,
                    processing_time_ms=webhook_log.processing_time_ms,
                    webhook_log_id=webhook_log.id,
                    error_code="state_conflict",
                )

            success, message, error_code = await self._apply(order, new_status, payload, webhook_log)

            await self.service.expire_if_due(await self.service.get_order(order.id))
            webhook_log = await self._finish(webhook_log, started)
            log.info(
                "webhook_processed",
                previous_status=order.status.value,
                new_status=new_status.value,
                success=success,
                processing_time_ms=webhook_log.processing_time_ms,
            )
            return WebhookResult(
                success=success,
                message=message,
                processed=True,
                order_id=order.id,
                processing_time_ms=webhook_log.processing_time_ms,
                webhook_log_id=webhook_log.id,
                error_code=error_code,
            )

        except Exception:
            elapsed = _elapsed_ms(started)
            log.exception("webhook_processing_error", processing_time_ms=elapsed)
            if webhook_log is not None:
                webhook_log = await self.storage.webhook_logs.update(
                    webhook_log.mark_invalid("Processing error").with_processing_time(elapsed)
                )
            return WebhookResult(
                success=False,
                message="Processing error",
                processed=False,
                order_id=payload.external_id,
                processing_time_ms=elapsed,
                webhook_log_id=webhook_log.id if webhook_log else None,
                error_code="internal",
            )

    async def _already_processed(self, payload: WebhookPayload) -> bool:
        if payload.webhook_id:
            if await self.storage.webhook_logs.find_by_webhook_id(payload.webhook_id) is not None:
                return True

        # not scoped to the order; see DESIGN.md
        window = self.settings.webhook_idempotency_window_minutes
        for previous in await self.storage.webhook_logs.find_by_transaction_id(payload.transaction_id):
            if previous.is_valid and previous.status == payload.status and previous.is_processed_recently(window):
                return True
        return False

    async def _apply(self, order, new_status: OrderStatus, payload: WebhookPayload, webhook_log: WebhookLog):
        metadata = {
            "gateway_transaction_id": payload.transaction_id,
            "gateway_status": payload.status,
            "gateway_previous_status": payload.previous_status,
            "gateway_updated_at": payload.updated_at.isoformat(),
            "tx_hash": payload.tx_hash,
            "webhook_id": payload.webhook_id,
            "webhook_log_id": webhook_log.id,
        }
        reason = f"Webhook received: {payload.status}"
        if payload.previous_status:
            reason += f" (from {payload.previous_status})"

        if new_status != OrderStatus.COMPLETED:
            try:
                await self.service.apply_status(order, new_status, ChangedBy.ALFRED_WEBHOOK, reason, metadata=metadata)
            except StateConflictError as e:
                # settled concurrently by the poll path
                logger.warning("webhook_status_not_applied", order_id=order.id, error=str(e))
                return False, "Order state changed concurrently", "state_conflict"
            return True, f"Order status updated to {new_status.value}", None

        await self.storage.history.save(
            OrderStatusHistory(
                order_id=order.id,
                previous_status=order.status,
                new_status=new_status,
                changed_by=ChangedBy.ALFRED_WEBHOOK,
                reason=reason,
                metadata={**metadata, "webhook_metadata": payload.metadata},
            )
        )
        try:
            await self.service.credit_points(
                CreditPointsRequest(
                    order_id=order.id,
                    gateway_transaction_id=payload.transaction_id,
                    metadata={"source": "alfred_webhook", "tx_hash": payload.tx_hash, "webhook_id": payload.webhook_id},
                ),
                changed_by=ChangedBy.ALFRED_WEBHOOK,
            )
        except PointsError as e:
            logger.error("webhook_credit_failed", order_id=order.id, error=str(e))
            return False, "Failed to credit points", "credit_failed"
        return True, "Payment confirmed and points credited automatically", None

    async def _finish(self, webhook_log: WebhookLog, started: float) -> WebhookLog:
        return await self.storage.webhook_logs.update(webhook_log.with_processing_time(_elapsed_ms(started)))

    def _reject(self, webhook_log: WebhookLog, started: float, message: str, error_code: str) -> WebhookResult:
        return WebhookResult(
            success=False,
            message=message,
            processed=False,
            processing_time_ms=_elapsed_ms(started),
            webhook_log_id=webhook_log.id,
            error_code=error_code,
        )

    async def health(self) -> WebhookHealth:
        now = utcnow()
        day = await self.storage.webhook_logs.find_by_date_range(now - timedelta(hours=24), now)
        hour = [w for w in day if w.created_at >= now - timedelta(hours=1)]
        return WebhookHealth(
            status="healthy" if self.settings.webhook_enabled else "degraded",
            timestamp=now,
            last_24h=_window_stats(day),
            last_1h=_window_stats(hour),
        )


def _header_signature(headers: Optional[Mapping[str, str]]) -> Optional[str]:
    if not headers:
        return None
    lowered = {k.lower(): v for k, v in headers.items()}
    for name in SIGNATURE_HEADERS:
        if lowered.get(name):
            return lowered[name]
    return None


def _window_stats(logs: list[WebhookLog]) -> WebhookWindowStats:
    timings = [w.processing_time_ms for w in logs if w.processing_time_ms is not None]
    valid = sum(1 for w in logs if w.is_valid)
    return WebhookWindowStats(
        total=len(logs),
        valid=valid,
        invalid=len(logs) - valid,
        avg_processing_time_ms=sum(timings) / len(timings) if timings else None,
    )
