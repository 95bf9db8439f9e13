import asyncio
import json
from datetime import timedelta
from decimal import Decimal
from typing import Optional

import pytest

from points.config import Settings
from points.gateway import (
    CreateTransactionRequest,
    GatewayTransaction,
    GatewayTransactionStatus,
    PaymentGateway,
)
from points.models import CreateOrderRequest, PaymentMethod, WebhookPayload, utcnow
from points.service import PointsService
from points.signature import compute_signature
from points.storage import InMemoryStorage
from points.webhooks import WebhookProcessor

WEBHOOK_SECRET = "test-webhook-secret"
DEFAULT_USER_ID = "550e8400-e29b-41d4-a716-446655440000"


class FakeGateway(PaymentGateway):
    """Scriptable stand-in for the Alfred Pay API."""

    def __init__(self):
        self.statuses: dict[str, str] = {}
        self.created: list[CreateTransactionRequest] = []
        self.status_calls = 0
        self.create_error: Optional[Exception] = None
        self.status_error: Optional[Exception] = None
        self.status_delay: float = 0

    async def create_transaction(self, request: CreateTransactionRequest) -> GatewayTransaction:
        if self.create_error is not None:
            raise self.create_error
        self.created.append(request)
        transaction_id = f"alfred-tx-{len(self.created)}"
        self.statuses[transaction_id] = "PENDING"
        return GatewayTransaction(
            transaction_id=transaction_id,
            qr_copy_paste=f"00020126580014br.gov.bcb.pix-{transaction_id}",
            qr_image_url=f"https://pay.example.com/qr/{transaction_id}.png",
        )

    async def get_transaction_status(self, transaction_id: str) -> GatewayTransactionStatus:
        self.status_calls += 1
        if self.status_delay:
            await asyncio.sleep(self.status_delay)
        if self.status_error is not None:
            raise self.status_error
        return GatewayTransactionStatus(
            transaction_id=transaction_id,
            status=self.statuses[transaction_id],
            updated_at=utcnow().isoformat(),
        )


@pytest.fixture
def settings():
    return Settings(webhook_secret=WEBHOOK_SECRET, gateway_timeout_seconds=0.5)


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def service(storage, gateway, settings):
    return PointsService(storage=storage, gateway=gateway, settings=settings)


@pytest.fixture
def processor(service, settings):
    return WebhookProcessor(service, settings=settings)


@pytest.fixture
def place_order(service):
    async def _place(amount="100.00", user_id=DEFAULT_USER_ID, payment_method=PaymentMethod.PIX):
        return await service.create_order(
            CreateOrderRequest(
                user_id=user_id,
                requested_amount=Decimal(amount),
                payment_method=payment_method,
            )
        )

    return _place


def build_webhook(order, status, webhook_id=None, transaction_id=None, secret=WEBHOOK_SECRET, external_id=None):
    """Signed webhook body for an order, as the gateway would send it."""
    body = {
        "transactionId": transaction_id or order.gateway_transaction_id,
        "externalId": external_id or order.order_id,
        "status": status,
        "amount": str(order.total_amount),
        "amountType": "BRL",
        "paymentMethod": "PIX",
        "updatedAt": utcnow().isoformat(),
        "metadata": {},
    }
    if webhook_id:
        body["webhookId"] = webhook_id
    raw_body = json.dumps(body).encode("utf-8")
    headers = {"X-Alfred-Signature": "sha256=" + compute_signature(secret, raw_body)}
    return raw_body, headers


@pytest.fixture
def signed_webhook():
    return build_webhook


@pytest.fixture
def deliver(processor):
    async def _deliver(order, status, **kwargs):
        raw_body, headers = build_webhook(order, status, **kwargs)
        payload = WebhookPayload.model_validate_json(raw_body)
        return await processor.process(payload, raw_body, headers=headers)

    return _deliver


@pytest.fixture
def expire_order(storage):
    def _expire(order_id):
        order = storage.order_rows[order_id]
        storage.order_rows[order_id] = order._replace(expires_at=utcnow() - timedelta(minutes=1))

    return _expire
