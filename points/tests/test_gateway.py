"""
Unit Tests for the Alfred Pay client and status mapping
"""

import json

import httpx
import pytest
from decimal import Decimal

from points.config import Settings
from points.errors import GatewayError, GatewayTimeoutError, TransactionNotFoundError
from points.gateway import AlfredPayClient, CreateTransactionRequest, map_gateway_status
from points.models import OrderStatus

BASE_URL = "https://alfred.example.com/"


def make_client(handler):
    return AlfredPayClient(
        base_url=BASE_URL,
        api_key="key-123",
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


class TestStatusMapping:
    """Tests for the shared external-to-internal status mapping."""

    @pytest.mark.parametrize(
        "external, internal",
        [
            ("PENDING", OrderStatus.PENDING),
            ("PROCESSING", OrderStatus.PENDING),
            ("COMPLETED", OrderStatus.COMPLETED),
            ("completed", OrderStatus.COMPLETED),
            ("PAID", OrderStatus.COMPLETED),
            ("FAILED", OrderStatus.FAILED),
            ("EXPIRED", OrderStatus.EXPIRED),
            ("CANCELLED", OrderStatus.CANCELLED),
            ("CANCELED", OrderStatus.CANCELLED),
        ],
    )
    def test_known_statuses(self, external, internal):
        """Known external statuses map to internal ones."""
        assert map_gateway_status(external) == internal

    @pytest.mark.parametrize("external", ["SOMETHING_NEW", "", None])
    def test_unknown_defaults_to_pending(self, external):
        """Unknown statuses default to PENDING."""
        assert map_gateway_status(external) == OrderStatus.PENDING


@pytest.mark.asyncio
class TestAlfredPayClient:
    """Tests for request shaping and error translation."""

    async def test_create_transaction(self):
        """Creation posts the camelCase body with the API key."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["api_key"] = request.headers.get("x-api-key")
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "transactionId": "tx-1",
                    "qrCopyPaste": "000201pix",
                    "qrImageUrl": "https://qr/tx-1.png",
                },
            )

        client = make_client(handler)
        transaction = await client.create_transaction(
            CreateTransactionRequest(
                amount=Decimal("105.00"),
                crypto_amount=Decimal("100.00"),
                wallet_address="wallet-1",
                external_id="order-1",
            )
        )

        assert transaction.transaction_id == "tx-1"
        assert transaction.qr_copy_paste == "000201pix"
        assert seen["url"] == "https://alfred.example.com/v2/gateway/transactions/deposit"
        assert seen["api_key"] == "key-123"
        assert seen["body"]["externalId"] == "order-1"
        assert seen["body"]["cryptoType"] == "DEPIX"
        assert Decimal(seen["body"]["amount"]) == Decimal("105.00")

    async def test_get_transaction_status(self):
        """Status lookups parse the gateway response."""
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/v2/gateway/transactions/status/tx-1"
            return httpx.Response(200, json={"status": "COMPLETED", "txid": "abc", "cryptoAmount": "100.00"})

        status = await make_client(handler).get_transaction_status("tx-1")

        assert status.status == "COMPLETED"
        assert status.txid == "abc"
        assert status.crypto_amount == Decimal("100.00")

    async def test_not_found(self):
        """A 404 becomes TransactionNotFoundError."""
        client = make_client(lambda request: httpx.Response(404, json={"message": "not found"}))
        with pytest.raises(TransactionNotFoundError) as exc_info:
            await client.get_transaction_status("tx-404")
        assert exc_info.value.status_code == 404

    async def test_server_error(self):
        """Server errors keep their status code."""
        client = make_client(lambda request: httpx.Response(503))
        with pytest.raises(GatewayError) as exc_info:
            await client.get_transaction_status("tx-1")
        assert exc_info.value.status_code == 503
        assert not isinstance(exc_info.value, TransactionNotFoundError)

    async def test_timeout(self):
        """Timeouts become GatewayTimeoutError."""
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(GatewayTimeoutError):
            await make_client(handler).get_transaction_status("tx-1")

    async def test_rejected_creation(self):
        """An explicit rejection raises GatewayError."""
        client = make_client(lambda request: httpx.Response(200, json={"success": False, "message": "limit"}))
        with pytest.raises(GatewayError):
            await client.create_transaction(
                CreateTransactionRequest(amount=Decimal("1.05"), crypto_amount=Decimal("1"), wallet_address="w")
            )

    @pytest.mark.parametrize(
        "body", [{"success": True}, {"success": True, "data": {"qrCopyPaste": "x"}}, ["tx-1"]]
    )
    async def test_unreadable_creation_response(self, body):
        """A 200 body without a transaction id is reported as a gateway error."""
        client = make_client(lambda request: httpx.Response(200, json=body))
        with pytest.raises(GatewayError, match="unreadable"):
            await client.create_transaction(
                CreateTransactionRequest(amount=Decimal("1.05"), crypto_amount=Decimal("1"), wallet_address="w")
            )

    @pytest.mark.parametrize("body", [{"success": True, "data": {"status": "COMPLETED"}}, "COMPLETED", None])
    async def test_unreadable_status_response(self, body):
        """A 200 body without a status is reported as a gateway error."""
        client = make_client(lambda request: httpx.Response(200, json=body))
        with pytest.raises(GatewayError, match="unreadable"):
            await client.get_transaction_status("tx-1")


class TestClientConfiguration:
    """Tests for building the client from settings."""

    def test_from_settings(self):
        """The client is built from settings."""
        settings = Settings(gateway_base_url="https://alfred.example.com", gateway_api_key="k", gateway_timeout_seconds=3)
        client = AlfredPayClient.from_settings(settings)

        assert client.base_url == "https://alfred.example.com"
        assert client.timeout == 3

    def test_missing_credentials(self):
        """Missing credentials are refused."""
        with pytest.raises(ValueError):
            AlfredPayClient.from_settings(Settings())
