from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Optional

import httpx
import structlog
from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from .config import Settings
from .errors import GatewayError, GatewayTimeoutError, TransactionNotFoundError
from .models import OrderStatus

logger = structlog.get_logger(__name__)


# Both reconciliation paths go through this table, so a given external status
# always lands on the same internal one.
GATEWAY_STATUS_MAP = {
    "PENDING": OrderStatus.PENDING,
    "PROCESSING": OrderStatus.PENDING,
    "AWAITING_CONFIRMATION": OrderStatus.PENDING,
    "REVIEW": OrderStatus.PENDING,
    "COMPLETED": OrderStatus.COMPLETED,
    "COMPLETE": OrderStatus.COMPLETED,
    "PAID": OrderStatus.COMPLETED,
    "FAILED": OrderStatus.FAILED,
    "EXPIRED": OrderStatus.EXPIRED,
    "CANCELLED": OrderStatus.CANCELLED,
    "CANCELED": OrderStatus.CANCELLED,
    "REFUNDED": OrderStatus.CANCELLED,
}


def map_gateway_status(external_status: Optional[str]) -> OrderStatus:
    key = (external_status or "").strip().upper()
    mapped = GATEWAY_STATUS_MAP.get(key)
    if mapped is None:
        logger.warning("unknown_gateway_status", external_status=external_status, defaulted_to="PENDING")
        return OrderStatus.PENDING
    return mapped


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class CreateTransactionRequest(_CamelModel):
    amount: Decimal
    amount_type: str = "BRL"
    crypto_type: str = "DEPIX"
    crypto_amount: Decimal
    payment_method: str = "PIX"
    type: str = "BUY"
    wallet_address: str
    network: str = "onchain"
    external_id: Optional[str] = None
    description: Optional[str] = None


class GatewayTransaction(_CamelModel):
    transaction_id: str
    qr_copy_paste: Optional[str] = None
    qr_image_url: Optional[str] = None
    provider_id: Optional[str] = None


class GatewayTransactionStatus(_CamelModel):
    transaction_id: Optional[str] = None
    status: str
    updated_at: Optional[str] = None
    txid: Optional[str] = None
    crypto_amount: Optional[Decimal] = None
    crypto_type: Optional[str] = None
    network: Optional[str] = None


class PaymentGateway(ABC):
    @abstractmethod
    async def create_transaction(self, request: CreateTransactionRequest) -> GatewayTransaction:
        pass

    @abstractmethod
    async def get_transaction_status(self, transaction_id: str) -> GatewayTransactionStatus:
        pass


class AlfredPayClient(PaymentGateway):
    """Alfred Pay gateway over HTTP."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 15.0,
        create_timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        if not base_url:
            raise ValueError("Gateway base URL is required")
        if not api_key:
            raise ValueError("Gateway API key is required")
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.create_timeout = create_timeout
        self._client = client or httpx.AsyncClient()

    @classmethod
    def from_settings(cls, settings: Settings) -> "AlfredPayClient":
        return cls(
            base_url=settings.gateway_base_url or "",
            api_key=settings.gateway_api_key or "",
            timeout=settings.gateway_timeout_seconds,
            create_timeout=settings.gateway_create_timeout_seconds,
        )

    @property
    def _headers(self) -> dict:
        return {"x-api-key": self.api_key, "Content-Type": "application/json"}

    async def create_transaction(self, request: CreateTransactionRequest) -> GatewayTransaction:
        payload = request.model_dump(mode="json", by_alias=True, exclude_none=True)
        data = await self._request(
            "POST",
            "/v2/gateway/transactions/deposit",
            timeout=self.create_timeout,
            json=payload,
            context="create_transaction",
        )
        if isinstance(data, dict) and data.get("success") is False:
            raise GatewayError(f"Gateway rejected the transaction: {data.get('message') or 'unknown error'}")
        return self._parse(GatewayTransaction, data, context="create_transaction")

    async def get_transaction_status(self, transaction_id: str) -> GatewayTransactionStatus:
        data = await self._request(
            "GET",
            f"/v2/gateway/transactions/status/{transaction_id}",
            timeout=self.timeout,
            context="get_transaction_status",
        )
        return self._parse(GatewayTransactionStatus, data, context="get_transaction_status")

    async def aclose(self) -> None:
        await self._client.aclose()

    @staticmethod
    def _parse(model: type[_CamelModel], data: Any, context: str) -> Any:
        if not isinstance(data, dict):
            logger.error("gateway_bad_response", context=context, body_type=type(data).__name__)
            raise GatewayError("Payment gateway returned an unreadable response")
        try:
            return model.model_validate(data)
        except PydanticValidationError as e:
            logger.error("gateway_bad_response", context=context, error_count=e.error_count())
            raise GatewayError("Payment gateway returned an unreadable response") from e

    async def _request(self, method: str, path: str, timeout: float, context: str, **kwargs) -> Any:
        try:
            response = await self._client.request(
                method,
                f"{self.base_url}{path}",
                headers=self._headers,
                timeout=timeout,
                **kwargs,
            )
            response.raise_for_status()
            return response.json()
        except httpx.TimeoutException as e:
            logger.error("gateway_timeout", context=context, error=str(e))
            raise GatewayTimeoutError("Payment gateway timeout") from e
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            logger.error("gateway_http_error", context=context, status_code=status_code)
            if status_code == 404:
                raise TransactionNotFoundError("Transaction not found", status_code=404) from e
            if status_code in (401, 403):
                raise GatewayError("Payment gateway rejected the credentials", status_code=status_code) from e
            raise GatewayError(f"Payment gateway error ({status_code})", status_code=status_code) from e
        except httpx.HTTPError as e:
            logger.error("gateway_transport_error", context=context, error=str(e))
            raise GatewayError("Payment gateway unavailable") from e
        except ValueError as e:
            logger.error("gateway_bad_response", context=context, error=str(e))
            raise GatewayError("Payment gateway returned an unreadable response") from e
