from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from .errors import (
    InsufficientAvailableError,
    InsufficientPendingError,
    InvalidStateTransitionError,
    ValidationError,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


TERMINAL_STATUSES = frozenset(
    {OrderStatus.COMPLETED, OrderStatus.FAILED, OrderStatus.CANCELLED, OrderStatus.EXPIRED}
)

FAILURE_STATUSES = frozenset({OrderStatus.FAILED, OrderStatus.CANCELLED, OrderStatus.EXPIRED})

ALLOWED_TRANSITIONS = {
    OrderStatus.PENDING: frozenset(OrderStatus),
    OrderStatus.PROCESSING: frozenset(OrderStatus) - {OrderStatus.PENDING},
}


class PaymentMethod(str, Enum):
    PIX = "PIX"
    CARD = "CARD"
    BANK_TRANSFER = "BANK_TRANSFER"
    CRYPTO = "CRYPTO"
    WISE = "WISE"
    TICKET = "TICKET"
    USDT = "USDT"
    PAYPAL = "PAYPAL"
    SWIFT = "SWIFT"
    NOMAD = "NOMAD"


class PointsTransactionType(str, Enum):
    PENDING = "PENDING"
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"
    REFUND = "REFUND"


class ChangedBy(str, Enum):
    SYSTEM = "SYSTEM"
    USER = "USER"
    ADMIN = "ADMIN"
    ALFRED_WEBHOOK = "ALFRED_WEBHOOK"
    POLLING_SERVICE = "POLLING_SERVICE"


class Entity(BaseModel):
    """Immutable record; every change goes through `_replace`, which re-validates."""

    model_config = ConfigDict(frozen=True)

    def _replace(self, **changes: Any):
        data = self.model_dump()
        data.update(changes)
        return type(self).model_validate(data)


class Order(Entity):
    id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    requested_amount: Decimal
    fee_amount: Decimal
    total_amount: Decimal
    points_amount: Decimal
    status: OrderStatus = OrderStatus.PENDING
    payment_method: PaymentMethod
    gateway_transaction_id: Optional[str] = None
    qr_code: Optional[str] = None
    qr_image_url: Optional[str] = None
    expires_at: Optional[datetime] = None
    metadata: dict = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _check_amounts(self) -> "Order":
        if self.requested_amount <= 0:
            raise ValueError("Requested amount must be positive")
        if self.fee_amount < 0:
            raise ValueError("Fee amount cannot be negative")
        if self.total_amount <= 0:
            raise ValueError("Total amount must be positive")
        if self.points_amount <= 0:
            raise ValueError("Points amount must be positive")
        if self.requested_amount + self.fee_amount != self.total_amount:
            raise ValueError("Total amount must equal requested amount plus fee")
        if self.points_amount != self.requested_amount:
            raise ValueError("Points amount must equal requested amount (1:1 conversion)")
        return self

    def update_status(self, new_status: OrderStatus, metadata: Optional[dict] = None) -> "Order":
        allowed = ALLOWED_TRANSITIONS.get(self.status, frozenset({self.status}))
        if new_status not in allowed:
            raise InvalidStateTransitionError(
                f"Cannot move order {self.id} from {self.status.value} to {new_status.value}"
            )
        return self._replace(
            status=new_status,
            metadata={**self.metadata, **(metadata or {})},
            updated_at=utcnow(),
        )

    def set_gateway_data(
        self,
        transaction_id: str,
        qr_code: Optional[str],
        qr_image_url: Optional[str],
        expiry_minutes: int = 20,
    ) -> "Order":
        now = utcnow()
        return self._replace(
            gateway_transaction_id=transaction_id,
            qr_code=qr_code,
            qr_image_url=qr_image_url,
            expires_at=now + timedelta(minutes=expiry_minutes),
            updated_at=now,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) > self.expires_at

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def can_be_processed(self) -> bool:
        return self.status == OrderStatus.PENDING and not self.is_expired()

    def can_be_completed(self) -> bool:
        return self.status in (OrderStatus.PENDING, OrderStatus.PROCESSING) and not self.is_expired()

    def can_be_cancelled(self) -> bool:
        return self.status in (OrderStatus.PENDING, OrderStatus.PROCESSING)


def _require_positive(amount: Decimal, what: str) -> None:
    if amount <= 0:
        raise ValidationError(f"{what} amount must be positive")


class UserBalance(Entity):
    id: str = Field(default_factory=new_id, min_length=1)
    user_id: str = Field(min_length=1)
    available_points: Decimal = Decimal("0")
    pending_points: Decimal = Decimal("0")
    total_points: Decimal = Decimal("0")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _check_conservation(self) -> "UserBalance":
        if self.available_points < 0:
            raise ValueError("Available points cannot be negative")
        if self.pending_points < 0:
            raise ValueError("Pending points cannot be negative")
        if self.total_points < 0:
            raise ValueError("Total points cannot be negative")
        if self.available_points + self.pending_points != self.total_points:
            raise ValueError("Total points must equal available plus pending points")
        return self

    def add_pending(self, amount: Decimal) -> "UserBalance":
        _require_positive(amount, "Pending")
        return self._replace(
            pending_points=self.pending_points + amount,
            total_points=self.total_points + amount,
            updated_at=utcnow(),
        )

    def convert_pending_to_available(self, amount: Decimal) -> "UserBalance":
        _require_positive(amount, "Conversion")
        if amount > self.pending_points:
            raise InsufficientPendingError(
                f"Cannot convert {amount} points, only {self.pending_points} pending"
            )
        return self._replace(
            pending_points=self.pending_points - amount,
            available_points=self.available_points + amount,
            updated_at=utcnow(),
        )

    def release_pending(self, amount: Decimal) -> "UserBalance":
        _require_positive(amount, "Release")
        if amount > self.pending_points:
            raise InsufficientPendingError(
                f"Cannot release {amount} points, only {self.pending_points} pending"
            )
        return self._replace(
            pending_points=self.pending_points - amount,
            total_points=self.total_points - amount,
            updated_at=utcnow(),
        )

    def credit_points(self, amount: Decimal) -> "UserBalance":
        _require_positive(amount, "Credit")
        return self._replace(
            available_points=self.available_points + amount,
            total_points=self.total_points + amount,
            updated_at=utcnow(),
        )

    def debit_points(self, amount: Decimal) -> "UserBalance":
        _require_positive(amount, "Debit")
        if amount > self.available_points:
            raise InsufficientAvailableError("Insufficient available points")
        return self._replace(
            available_points=self.available_points - amount,
            total_points=self.total_points - amount,
            updated_at=utcnow(),
        )


class PointsTransaction(Entity):
    id: str = Field(default_factory=new_id, min_length=1)
    user_id: str = Field(min_length=1)
    order_id: Optional[str] = None
    type: PointsTransactionType
    amount: Decimal = Field(gt=0)
    description: str
    metadata: dict = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _check_description(self) -> "PointsTransaction":
        if not self.description.strip():
            raise ValueError("Transaction description is required")
        return self

    def update_type(self, new_type: PointsTransactionType, metadata: Optional[dict] = None) -> "PointsTransaction":
        return self._replace(
            type=new_type,
            metadata={**self.metadata, **(metadata or {})},
            updated_at=utcnow(),
        )

    def is_pending(self) -> bool:
        return self.type == PointsTransactionType.PENDING

    def is_credit(self) -> bool:
        return self.type == PointsTransactionType.CREDIT

    def is_debit(self) -> bool:
        return self.type == PointsTransactionType.DEBIT

    def is_refund(self) -> bool:
        return self.type == PointsTransactionType.REFUND


class OrderStatusHistory(Entity):
    id: str = Field(default_factory=new_id, min_length=1)
    order_id: str = Field(min_length=1)
    previous_status: Optional[OrderStatus] = None
    new_status: OrderStatus
    changed_by: ChangedBy
    reason: str
    metadata: dict = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _check_reason(self) -> "OrderStatusHistory":
        if not self.reason.strip():
            raise ValueError("Reason for status change is required")
        return self

    def is_initial_status(self) -> bool:
        return self.previous_status is None

    def is_status_change(self) -> bool:
        return self.previous_status is not None and self.previous_status != self.new_status

    def was_changed_by_system(self) -> bool:
        return self.changed_by in (ChangedBy.SYSTEM, ChangedBy.ALFRED_WEBHOOK, ChangedBy.POLLING_SERVICE)

    def was_changed_by_user(self) -> bool:
        return self.changed_by in (ChangedBy.USER, ChangedBy.ADMIN)


class WebhookLog(Entity):
    id: str = Field(default_factory=new_id, min_length=1)
    webhook_id: Optional[str] = None
    transaction_id: str
    external_id: str
    status: str
    previous_status: Optional[str] = None
    payload: dict = Field(default_factory=dict)
    signature: str = ""
    is_valid: bool = False
    error_message: Optional[str] = None
    processing_time_ms: Optional[int] = None
    processed_at: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)

    def mark_valid(self) -> "WebhookLog":
        return self._replace(is_valid=True, error_message=None)

    def mark_invalid(self, error_message: str) -> "WebhookLog":
        return self._replace(is_valid=False, error_message=error_message)

    def with_processing_time(self, time_ms: int) -> "WebhookLog":
        return self._replace(processing_time_ms=time_ms)

    def is_processed_recently(self, max_age_minutes: int = 5, now: Optional[datetime] = None) -> bool:
        return self.processed_at > (now or utcnow()) - timedelta(minutes=max_age_minutes)

    def has_error(self) -> bool:
        return not self.is_valid or bool(self.error_message)


class CreateOrderRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    requested_amount: Decimal = Field(..., description="Amount in BRL, converted 1:1 into points")
    payment_method: PaymentMethod = PaymentMethod.PIX
    description: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "user_id": "550e8400-e29b-41d4-a716-446655440000",
            "requested_amount": "100.00",
            "payment_method": "PIX",
        }
    })


class CreateOrderResponse(BaseModel):
    order_id: str
    user_id: str
    status: OrderStatus
    requested_amount: Decimal
    fee_amount: Decimal
    total_amount: Decimal
    points_amount: Decimal
    qr_code: Optional[str] = None
    qr_image_url: Optional[str] = None
    expires_at: Optional[datetime] = None
    gateway_transaction_id: Optional[str] = None


class OrderStatusResponse(BaseModel):
    order_id: str
    status: OrderStatus
    status_changed: bool
    gateway_transaction_id: Optional[str] = None
    points_amount: Decimal
    requested_amount: Decimal
    total_amount: Decimal
    updated_at: datetime
    last_webhook_at: Optional[datetime] = None


class CreditPointsRequest(BaseModel):
    order_id: str
    gateway_transaction_id: Optional[str] = None
    metadata: dict = Field(default_factory=dict)


class CreditPointsResponse(BaseModel):
    success: bool
    user_id: str
    points_amount: Decimal
    new_available_balance: Decimal
    transaction_id: str


class HistoryPage(BaseModel):
    items: list[OrderStatusHistory]
    total: int
    page: int
    limit: int
    total_pages: int


class WebhookPayload(BaseModel):
    """Status notification pushed by the payment gateway."""

    webhook_id: Optional[str] = None
    transaction_id: str = Field(..., min_length=1)
    status: str = Field(..., min_length=1)
    previous_status: Optional[str] = None
    external_id: str = Field(..., min_length=1)
    amount: Decimal
    amount_type: str
    payment_method: Optional[str] = None
    tx_hash: Optional[str] = None
    updated_at: datetime
    metadata: dict = Field(default_factory=dict)
    signature: str = ""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class WebhookResult(BaseModel):
    success: bool
    message: str
    processed: bool = False
    order_id: Optional[str] = None
    processing_time_ms: Optional[int] = None
    webhook_log_id: Optional[str] = None
    error_code: Optional[str] = None


class WebhookWindowStats(BaseModel):
    total: int = 0
    valid: int = 0
    invalid: int = 0
    avg_processing_time_ms: Optional[float] = None


class WebhookHealth(BaseModel):
    status: str
    timestamp: datetime
    last_24h: WebhookWindowStats
    last_1h: WebhookWindowStats
