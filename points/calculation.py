"""
Points purchase arithmetic.

Points are bought 1:1 against the requested amount; the buyer pays the
requested amount plus a 5% fee. All values are exact decimals in BRL.
"""

from decimal import ROUND_HALF_UP, Decimal

from pydantic import BaseModel

from .errors import OutOfRangeError, ValidationError

FEE_PERCENTAGE = Decimal("0.05")
MIN_PURCHASE_AMOUNT = Decimal("1")
MAX_PURCHASE_AMOUNT = Decimal("10000")

CENTS = Decimal("0.01")


class PurchaseDetails(BaseModel):
    requested_amount: Decimal
    fee_amount: Decimal
    total_amount: Decimal
    points_amount: Decimal
    fee_percentage: Decimal


def _require_positive(amount: Decimal) -> None:
    if amount <= 0:
        raise OutOfRangeError("Requested amount must be positive")


def calculate_fee(requested_amount: Decimal) -> Decimal:
    _require_positive(requested_amount)
    return (requested_amount * FEE_PERCENTAGE).quantize(CENTS, rounding=ROUND_HALF_UP)


def calculate_total_amount(requested_amount: Decimal) -> Decimal:
    return requested_amount + calculate_fee(requested_amount)


def calculate_points_amount(requested_amount: Decimal) -> Decimal:
    _require_positive(requested_amount)
    return requested_amount


def validate_purchase_amount(amount: Decimal) -> None:
    if not isinstance(amount, Decimal):
        raise ValidationError("Purchase amount must be a Decimal")
    if not amount.is_finite():
        raise ValidationError("Purchase amount must be a finite number")
    _require_positive(amount)
    if amount < MIN_PURCHASE_AMOUNT:
        raise OutOfRangeError(f"Minimum purchase amount is R$ {MIN_PURCHASE_AMOUNT}")
    if amount > MAX_PURCHASE_AMOUNT:
        raise OutOfRangeError(f"Maximum purchase amount is R$ {MAX_PURCHASE_AMOUNT}")
    if amount != amount.quantize(CENTS):
        raise ValidationError("Purchase amount must have at most two decimal places")


def calculate_purchase_details(requested_amount: Decimal) -> PurchaseDetails:
    validate_purchase_amount(requested_amount)
    fee_amount = calculate_fee(requested_amount)
    return PurchaseDetails(
        requested_amount=requested_amount,
        fee_amount=fee_amount,
        total_amount=requested_amount + fee_amount,
        points_amount=calculate_points_amount(requested_amount),
        fee_percentage=FEE_PERCENTAGE,
    )
