# services/quote.py
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional, Union

from servicepay.core.config import PaymentPolicy
from servicepay.core.errors import PaymentValidationError
from servicepay.models.payment_model import PaymentType

CENT = Decimal("0.01")
Number = Union[Decimal, int, float, str]


def to_money(value: Number) -> Decimal:
    """Decimal rounded to the cent, half-up. Floats go through str() first."""
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise PaymentValidationError(f"Invalid amount: {value!r}") from e
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class Quote:
    payment_type: PaymentType
    cost: Decimal
    amount: Decimal
    discount_amount: Decimal
    remaining_balance: Decimal
    discount_percent: Decimal

    def to_dict(self) -> dict:
        return {
            "paymentType": self.payment_type.value,
            "cost": str(self.cost),
            "amount": str(self.amount),
            "discountAmount": str(self.discount_amount),
            "remainingBalance": str(self.remaining_balance),
            "discountPercent": str(self.discount_percent),
        }


def calculate_quote(
    cost: Number,
    payment_type: PaymentType,
    discount_percent: Optional[Number] = None,
    policy: Optional[PaymentPolicy] = None,
) -> Quote:
    """
    Chargeable amount for one payment against a request.

    split: charge cost * split_ratio now, the rest on completion.
    full:  charge cost minus the discount.

    Both legs are rounded before the complement is taken, so
    amount + remaining == cost and amount + discount == cost to the cent.
    """
    policy = policy or PaymentPolicy()
    cost = to_money(cost)
    if cost <= 0:
        raise PaymentValidationError("No payment can be created against a zero or negative cost")

    payment_type = PaymentType(payment_type)
    if payment_type == PaymentType.SPLIT:
        amount = to_money(cost * policy.split_ratio)
        return Quote(
            payment_type=payment_type,
            cost=cost,
            amount=amount,
            discount_amount=Decimal("0.00"),
            remaining_balance=cost - amount,
            discount_percent=Decimal("0"),
        )

    percent = Decimal(str(discount_percent)) if discount_percent is not None else policy.discount_percent
    discount_amount = to_money(cost * percent / Decimal(100))
    return Quote(
        payment_type=payment_type,
        cost=cost,
        amount=cost - discount_amount,
        discount_amount=discount_amount,
        remaining_balance=Decimal("0.00"),
        discount_percent=percent,
    )


def validate_discount(percent: Number, policy: Optional[PaymentPolicy] = None) -> Decimal:
    """Range check applied where an admin sets the discount, never at charge time."""
    policy = policy or PaymentPolicy()
    try:
        value = Decimal(str(percent))
    except InvalidOperation as e:
        raise PaymentValidationError(f"Invalid discount: {percent!r}") from e
    if not (policy.min_discount_percent <= value <= policy.max_discount_percent):
        raise PaymentValidationError(
            f"Discount must be between {policy.min_discount_percent}% and {policy.max_discount_percent}%",
            details={"discount_percent": str(value)},
        )
    return value
