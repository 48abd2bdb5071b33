"""Decimal helpers for store-credit amounts."""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from gymcredit.core.exceptions import BadRequestError

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value: Decimal | int | str) -> Decimal:
    """Coerce to a 2-place Decimal. Floats are rejected to avoid binary rounding."""
    if isinstance(value, float):
        raise BadRequestError("Monetary amounts must be Decimal, int or str, not float")
    try:
        return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation as e:
        raise BadRequestError(f"Invalid amount: {value!r}") from e


def positive_money(value: Decimal | int | str) -> Decimal:
    amount = to_money(value)
    if amount <= ZERO:
        raise BadRequestError("Amount must be positive", details={"amount": str(amount)})
    return amount
