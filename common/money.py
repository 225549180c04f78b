from decimal import Decimal, InvalidOperation
from typing import Any

PAISA = Decimal("0.01")
ZERO = Decimal("0.00")


class InvalidAmountError(ValueError):
    pass


def quantize(value: Decimal) -> Decimal:
    return value.quantize(PAISA)


def parse_amount(value: Any, allow_zero: bool = True) -> Decimal:
    """Normalize user input into a non-negative, paisa-precision Decimal.

    Floats go through ``str`` so that 0.1 stays 0.10 instead of its binary
    expansion. NaN, infinities, negatives, fractions of a paisa and anything
    non-numeric raise InvalidAmountError; nothing is rounded or coerced to
    zero.
    """
    if value is None or isinstance(value, bool):
        raise InvalidAmountError(f"Invalid amount: {value!r}")
    if isinstance(value, float):
        value = str(value)
    if isinstance(value, str):
        value = value.strip().replace(",", "")
    try:
        amount = Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidAmountError(f"Invalid amount: {value!r}")
    if not amount.is_finite():
        raise InvalidAmountError(f"Amount must be a finite number, got {value!r}")
    if amount < 0:
        raise InvalidAmountError(f"Amount cannot be negative, got {value!r}")
    try:
        exact = quantize(amount)
    except InvalidOperation:
        raise InvalidAmountError(f"Amount is too large: {value!r}")
    if exact != amount:
        raise InvalidAmountError(f"Amount has more than 2 decimal places: {value!r}")
    amount = exact
    if not allow_zero and amount == 0:
        raise InvalidAmountError("Amount must be greater than zero")
    return amount
