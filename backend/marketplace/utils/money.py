"""
Money parsing and formatting utilities.

WHAT: Convert user input to fixed-point amounts and back
WHY: Prices must never pass through binary floating point
HOW: decimal.Decimal quantized to two places with HALF_UP rounding
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

from .exceptions import InvalidAmountError

CENT = Decimal("0.01")

# Largest price accepted; the Money column stores the plain string form
MAX_AMOUNT = Decimal("999999999999.99")


def parse_amount(value: Any) -> Decimal:
    """
    Parse a positive monetary amount.

    Accepts Decimal, int or str ("50", "49.99"). Floats are converted through
    their repr so that 19.99 stays 19.99.

    Raises:
        InvalidAmountError: for non-numeric, non-finite, non-positive or
            out-of-range input
    """
    if isinstance(value, bool) or value is None:
        raise InvalidAmountError(value)
    if isinstance(value, float):
        value = repr(value)
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise InvalidAmountError(value)

    if not amount.is_finite() or amount <= 0 or amount > MAX_AMOUNT:
        raise InvalidAmountError(value)

    try:
        quantized = quantize(amount)
    except InvalidOperation:
        raise InvalidAmountError(value)
    if quantized <= 0:
        raise InvalidAmountError(value)
    return quantized


def quantize(amount: Decimal) -> Decimal:
    """Round to whole cents."""
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def format_amount(amount: Decimal, currency: str) -> str:
    """Format for human-readable system messages, e.g. '50.00 GBP'."""
    return f"{quantize(amount)} {currency}"
