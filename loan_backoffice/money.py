"""
Money Helpers Module

Decimal helpers for currency amounts. NEVER uses float for monetary values:
floats coming off the wire are converted through str() first.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from typing import Any, Iterable, Optional

from .errors import ValidationError

# Set global decimal context for financial precision
getcontext().prec = 28

CENT = Decimal('0.01')
ZERO = Decimal('0.00')


def to_decimal(value: Any, field: str = "amount") -> Decimal:
    """Convert a stored or user supplied value into Decimal"""
    if isinstance(value, Decimal):
        return value
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field} must be a number", {"field": field})
    try:
        return Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a number, got {value!r}", {"field": field})


def optional_decimal(value: Any, field: str = "amount") -> Optional[Decimal]:
    """Like to_decimal but None and empty strings stay None"""
    if value is None or value == "":
        return None
    return to_decimal(value, field)


def round2(value: Any) -> Decimal:
    """Round to cents, half away from zero"""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def money_sum(values: Iterable[Any]) -> Decimal:
    """Exact Decimal sum of amounts, rounded to cents"""
    total = ZERO
    for value in values:
        total += to_decimal(value)
    return round2(total)


def format_amount(value: Any) -> str:
    """Serialize an amount the way the record store receives it"""
    return str(round2(value))
