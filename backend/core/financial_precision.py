"""
BUDGET AGGREGATION - DECIMAL PRECISION & FINANCIAL UTILITIES

This module provides:
1. Decimal precision lock (2-decimal places)
2. Safe financial calculations for spent/remaining roll-ups
3. Value validation (no negative or zero amounts)
4. Rounding at calculation boundary only
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Union
import logging

logger = logging.getLogger(__name__)

# Precision configuration
DECIMAL_PLACES = 2
QUANTIZE_PATTERN = Decimal('0.01')


class FinancialPrecisionError(Exception):
    """Raised when financial precision validation fails"""
    pass


class NegativeValueError(Exception):
    """Raised when a negative (or zero, where positive is required) value is detected"""
    pass


def to_decimal(value: Union[float, int, str, Decimal]) -> Decimal:
    """
    Convert any numeric value to Decimal.
    Does NOT round - preserves full precision for intermediate calculations.
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise FinancialPrecisionError("Cannot convert bool to Decimal")
    if isinstance(value, (int, float)):
        # Convert via string to avoid float precision issues
        return Decimal(str(value))
    if isinstance(value, str):
        return Decimal(value)
    if value is None:
        return Decimal('0')
    raise FinancialPrecisionError(f"Cannot convert {type(value)} to Decimal")


def round_financial(value: Union[float, int, str, Decimal]) -> Decimal:
    """
    Round a value to 2 decimal places (ROUND_HALF_UP).
    This should be called ONLY at calculation boundaries.
    """
    decimal_value = to_decimal(value)
    return decimal_value.quantize(QUANTIZE_PATTERN, rounding=ROUND_HALF_UP)


def to_float(value: Decimal) -> float:
    """
    Convert Decimal back to float for MongoDB storage.
    Rounds to 2 decimal places first.
    """
    return float(round_financial(value))


def validate_positive(value: Union[float, int, Decimal], field_name: str) -> None:
    """Raise NegativeValueError if value <= 0."""
    if to_decimal(value) <= Decimal('0'):
        raise NegativeValueError(
            f"Financial value '{field_name}' must be positive: {value}"
        )


def safe_divide(numerator: Union[float, int, Decimal],
                denominator: Union[float, int, Decimal]) -> Decimal:
    """Safe division with zero check"""
    denom = to_decimal(denominator)
    if denom == Decimal('0'):
        return Decimal('0')
    return to_decimal(numerator) / denom


def safe_subtract(a: Union[float, int, Decimal], b: Union[float, int, Decimal]) -> Decimal:
    """Safe subtraction preserving precision"""
    return to_decimal(a) - to_decimal(b)


def safe_add(*values: Union[float, int, Decimal]) -> Decimal:
    """Safe addition of multiple values"""
    result = Decimal('0')
    for v in values:
        result += to_decimal(v)
    return result


def sum_amounts(documents: Iterable[dict], field: str = "amount") -> Decimal:
    """Sum a numeric field across documents, treating missing values as zero."""
    return safe_add(*(doc.get(field) or 0 for doc in documents))


def calculate_balance(
    allocated: Union[float, int, Decimal],
    spent: Union[float, int, Decimal]
) -> dict:
    """
    LOCKED FORMULAS:
    - remaining = allocated - spent
    - utilisation_percentage = spent / allocated * 100 (0 when nothing allocated)

    Returns rounded values ready for storage.
    """
    remaining = safe_subtract(allocated, spent)
    utilisation = safe_divide(spent, allocated) * Decimal('100')
    return {
        'spent': to_float(spent),
        'remaining': to_float(remaining),
        'utilisation_percentage': to_float(utilisation),
    }
