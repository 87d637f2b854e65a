"""
Monetary Amount Helpers

Amounts are plain Decimals quantized to six places, the precision of the
ledger's numeric columns. NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from typing import Any, Optional
import re

# Set global decimal context for financial precision
getcontext().prec = 28

AMOUNT_QUANTUM = Decimal('0.000001')
ZERO = Decimal('0')

# Debit/credit totals within this distance are considered balanced
BALANCE_EPSILON = Decimal('0.0001')

_CURRENCY_RE = re.compile(r'^[A-Z]{3}$')


def to_amount(value: Any, field_name: str = "amount") -> Decimal:
    """
    Convert an incoming value to a quantized Decimal.

    Strings and ints are accepted; floats are routed through str() so that
    0.1 stays 0.1.

    Raises:
        ValueError: If the value is not numeric
    """
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        amount = value
    else:
        try:
            amount = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            raise ValueError(f"{field_name} must be a numeric value")
    if not amount.is_finite():
        raise ValueError(f"{field_name} must be a finite number")
    return amount.quantize(AMOUNT_QUANTUM, rounding=ROUND_HALF_UP)


def is_nearly_zero(value: Decimal, epsilon: Decimal = BALANCE_EPSILON) -> bool:
    return abs(value) < epsilon


def amounts_balance(debit_total: Decimal, credit_total: Decimal,
                    epsilon: Decimal = BALANCE_EPSILON) -> bool:
    """True when debits and credits agree within epsilon"""
    return abs(debit_total - credit_total) <= epsilon


def normalize_currency_code(code: Optional[str], field_name: str = "currencyCode") -> str:
    """Upper-case and validate an ISO 4217 style code"""
    normalized = (code or "").strip().upper()
    if not _CURRENCY_RE.match(normalized):
        raise ValueError(f"{field_name} must be a 3-letter currency code")
    return normalized


def format_amount(value: Decimal) -> str:
    """Fixed six-place string used in storage and API payloads"""
    return str(to_amount(value))
