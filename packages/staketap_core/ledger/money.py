"""Amount and currency normalization for the single-currency ledger."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
import time
from typing import Any, Optional, Union


SUPPORTED_CURRENCY = "USD"
ZERO = Decimal("0")
CENT = Decimal("0.01")
MAX_AMOUNT = Decimal("1000000000")

Number = Union[int, float]


def now_ms() -> int:
    return int(time.time() * 1000)


def parse_amount(value: Any) -> Optional[Decimal]:
    """Return a positive amount in whole cents, or None.

    Amounts finer than a cent or above ``MAX_AMOUNT`` are refused rather than
    rounded, so balance arithmetic stays exact.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        amount = value
    else:
        try:
            amount = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            return None
    if not amount.is_finite() or amount <= ZERO or amount > MAX_AMOUNT:
        return None
    cents = amount.quantize(CENT)
    if cents != amount:
        return None
    return cents


def parse_stored_amount(value: Any) -> Decimal:
    """Lenient reader for snapshot rows: anything unusable becomes zero."""
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return ZERO
    if not amount.is_finite() or amount < ZERO:
        return ZERO
    return amount


def normalize_currency(value: Any) -> Optional[str]:
    code = str(value or "").strip().upper()
    if code == SUPPORTED_CURRENCY:
        return SUPPORTED_CURRENCY
    return None


def normalize_player_id(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def money_out(amount: Decimal) -> Number:
    """JSON-friendly rendering: integral amounts as int, the rest as float."""
    if amount == amount.to_integral_value():
        return int(amount)
    return float(amount)
