"""Money conversion helpers using integer minor units (cents)."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_CEILING, ROUND_FLOOR
from typing import Optional

from .errors import ValidationError


CENTS_PER_UNIT = 100
_CENT_QUANT = Decimal("0.01")
# Upper bound keeps every amount inside a SQLite INTEGER
MAX_CENTS = 10 ** 15


def to_decimal(value: Decimal | float | int | str) -> Decimal:
    """Parse an amount, rejecting NaN/infinity and garbage."""
    try:
        dec = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"Invalid amount: {value!r}") from exc
    if not dec.is_finite():
        raise ValidationError(f"Invalid amount: {value!r}")
    return dec


def _quantize(value: Decimal | float | int | str, rounding: Optional[str] = None) -> Decimal:
    dec = to_decimal(value)
    try:
        return dec.quantize(_CENT_QUANT, rounding=rounding)
    except InvalidOperation as exc:
        # More significant digits than the decimal context holds
        raise ValidationError(f"Amount out of range: {value!r}") from exc


def _bounded(value: Decimal | float | int | str, cents: int) -> int:
    if abs(cents) > MAX_CENTS:
        raise ValidationError(f"Amount out of range: {value!r}")
    return cents


def has_cent_precision(value: Decimal | float | int | str) -> bool:
    """True when the amount has at most two decimal places."""
    return to_decimal(value) == _quantize(value)


def amount_to_cents(value: Decimal | float | int | str) -> int:
    """Convert a spend amount to cents, rounding up (conservative)."""
    return _bounded(value, int(_quantize(value, ROUND_CEILING) * CENTS_PER_UNIT))


def limit_to_cents(value: Decimal | float | int | str) -> int:
    """Convert a spending limit to cents, rounding down (conservative)."""
    return _bounded(value, int(_quantize(value, ROUND_FLOOR) * CENTS_PER_UNIT))


def cents_to_decimal(value: int) -> Decimal:
    return (Decimal(value) / Decimal(CENTS_PER_UNIT)).quantize(_CENT_QUANT)


def cents_to_float(value: int) -> float:
    """Convert cents to a float (for JSON responses)."""
    return float(cents_to_decimal(value))


def format_cents(value: int) -> str:
    """Format integer cents as a currency string."""
    return f"${cents_to_decimal(value):.2f}"
