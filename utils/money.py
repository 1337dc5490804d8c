from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from flask import current_app, has_app_context

CENT = Decimal("0.01")
DEFAULT_SYMBOL = "KSh"


def to_decimal(value: Any) -> Decimal:
    """Coerce stored/posted numeric values to a 2dp Decimal; junk becomes 0."""
    if value is None or value == "":
        return Decimal("0.00")
    if isinstance(value, float):
        value = repr(value)
    try:
        return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError, TypeError):
        return Decimal("0.00")


def parse_amount(value: Any) -> Decimal | None:
    """Strict variant for user input: None when not a number."""
    if value is None or str(value).strip() == "":
        return None
    try:
        parsed = Decimal(str(value).replace(",", "").strip())
        if not parsed.is_finite():
            return None
        return parsed.quantize(CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError):
        return None


def format_kes(amount: Any, symbol: str | None = None) -> str:
    """Kenyan shilling display format, e.g. ``KSh 3,000.00``.

    The symbol comes from ``CURRENCY_SYMBOL`` when an app is active.
    """
    if symbol is None:
        symbol = current_app.config.get("CURRENCY_SYMBOL", DEFAULT_SYMBOL) if has_app_context() else DEFAULT_SYMBOL
    value = to_decimal(amount)
    sign = "-" if value < 0 else ""
    return f"{sign}{symbol} {abs(value):,.2f}"
