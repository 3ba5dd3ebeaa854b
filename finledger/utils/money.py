from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any

_STRIP_CHARS = ",$€£ "


def to_decimal(value: Any) -> Decimal | None:
    """
    Parse a provider amount into a Decimal, or None.

    Floats go through `str()` so 0.1 stays 0.1. Strings may carry thousands separators,
    a currency symbol or accounting parentheses ("(12.50)" is -12.50).
    """
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        return Decimal(int(value))
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    s = str(value).strip()
    negative = s.startswith("(") and s.endswith(")")
    if negative:
        s = s[1:-1]
    for ch in _STRIP_CHARS:
        s = s.replace(ch, "")
    if not s:
        return None
    try:
        d = Decimal(s)
    except InvalidOperation:
        return None
    return -d if negative else d


def finite_decimal(value: Any) -> Decimal | None:
    """Like `to_decimal`, but NaN and +/-Infinity are treated as missing."""
    d = to_decimal(value)
    if d is None or not d.is_finite():
        return None
    return d
