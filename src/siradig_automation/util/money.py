from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union


_CENT = Decimal("0.01")


def parse_amount(value: Union[str, int, float, Decimal]) -> Decimal:
    """
    Parse values like:
    - "1234.5"
    - "1.234,50"  (es-AR grouping)
    - "$ 1,234.50"
    - "-$12.34"
    """
    if value is None:
        raise ValueError("parse_amount: value is None")
    if isinstance(value, Decimal):
        return value.quantize(_CENT, rounding=ROUND_HALF_UP)
    if isinstance(value, (int, float)):
        return Decimal(str(value)).quantize(_CENT, rounding=ROUND_HALF_UP)

    s = value.strip().replace("$", "").replace(" ", "")
    if not s:
        raise ValueError("parse_amount: empty string")

    # Handle parentheses as negative
    if s.startswith("(") and s.endswith(")"):
        s = "-" + s[1:-1].strip()

    # The right-most separator is the decimal one; the other is grouping.
    last_comma = s.rfind(",")
    last_dot = s.rfind(".")
    if last_comma > last_dot:
        s = s.replace(".", "").replace(",", ".")
    else:
        s = s.replace(",", "")

    try:
        return Decimal(s).quantize(_CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation as e:
        raise ValueError(f"parse_amount: not a number: {value!r}") from e


def format_portal_amount(value: Union[str, int, float, Decimal]) -> str:
    """Plain two-decimal string with a dot separator, as the portal's amount inputs expect."""
    dec = parse_amount(value)
    return f"{dec:.2f}"
