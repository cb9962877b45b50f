from __future__ import annotations

import re


_NON_DIGITS = re.compile(r"\D+")
_WEIGHTS = (5, 4, 3, 2, 7, 6, 5, 4, 3, 2)


def normalize_cuit(value: str) -> str:
    """Strip dashes/spaces/dots: "20-12345678-6" -> "20123456786"."""
    if value is None:
        raise ValueError("normalize_cuit: value is None")
    return _NON_DIGITS.sub("", value)


def _check_digit(first_ten: str) -> int:
    total = sum(int(d) * w for d, w in zip(first_ten, _WEIGHTS))
    remainder = total % 11
    if remainder == 0:
        return 0
    if remainder == 1:
        return 9
    return 11 - remainder


def is_valid_cuit(value: str) -> bool:
    digits = normalize_cuit(value or "")
    if len(digits) != 11:
        return False
    return _check_digit(digits[:10]) == int(digits[10])


def format_cuit(value: str) -> str:
    """
    Format as XX-XXXXXXXX-X. Values that are not 11 digits are returned unchanged
    so callers can still log what they were given.
    """
    digits = normalize_cuit(value or "")
    if len(digits) != 11:
        return value
    return f"{digits[:2]}-{digits[2:10]}-{digits[10]}"
