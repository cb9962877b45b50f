from __future__ import annotations

import re
from datetime import date, datetime
from typing import Union

from dateutil import parser as date_parser


_YEAR_FIRST = re.compile(r"^\d{4}[-/.]")


def parse_invoice_date(value: Union[str, date]) -> date:
    """
    Parse dates like:
    - "15/03/2025"
    - "2025-03-15"
    - "15-3-2025"
    """
    if value is None:
        raise ValueError("parse_invoice_date: value is None")
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    s = value.strip()
    if not s:
        raise ValueError("parse_invoice_date: empty string")
    # Year-first strings are ISO (YYYY-MM-DD); everything else is read day-first.
    year_first = bool(_YEAR_FIRST.match(s))
    dt = date_parser.parse(s, dayfirst=not year_first, yearfirst=year_first)
    return dt.date()


def format_portal_date(value: Union[str, date]) -> str:
    return parse_invoice_date(value).strftime("%d/%m/%Y")
