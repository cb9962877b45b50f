from .cuit import format_cuit, is_valid_cuit, normalize_cuit
from .dates import format_portal_date, parse_invoice_date
from .money import format_portal_amount, parse_amount

__all__ = [
    "format_cuit",
    "is_valid_cuit",
    "normalize_cuit",
    "format_portal_date",
    "parse_invoice_date",
    "format_portal_amount",
    "parse_amount",
]
