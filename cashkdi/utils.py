"""
Shared helpers: clock, minor-unit money formatting and log masking.

Amounts are integers in minor units everywhere. Decimal is only used at the
edges, to render or parse a major-unit string.
"""
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Optional, Union

MASK = "***MASKED***"


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what the database stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ============================================================================
# Money
# ============================================================================

def format_minor_units(amount: int, exponent: int = 2) -> str:
    """
    Render minor units as a major-unit string.

    >>> format_minor_units(10050)
    '100.50'
    """
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise TypeError(f"Amount must be an integer number of minor units, got {type(amount).__name__}")
    value = Decimal(amount).scaleb(-exponent)
    return f"{value:.{exponent}f}"


def parse_major_units(value: Union[str, int, Decimal], exponent: int = 2) -> int:
    """
    Convert a major-unit amount to minor units without float drift.

    Floats are refused: they cannot represent most decimal amounts exactly.
    """
    if isinstance(value, float):
        raise TypeError("Floating-point amounts are not accepted")
    if isinstance(value, bool):
        raise TypeError("Boolean is not an amount")
    try:
        decimal_value = Decimal(str(value).strip())
    except InvalidOperation:
        raise ValueError(f"Invalid amount: {value!r}")
    scaled = decimal_value.scaleb(exponent)
    if scaled != scaled.to_integral_value():
        raise ValueError(f"Amount {value!r} has more than {exponent} decimal places")
    return int(scaled)


def coerce_minor_units(value: Any) -> Optional[int]:
    """Read an integer minor-unit amount from a provider payload, if there is one."""
    if value is None or isinstance(value, bool) or isinstance(value, float):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


# ============================================================================
# Masking
# ============================================================================

def mask_sensitive(data: Any, sensitive_fields: Iterable[str]) -> Any:
    """Recursively replace values of sensitive keys (case-insensitive)."""
    fields = {f.lower() for f in sensitive_fields}
    return _mask(data, fields)


def _mask(data: Any, fields: set) -> Any:
    if isinstance(data, dict):
        return {
            key: MASK if str(key).lower() in fields else _mask(value, fields)
            for key, value in data.items()
        }
    if isinstance(data, list):
        return [_mask(item, fields) for item in data]
    return data


def mask_phone(phone: Optional[str]) -> str:
    """Keep the country prefix and the last two digits: +226******56."""
    if not phone:
        return ""
    if len(phone) <= 6:
        return phone
    return phone[:4] + "*" * (len(phone) - 6) + phone[-2:]
