from __future__ import annotations

import re
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

_UNSAFE_CHARS = re.compile(r"[&<>\"'\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_SPACES = re.compile(r"\s+")

CENTS = Decimal("0.01")


def format_brl(value: str | Decimal) -> str:
    """Format a numeric value as R$ X.XXX,XX."""
    d = Decimal(value)
    formatted = f"{d:,.2f}".replace(",", "X").replace(".", ",").replace("X", ".")
    return f"R$ {formatted}"


def only_digits(value: str | None) -> str:
    """Strip every non-digit (CNPJ, CEP, IE punctuation)."""
    return re.sub(r"\D", "", value or "")


def sanitize_text(value: str | None) -> str:
    """Remove characters unsafe for the NF-e schema and collapse whitespace."""
    if not value:
        return ""
    return _SPACES.sub(" ", _UNSAFE_CHARS.sub("", value)).strip()


def money(value: Decimal) -> Decimal:
    """Quantize to cents, rounding half up."""
    return Decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)


def fmt_money(value: Decimal) -> str:
    return f"{money(value):.2f}"


def fmt_decimal(value: Decimal, places: int) -> str:
    quantum = Decimal(1).scaleb(-places)
    return f"{Decimal(value).quantize(quantum, rounding=ROUND_HALF_UP):.{places}f}"


def fmt_quantity(value: Decimal) -> str:
    """Quantities go out with 4 decimal places."""
    return fmt_decimal(value, 4)


def fmt_unit_price(value: Decimal) -> str:
    """Unit prices go out with 10 decimal places."""
    return fmt_decimal(value, 10)


def format_datetime_tz(dt: datetime) -> str:
    """AAAA-MM-DDThh:mm:ssTZD, e.g. 2025-01-15T10:00:00-03:00."""
    if dt.tzinfo is None:
        raise ValueError("datetime sem fuso horario")
    return dt.isoformat(timespec="seconds")
