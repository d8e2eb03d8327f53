from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

ZERO = Decimal("0")


def to_decimal(value: object) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        # repr keeps 0.1 as "0.1" instead of the binary expansion
        return Decimal(repr(value))
    return Decimal(str(value))


def money(value: object, places: int = 2) -> Decimal:
    """Round to the currency's minor unit."""
    exp = Decimal(1).scaleb(-int(places))
    return to_decimal(value).quantize(exp, rounding=ROUND_HALF_UP)


def to_db(value: Decimal | None) -> str | None:
    if value is None:
        return None
    return format(value, "f")


def from_db(value: object) -> Decimal:
    if value is None:
        return ZERO
    return to_decimal(value)
