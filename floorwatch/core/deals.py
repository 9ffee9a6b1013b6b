from __future__ import annotations

from decimal import Decimal, InvalidOperation


def to_decimal(value: object) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        parsed = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not parsed.is_finite():
        return None
    return parsed


def is_acceptable_listing_price(price: Decimal) -> bool:
    """Only positive whole-unit asks come from the supported marketplace.

    Fractional asks belong to a different venue and are ignored.
    """
    if not price.is_finite() or price <= 0:
        return False
    return price == price.to_integral_value()


def compute_deal_percent(*, floor: Decimal, price: Decimal) -> float | None:
    """Percent below floor (positive means cheaper than floor), rounded to 0.1."""
    if floor <= 0:
        return None
    percent = (floor - price) / floor * Decimal(100)
    return round(float(percent), 1)
