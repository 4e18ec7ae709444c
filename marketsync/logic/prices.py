"""Price and size normalisation shared by every provider."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any


def cents_from_string(value: Any) -> int | None:
    """Convert a minor-unit price (``"14500"``) to cents, treating 0 as absent."""
    if value in (None, ""):
        return None
    try:
        cents = int(Decimal(str(value)))
    except (InvalidOperation, ValueError):
        return None
    return cents if cents > 0 else None


def cents_from_major(value: Any) -> int | None:
    """Convert a major-unit price (``"145"`` or ``"145.50"``) to cents."""
    if value in (None, ""):
        return None
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    cents = int((amount * 100).to_integral_value())
    return cents if cents > 0 else None


def major_from_cents(cents: int) -> str:
    return f"{Decimal(cents) / 100:.2f}"


def has_actionable_price(*prices: int | None) -> bool:
    """True when at least one of the given prices represents a live market."""
    return any(price is not None and price > 0 for price in prices)


def normalize_size(value: Any) -> str:
    text = str(value).strip()
    try:
        number = Decimal(text)
    except InvalidOperation:
        return text.upper()
    if number == number.to_integral_value():
        return str(int(number))
    return format(number.normalize(), "f")
