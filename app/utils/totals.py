"""Invoice total computation."""
from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable

from app.models.invoice import DiscountType

CENT = Decimal("0.01")


def _money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class Totals:
    subtotal: Decimal
    tax_amount: Decimal
    discount_amount: Decimal
    total: Decimal


def line_amount(quantity: Decimal, rate: Decimal) -> Decimal:
    return _money(Decimal(quantity) * Decimal(rate))


def calculate_totals(
    items: Iterable[tuple[Decimal, Decimal]],
    tax_rate: Decimal,
    discount_type: DiscountType,
    discount_value: Decimal,
) -> Totals:
    """subtotal + tax - discount, where tax and a percentage discount apply to the subtotal."""

    subtotal = sum((Decimal(q) * Decimal(r) for q, r in items), Decimal("0"))
    tax_amount = subtotal * Decimal(tax_rate) / 100
    if discount_type == DiscountType.PERCENTAGE:
        discount_amount = subtotal * Decimal(discount_value) / 100
    else:
        discount_amount = Decimal(discount_value)
    total = subtotal + tax_amount - discount_amount
    return Totals(
        subtotal=_money(subtotal),
        tax_amount=_money(tax_amount),
        discount_amount=_money(discount_amount),
        total=_money(total),
    )


__all__ = ["Totals", "calculate_totals", "line_amount"]
