from decimal import Decimal

from app.models import DiscountType
from app.utils.totals import calculate_totals, line_amount


def test_percentage_discount_and_tax_apply_to_subtotal():
    totals = calculate_totals(
        [(Decimal("2"), Decimal("500")), (Decimal("1"), Decimal("250.50"))],
        Decimal("16"),
        DiscountType.PERCENTAGE,
        Decimal("10"),
    )
    assert totals.subtotal == Decimal("1250.50")
    assert totals.tax_amount == Decimal("200.08")
    assert totals.discount_amount == Decimal("125.05")
    assert totals.total == Decimal("1325.53")


def test_fixed_discount():
    totals = calculate_totals([(Decimal("3"), Decimal("100"))], Decimal("0"), DiscountType.FIXED, Decimal("50"))
    assert totals.subtotal == Decimal("300.00")
    assert totals.discount_amount == Decimal("50.00")
    assert totals.total == Decimal("250.00")


def test_empty_items_give_zero_totals():
    totals = calculate_totals([], Decimal("16"), DiscountType.PERCENTAGE, Decimal("0"))
    assert totals.total == Decimal("0.00")


def test_line_amount_rounds_half_up():
    assert line_amount(Decimal("0.5"), Decimal("0.05")) == Decimal("0.03")
