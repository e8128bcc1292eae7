from __future__ import annotations

from decimal import Decimal
from types import SimpleNamespace

from doklad.extract.vat_math import compute_invoice_totals, compute_item_total, vat_from_net


def _item(total: str, rate: str = "21") -> SimpleNamespace:
    return SimpleNamespace(total=Decimal(total), vat_rate=Decimal(rate))


def test_single_rate_invoice_totals() -> None:
    subtotal, vat, total = compute_invoice_totals([_item("500"), _item("2000")])

    assert subtotal == Decimal("2500.00")
    assert vat == Decimal("525.00")
    assert total == Decimal("3025.00")


def test_vat_is_computed_per_rate() -> None:
    subtotal, vat, total = compute_invoice_totals([_item("100"), _item("50", "12"), _item("10", "0")])

    assert subtotal == Decimal("160.00")
    assert vat == Decimal("27.00")
    assert total == subtotal + vat


def test_reverse_charge_has_zero_vat() -> None:
    subtotal, vat, total = compute_invoice_totals([_item("1000")], reverse_charge=True)

    assert vat == Decimal("0.00")
    assert total == subtotal == Decimal("1000.00")


def test_item_without_total_is_derived_from_quantity_and_price() -> None:
    item = SimpleNamespace(total=None, quantity=Decimal("2.5"), unit_price=Decimal("99.99"), vat_rate=None)

    subtotal, vat, _ = compute_invoice_totals([item])

    assert subtotal == Decimal("249.98")
    assert vat == Decimal("52.50")


def test_helpers() -> None:
    assert compute_item_total("2", "1000") == Decimal("2000.00")
    assert vat_from_net(Decimal("15000"), 21) == Decimal("3150.00")
    assert vat_from_net(Decimal("100"), 0) == Decimal("0.00")
