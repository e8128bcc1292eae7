from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, Iterable, Tuple

from doklad.utils.czech_format import parse_czech_amount, q2

DEFAULT_VAT_RATE = Decimal("21")
_HUNDRED = Decimal("100")


def _d(v: Any, default: Decimal) -> Decimal:
    if v is None:
        return default
    if isinstance(v, Decimal):
        return v
    parsed = parse_czech_amount(v)
    return default if parsed is None else parsed


def compute_item_total(quantity: Any, unit_price: Any) -> Decimal:
    """Řádek bez DPH = množství * jednotková cena, zaokrouhleno na haléře."""
    qty = _d(quantity, Decimal("1"))
    return q2(qty * _d(unit_price, Decimal("0")))


def vat_from_net(net: Decimal, vat_rate: Any) -> Decimal:
    rate = _d(vat_rate, DEFAULT_VAT_RATE)
    if rate <= 0:
        return Decimal("0.00")
    return q2(net * rate / _HUNDRED)


def compute_invoice_totals(
    items: Iterable[Any],
    *,
    reverse_charge: bool = False,
) -> Tuple[Decimal, Decimal, Decimal]:
    """
    Přepočet faktury z položek: (subtotal, vat_amount, total).

    DPH se počítá za každou sazbu zvlášť ze součtu řádků dané sazby
    (položky bez sazby = 21 %). Při přenesené daňové povinnosti je DPH 0.
    Vždy platí subtotal + vat_amount == total.
    """
    by_rate: Dict[Decimal, Decimal] = {}
    for it in items or []:
        line = getattr(it, "total", None)
        if line is None:
            line = compute_item_total(getattr(it, "quantity", None), getattr(it, "unit_price", None))
        rate = q2(_d(getattr(it, "vat_rate", None), DEFAULT_VAT_RATE))
        by_rate[rate] = by_rate.get(rate, Decimal("0")) + q2(_d(line, Decimal("0")))

    subtotal = q2(sum(by_rate.values(), Decimal("0")))
    vat_total = Decimal("0")
    if not reverse_charge:
        for rate, net in by_rate.items():
            vat_total += vat_from_net(q2(net), rate)
    vat_total = q2(vat_total)
    return subtotal, vat_total, q2(subtotal + vat_total)
