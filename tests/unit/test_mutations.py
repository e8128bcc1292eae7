from __future__ import annotations

import datetime as dt
from decimal import Decimal
from unittest.mock import patch

import pytest

from doklad.db import queries as q
from doklad.db.models import InvoiceStatus, MatchType
from doklad.db.session import unit_of_work
from doklad.extract.invoice_fields import DraftItem, InvoiceDraft
from doklad.extract.receipt import ExpenseDraft
from doklad.service.mutations import InvoiceMutationService
from doklad.service.status import InvalidStatusTransition
from doklad.service.targets import InvoiceLocator, TargetNotFound
from doklad.utils.time import utc_now_naive


@pytest.fixture()
def service(session_factory) -> InvoiceMutationService:
    return InvoiceMutationService(session_factory)


@pytest.fixture()
def hosting_invoice(make_invoice) -> int:
    return make_invoice("2025010", items=[{"description": "Hosting", "quantity": 1, "unit_price": 500}], variable_symbol="2025010")


def _load(session_factory, company_id, invoice_id):
    with unit_of_work(session_factory) as session:
        inv = q.get_invoice(session, company_id, invoice_id)
        items = [(it.description, it.quantity, it.unit_price, it.total) for it in inv.items]
        history = [(h.action, h.description, h.old_value, h.new_value, h.user_id) for h in q.invoice_history(session, invoice_id)]
        session.expunge(inv)
    return inv, items, history


def test_add_item_recomputes_totals(service, session_factory, company_id, hosting_invoice) -> None:
    res = service.add_item(
        company_id,
        InvoiceLocator(page_path=f"/invoices/{hosting_invoice}"),
        description="Consulting",
        quantity=2,
        unit_price=1000,
        user_id="u1",
    )

    inv, items, history = _load(session_factory, company_id, hosting_invoice)
    assert inv.subtotal == Decimal("2500")
    assert inv.vat_amount == Decimal("525")
    assert inv.total == Decimal("3025")
    assert [d for d, *_ in items] == ["Hosting", "Consulting"]
    assert res.content == 'Položka "Consulting" byla přidána k faktuře 2025010. Nový celkový součet: 3 025,00 Kč.'
    assert res.action == {"type": "refresh_current_page", "data": {}}
    assert res.used_fallback_target is False
    assert history[-1][0] == "updated"
    assert history[-1][2:] == ("605.00", "3025.00", "u1")


def test_failed_history_write_rolls_back_item(service, session_factory, company_id, hosting_invoice) -> None:
    with patch("doklad.service.mutations.q.append_history", side_effect=RuntimeError("disk full")):
        with pytest.raises(RuntimeError):
            service.add_item(company_id, InvoiceLocator(invoice_id=hosting_invoice), description="Consulting", quantity=2, unit_price=1000)

    inv, items, history = _load(session_factory, company_id, hosting_invoice)
    assert len(items) == 1
    assert inv.total == Decimal("605")
    assert history == []


def test_add_item_rejects_bad_price(service, company_id, hosting_invoice) -> None:
    with pytest.raises(ValueError):
        service.add_item(company_id, InvoiceLocator(invoice_id=hosting_invoice), description="X", unit_price="zdarma")


def test_add_note_by_number(service, session_factory, company_id, hosting_invoice) -> None:
    res = service.add_note(company_id, InvoiceLocator(invoice_number="2025010"), "Děkujeme za spolupráci")

    assert res.content == 'Poznámka byla přidána k faktuře 2025010: "Děkujeme za spolupráci"'
    inv, _, history = _load(session_factory, company_id, hosting_invoice)
    assert inv.notes == "Děkujeme za spolupráci"
    assert history[-1][1] == "Přidána poznámka"


def test_add_note_without_context_uses_latest_invoice(service, company_id, make_invoice, hosting_invoice) -> None:
    newer = make_invoice("2025011", items=[{"description": "Hosting", "unit_price": 100}])

    res = service.add_note(company_id, InvoiceLocator(page_path="/dashboard"), "Urgovat")

    assert res.used_fallback_target is True
    assert "2025011" in res.content
    assert newer != hosting_invoice


def test_unknown_invoice_number_is_not_found(service, company_id, hosting_invoice) -> None:
    with pytest.raises(TargetNotFound):
        service.add_note(company_id, InvoiceLocator(invoice_number="1999001"), "x")


def test_update_due_date_writes_history(service, session_factory, company_id, hosting_invoice) -> None:
    res = service.update_invoice(company_id, InvoiceLocator(invoice_id=hosting_invoice), "splatnost", {"dueDate": "15.02.2025"})

    assert res.content == "Faktura 2025010 byla aktualizována (splatnost)."
    inv, _, history = _load(session_factory, company_id, hosting_invoice)
    assert inv.due_date == dt.date(2025, 2, 15)
    assert history[-1][1:4] == ("Změna: splatnost", "2025-01-31", "2025-02-15")


def test_update_due_date_requires_date(service, company_id, hosting_invoice) -> None:
    with pytest.raises(ValueError):
        service.update_invoice(company_id, InvoiceLocator(invoice_id=hosting_invoice), "splatnost", {})


def test_update_payment_rejects_invalid_iban(service, session_factory, company_id, hosting_invoice) -> None:
    with pytest.raises(ValueError):
        service.update_invoice(
            company_id,
            InvoiceLocator(invoice_id=hosting_invoice),
            "platba",
            {"paymentDetails": {"bankAccount": "CZ6508000000192000145390"}},
        )
    _, _, history = _load(session_factory, company_id, hosting_invoice)
    assert history == []


def test_update_payment_normalizes_iban_and_symbol(service, session_factory, company_id, hosting_invoice) -> None:
    service.update_invoice(
        company_id,
        InvoiceLocator(invoice_id=hosting_invoice),
        "platba",
        {"paymentDetails": {"bankAccount": "cz65 0800 0000 1920 0014 5399", "variableSymbol": "VS 777"}},
    )

    inv, _, _ = _load(session_factory, company_id, hosting_invoice)
    assert inv.bank_account == "CZ6508000000192000145399"
    assert inv.variable_symbol == "777"


def test_update_quantity_of_single_item(service, session_factory, company_id, hosting_invoice) -> None:
    service.update_invoice(company_id, InvoiceLocator(invoice_id=hosting_invoice), "mnozstvi", {"items": [{"quantity": 3}]})

    inv, items, _ = _load(session_factory, company_id, hosting_invoice)
    assert items[0][1] == Decimal("3")
    assert inv.total == Decimal("1815")


def test_update_prices_reports_missing_items(service, session_factory, company_id, hosting_invoice) -> None:
    res = service.update_prices(
        company_id,
        InvoiceLocator(invoice_id=hosting_invoice),
        [{"description": "hosting", "unitPrice": "600"}, {"description": "Doména", "unitPrice": "300"}],
    )

    inv, _, _ = _load(session_factory, company_id, hosting_invoice)
    assert inv.total == Decimal("726")
    assert "726,00 Kč" in res.content
    assert "Nenalezené položky: Doména." in res.content


def test_status_change_to_paid_and_back_is_guarded(service, session_factory, company_id, hosting_invoice) -> None:
    res = service.update_status(company_id, InvoiceLocator(invoice_id=hosting_invoice), "paid")

    assert res.content == 'Stav faktury 2025010 byl změněn na "zaplacená".'
    inv, _, _ = _load(session_factory, company_id, hosting_invoice)
    assert inv.status == InvoiceStatus.PAID
    assert inv.paid_at is not None
    assert inv.paid_amount == Decimal("605")

    with pytest.raises(InvalidStatusTransition):
        service.update_status(company_id, InvoiceLocator(invoice_id=hosting_invoice), "draft")

    again = service.update_status(company_id, InvoiceLocator(invoice_id=hosting_invoice), "PAID")
    assert again.action is None
    assert "už je ve stavu" in again.content


def test_create_invoice_from_draft_with_total(service, session_factory, company_id) -> None:
    draft = InvoiceDraft(customer_name="Nový klient s.r.o.", items=[DraftItem("Vývoj webu")], total_amount=Decimal("15000"))

    res = service.create_invoice_from_draft(company_id, draft, user_id="u1")

    number = f"{utc_now_naive().year}0001"
    assert res.content.startswith(f'Faktura pro zákazníka "Nový klient s.r.o." byla úspěšně vytvořena! Číslo faktury: {number}.')
    invoice_id = int(res.action["data"]["path"].split("/")[2])
    assert res.action["data"]["path"] == f"/invoices/{invoice_id}/edit"

    inv, items, history = _load(session_factory, company_id, invoice_id)
    assert inv.status == InvoiceStatus.DRAFT
    assert inv.subtotal == Decimal("15000")
    assert inv.vat_amount == Decimal("3150")
    assert inv.total == Decimal("18150")
    assert inv.variable_symbol == number
    assert inv.bank_account == "2001234567/2010"
    assert items[0][2] == Decimal("15000")
    assert history[0][0] == "created"


def test_create_invoice_without_customer_redirects_to_form(service, company_id) -> None:
    res = service.create_invoice_from_draft(company_id, InvoiceDraft(items=[DraftItem("Vývoj webu")]))

    assert res.action == {"type": "navigate", "data": {"path": "/invoices/new"}}


def test_manual_match_marks_invoice_paid_once(service, session_factory, company_id, bank_account_id, hosting_invoice) -> None:
    with unit_of_work(session_factory) as session:
        tx = q.create_bank_transaction(
            session,
            company_id=company_id,
            bank_account_id=bank_account_id,
            dedup_key="k1",
            amount=Decimal("605"),
            currency="CZK",
            transaction_date=dt.datetime(2025, 1, 20),
            counterparty_name="ACME s.r.o.",
        )
        tx_id = tx.id

    res = service.manual_match(company_id, tx_id, hosting_invoice, "u7")

    assert res.content == "Platba 605,00 Kč byla ručně spárována s fakturou 2025010."
    with unit_of_work(session_factory) as session:
        matches = q.matches_for_invoice(session, hosting_invoice)
        assert len(matches) == 1
        assert matches[0].match_type == MatchType.MANUAL
        assert matches[0].match_confidence == 100
        assert matches[0].matched_by == "u7"
        assert q.get_transaction(session, company_id, tx_id).is_matched is True
        assert q.get_invoice(session, company_id, hosting_invoice).status == InvoiceStatus.PAID

    with pytest.raises(ValueError):
        service.manual_match(company_id, tx_id, hosting_invoice, "u7")


def test_create_expense_splits_gross_total(service, session_factory, company_id) -> None:
    draft = ExpenseDraft(
        supplier_name="Papírnictví Novák",
        description="Kancelářské potřeby",
        category="office",
        total=Decimal("121"),
        vat_rate=Decimal("21"),
        expense_date=dt.date(2025, 1, 10),
    )

    res = service.create_expense(company_id, draft)

    number = f"N{utc_now_naive().year}0001"
    assert res.content == f'Náklad {number} od dodavatele "Papírnictví Novák" na 121,00 Kč byl vytvořen jako koncept.'
    assert res.action == {"type": "navigate", "data": {"path": "/expenses"}}
    with unit_of_work(session_factory) as session:
        (exp,) = q.list_expenses(session, company_id)
        assert exp.amount == Decimal("100")
        assert exp.vat_amount == Decimal("21")
        assert exp.total == Decimal("121")
        assert exp.status == "draft"

    listing = service.list_expenses(company_id, category="Office")
    assert listing.content.splitlines()[0] == "Nalezeno 1 nákladů v celkové výši 121,00 Kč:"
    assert "Papírnictví Novák" in listing.content
    assert "10.01.2025" in listing.content

    empty = service.list_expenses(company_id, date_from="1.2.2025")
    assert empty.content == "Nebyly nalezeny žádné náklady odpovídající zadání."


def test_expense_without_amount_is_rejected(service, company_id) -> None:
    with pytest.raises(ValueError):
        service.create_expense(company_id, ExpenseDraft(supplier_name="Někdo"))
