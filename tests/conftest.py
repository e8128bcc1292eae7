from __future__ import annotations

import datetime as dt
from decimal import Decimal
from typing import Any, Dict, List, Optional

import pytest

from doklad.db import queries as q
from doklad.db.migrate import init_db
from doklad.db.models import BankAccount, Company, InvoiceStatus
from doklad.db.session import make_engine, make_session_factory, unit_of_work
from doklad.service.mutations import recompute_invoice_totals


@pytest.fixture()
def session_factory(tmp_path):
    engine = make_engine(str(tmp_path / "doklad-test.sqlite"))
    init_db(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture()
def company_id(session_factory) -> int:
    with unit_of_work(session_factory) as session:
        c = Company(name="Moje firma s.r.o.", ico="12345678", bank_account="2001234567/2010")
        session.add(c)
        session.flush()
        return c.id


@pytest.fixture()
def bank_account_id(session_factory, company_id) -> int:
    with unit_of_work(session_factory) as session:
        acc = BankAccount(
            company_id=company_id,
            name="Fio běžný účet",
            account_number="2001234567/2010",
            payment_email="platby@firma.cz",
            enable_payment_matching=True,
        )
        session.add(acc)
        session.flush()
        return acc.id


@pytest.fixture()
def make_invoice(session_factory, company_id):
    """Založí fakturu s položkami; vrací její ID."""

    def _make(
        number: str,
        *,
        items: Optional[List[Dict[str, Any]]] = None,
        total: Optional[Decimal] = None,
        variable_symbol: Optional[str] = None,
        due_date: Optional[dt.date] = dt.date(2025, 1, 31),
        status: str = InvoiceStatus.SENT.value,
        customer_name: str = "ACME s.r.o.",
    ) -> int:
        with unit_of_work(session_factory) as session:
            customer = q.create_customer(session, company_id, customer_name)
            inv = q.create_invoice(
                session,
                company_id,
                invoice_number=number,
                customer_id=customer.id,
                issue_date=dt.date(2025, 1, 1),
                due_date=due_date,
                status=status,
                variable_symbol=variable_symbol,
            )
            for it in items or []:
                qty = Decimal(str(it.get("quantity", 1)))
                price = Decimal(str(it["unit_price"]))
                q.add_invoice_item(
                    session,
                    inv,
                    description=it["description"],
                    quantity=qty,
                    unit=it.get("unit", "ks"),
                    unit_price=price,
                    vat_rate=Decimal(str(it.get("vat_rate", 21))),
                    total=qty * price,
                )
            if items:
                recompute_invoice_totals(inv)
            if total is not None:
                inv.total = Decimal(total)
            return inv.id

    return _make
