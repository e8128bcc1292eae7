from __future__ import annotations

import datetime as dt
import logging
import re
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from doklad.utils.logging_setup import log_event
from doklad.utils.time import utc_now_naive

from .models import (
    BankAccount,
    BankTransaction,
    Company,
    Customer,
    Expense,
    Invoice,
    InvoiceHistory,
    InvoiceItem,
    InvoiceStatus,
    MatchStatus,
    PaymentMatch,
)

log = logging.getLogger(__name__)

_ICO_DIGITS_RE = re.compile(r"\D+")


def _normalize_ico_soft(ico: Optional[str]) -> Optional[str]:
    """Jen číslice, doplněné zleva nulami na 8; nevalidní vstup -> None (v DB vrstvě nehážeme)."""
    if ico is None:
        return None
    digits = _ICO_DIGITS_RE.sub("", str(ico))
    if not digits or len(digits) > 8:
        return None
    return digits.zfill(8)


def _to_str(v, max_len: int) -> str | None:
    if v is None:
        return None
    s = str(v).strip()
    if not s:
        return None
    return s[:max_len]


# --- companies / customers -------------------------------------------------

def get_company(session: Session, company_id: int) -> Company | None:
    return session.get(Company, company_id)


def search_customers(session: Session, company_id: int, name: str, *, limit: int = 10) -> List[Customer]:
    """Přesná shoda jména (bez ohledu na velikost písmen) má přednost před částečnou."""
    needle = (name or "").strip()
    if not needle:
        return []
    exact = session.execute(
        select(Customer)
        .where(Customer.company_id == company_id, func.lower(Customer.name) == needle.lower())
        .order_by(Customer.id)
    ).scalars().all()
    if exact:
        return list(exact)
    return list(
        session.execute(
            select(Customer)
            .where(Customer.company_id == company_id, Customer.name.ilike(f"%{needle}%"))
            .order_by(func.length(Customer.name), Customer.id)
            .limit(limit)
        ).scalars().all()
    )


def find_customer_by_ico(session: Session, company_id: int, ico: str) -> Customer | None:
    ico_norm = _normalize_ico_soft(ico)
    if not ico_norm:
        return None
    return session.execute(
        select(Customer).where(Customer.company_id == company_id, Customer.ico == ico_norm).limit(1)
    ).scalar_one_or_none()


def create_customer(session: Session, company_id: int, name: str, **fields: Any) -> Customer:
    c = Customer(company_id=company_id, name=_to_str(name, 256) or "Neznámý zákazník")
    c.ico = _normalize_ico_soft(fields.get("ico"))
    c.dic = _to_str(fields.get("dic"), 32)
    c.email = _to_str(fields.get("email"), 256)
    c.phone = _to_str(fields.get("phone"), 64)
    c.address = _to_str(fields.get("address"), 512)
    c.city = _to_str(fields.get("city"), 128)
    c.postal_code = _to_str(fields.get("postal_code"), 16)
    session.add(c)
    session.flush()
    return c


# --- invoices ----------------------------------------------------------------

def get_invoice(session: Session, company_id: int, invoice_id: int) -> Invoice | None:
    inv = session.get(Invoice, invoice_id)
    if inv is None or inv.company_id != company_id:
        return None
    return inv


def get_invoice_by_number(session: Session, company_id: int, invoice_number: str) -> Invoice | None:
    return session.execute(
        select(Invoice).where(Invoice.company_id == company_id, Invoice.invoice_number == str(invoice_number).strip())
    ).scalar_one_or_none()


def latest_invoice(session: Session, company_id: int) -> Invoice | None:
    return session.execute(
        select(Invoice).where(Invoice.company_id == company_id).order_by(Invoice.created_at.desc(), Invoice.id.desc()).limit(1)
    ).scalar_one_or_none()


def list_unpaid_invoices(session: Session, company_id: int) -> List[Invoice]:
    """Odeslané a dosud nezaplacené faktury, nejpozději splatné první."""
    return list(
        session.execute(
            select(Invoice)
            .where(
                Invoice.company_id == company_id,
                Invoice.status == InvoiceStatus.SENT.value,
                Invoice.paid_at.is_(None),
            )
            .order_by(Invoice.due_date.desc().nulls_last(), Invoice.id.desc())
        ).scalars().all()
    )


def next_document_number(session: Session, model, company_id: int, *, prefix: str = "", year: int | None = None) -> str:
    """Další volné číslo dokladu ve tvaru {prefix}{rok}{pořadí:04d} v rámci firmy."""
    year = int(year or utc_now_naive().year)
    head = f"{prefix}{year}"
    column = model.invoice_number if model is Invoice else model.expense_number
    existing = session.execute(
        select(column).where(model.company_id == company_id, column.like(f"{head}%"))
    ).scalars().all()
    seq = 0
    for num in existing:
        tail = str(num)[len(head):]
        if tail.isdigit():
            seq = max(seq, int(tail))
    return f"{head}{seq + 1:04d}"


def create_invoice(
    session: Session,
    company_id: int,
    *,
    invoice_number: str,
    customer_id: int | None,
    issue_date: dt.date,
    due_date: dt.date | None,
    status: str = InvoiceStatus.DRAFT.value,
    currency: str = "CZK",
    variable_symbol: str | None = None,
    bank_account: str | None = None,
    notes: str | None = None,
) -> Invoice:
    inv = Invoice(
        company_id=company_id,
        invoice_number=invoice_number,
        customer_id=customer_id,
        issue_date=issue_date,
        due_date=due_date,
        status=status,
        currency=currency,
        variable_symbol=variable_symbol,
        bank_account=bank_account,
        notes=notes,
        subtotal=Decimal("0"),
        vat_amount=Decimal("0"),
        total=Decimal("0"),
        is_reverse_charge=False,
    )
    session.add(inv)
    session.flush()
    return inv


def add_invoice_item(
    session: Session,
    invoice: Invoice,
    *,
    description: str,
    quantity: Decimal,
    unit: str,
    unit_price: Decimal,
    vat_rate: Decimal,
    total: Decimal,
) -> InvoiceItem:
    item = InvoiceItem(
        description=_to_str(description, 2000) or "Položka",
        quantity=quantity,
        unit=_to_str(unit, 16) or "ks",
        unit_price=unit_price,
        vat_rate=vat_rate,
        total=total,
    )
    invoice.items.append(item)
    session.flush()
    return item


def append_history(
    session: Session,
    invoice_id: int,
    action: str,
    description: str | None = None,
    *,
    old_value: Any = None,
    new_value: Any = None,
    user_id: str | None = None,
) -> InvoiceHistory:
    row = InvoiceHistory(
        invoice_id=invoice_id,
        action=action,
        description=description,
        old_value=None if old_value is None else str(old_value),
        new_value=None if new_value is None else str(new_value),
        user_id=str(user_id) if user_id else "system",
        created_at=utc_now_naive(),
    )
    session.add(row)
    session.flush()
    return row


def invoice_history(session: Session, invoice_id: int) -> List[InvoiceHistory]:
    return list(
        session.execute(
            select(InvoiceHistory).where(InvoiceHistory.invoice_id == invoice_id).order_by(InvoiceHistory.id)
        ).scalars().all()
    )


# --- bank accounts / transactions / matches -------------------------------

def get_bank_account(session: Session, bank_account_id: int, company_id: int | None = None) -> BankAccount | None:
    acc = session.get(BankAccount, bank_account_id)
    if acc is None or (company_id is not None and acc.company_id != company_id):
        return None
    return acc


def find_bank_account_by_email(session: Session, email: str) -> BankAccount | None:
    addr = (email or "").strip().lower()
    if not addr:
        return None
    accounts = list(
        session.execute(
            select(BankAccount)
            .where(
                func.lower(BankAccount.payment_email) == addr,
                BankAccount.enable_payment_matching.is_(True),
            )
            .order_by(BankAccount.id)
        ).scalars().all()
    )
    if len(accounts) > 1:
        # stejná adresa u více účtů; bere se nejstarší
        log_event(
            log,
            "bank_account.ambiguous_email",
            "Payment e-mail shared by several bank accounts",
            email=addr,
            bank_account_ids=[a.id for a in accounts],
        )
    return accounts[0] if accounts else None


def touch_last_processed(session: Session, bank_account_id: int, when: dt.datetime | None = None) -> None:
    acc = session.get(BankAccount, bank_account_id)
    if acc is not None:
        acc.last_processed_payment = when or utc_now_naive()
        session.flush()


def find_transaction_by_dedup(session: Session, company_id: int, dedup_key: str) -> BankTransaction | None:
    return session.execute(
        select(BankTransaction).where(BankTransaction.company_id == company_id, BankTransaction.dedup_key == dedup_key)
    ).scalar_one_or_none()


def get_transaction(session: Session, company_id: int, transaction_id: int) -> BankTransaction | None:
    tx = session.get(BankTransaction, transaction_id)
    if tx is None or tx.company_id != company_id:
        return None
    return tx


def create_bank_transaction(
    session: Session,
    *,
    company_id: int,
    bank_account_id: int,
    dedup_key: str,
    amount: Decimal,
    currency: str,
    transaction_date: dt.datetime,
    description: str | None = None,
    variable_symbol: str | None = None,
    constant_symbol: str | None = None,
    specific_symbol: str | None = None,
    counterparty_account: str | None = None,
    counterparty_name: str | None = None,
    bank_reference: str | None = None,
) -> BankTransaction:
    tx = BankTransaction(
        company_id=company_id,
        bank_account_id=bank_account_id,
        dedup_key=dedup_key,
        amount=amount,
        currency=currency or "CZK",
        transaction_date=transaction_date,
        description=_to_str(description, 2000),
        variable_symbol=_to_str(variable_symbol, 16),
        constant_symbol=_to_str(constant_symbol, 16),
        specific_symbol=_to_str(specific_symbol, 16),
        counterparty_account=_to_str(counterparty_account, 64),
        counterparty_name=_to_str(counterparty_name, 256),
        bank_reference=_to_str(bank_reference, 128),
        is_matched=False,
        imported_at=utc_now_naive(),
    )
    session.add(tx)
    session.flush()
    return tx


def commit_payment_match(
    session: Session,
    *,
    transaction: BankTransaction,
    invoice: Invoice,
    match_type: str,
    confidence: int,
    matched_amount: Decimal,
    notes: str | None = None,
    matched_by: str | None = None,
) -> PaymentMatch:
    """
    Složená operace párování: PaymentMatch + faktura `paid` + transakce `is_matched`.

    Nic necommituje; volá se uvnitř jedné transakce (unit_of_work) a při chybě
    se všechny tři zápisy vrátí společně.
    """
    if transaction.is_matched:
        raise ValueError(f"Transakce {transaction.id} už je spárovaná s fakturou {transaction.matched_invoice_id}")
    if invoice.company_id != transaction.company_id:
        raise ValueError("Faktura a transakce patří různým firmám")
    now = utc_now_naive()
    match = PaymentMatch(
        company_id=transaction.company_id,
        bank_account_id=transaction.bank_account_id,
        bank_transaction_id=transaction.id,
        invoice_id=invoice.id,
        payment_amount=matched_amount,
        payment_date=transaction.transaction_date,
        variable_symbol=transaction.variable_symbol,
        constant_symbol=transaction.constant_symbol,
        specific_symbol=transaction.specific_symbol,
        counterparty_account=transaction.counterparty_account,
        counterparty_name=transaction.counterparty_name,
        bank_reference=transaction.bank_reference,
        match_type=str(match_type),
        match_confidence=int(confidence),
        matched_by=matched_by,
        matched_at=now,
        status=MatchStatus.MATCHED.value,
        notes=notes,
    )
    session.add(match)

    old_status = invoice.status
    invoice.status = InvoiceStatus.PAID.value
    invoice.paid_at = now
    invoice.paid_amount = matched_amount

    transaction.is_matched = True
    transaction.matched_invoice_id = invoice.id

    append_history(
        session,
        invoice.id,
        "paid",
        f"Platba {matched_amount} {transaction.currency} spárována ({match_type}, jistota {int(confidence)} %)",
        old_value=old_status,
        new_value=InvoiceStatus.PAID.value,
        user_id=matched_by,
    )
    session.flush()
    return match


def matches_for_invoice(session: Session, invoice_id: int) -> List[PaymentMatch]:
    return list(
        session.execute(select(PaymentMatch).where(PaymentMatch.invoice_id == invoice_id).order_by(PaymentMatch.id)).scalars().all()
    )


def matching_stats(session: Session, company_id: int) -> Dict[str, Any]:
    total = session.execute(
        select(func.count(BankTransaction.id)).where(BankTransaction.company_id == company_id)
    ).scalar_one()
    matched = session.execute(
        select(func.count(BankTransaction.id)).where(
            BankTransaction.company_id == company_id, BankTransaction.is_matched.is_(True)
        )
    ).scalar_one()
    last_processed = session.execute(
        select(func.max(BankAccount.last_processed_payment)).where(BankAccount.company_id == company_id)
    ).scalar_one()
    total = int(total or 0)
    matched = int(matched or 0)
    return {
        "total": total,
        "matched": matched,
        "unmatched": total - matched,
        "match_rate": round(matched / total * 100.0, 2) if total else 0.0,
        "last_processed": last_processed,
    }


def unmatched_transactions(session: Session, company_id: int, *, limit: int = 100) -> List[BankTransaction]:
    return list(
        session.execute(
            select(BankTransaction)
            .where(BankTransaction.company_id == company_id, BankTransaction.is_matched.is_(False))
            .order_by(BankTransaction.transaction_date.desc(), BankTransaction.id.desc())
            .limit(limit)
        ).scalars().all()
    )


# --- expenses ------------------------------------------------------------

def create_expense(session: Session, company_id: int, **fields: Any) -> Expense:
    exp = Expense(company_id=company_id, **fields)
    session.add(exp)
    session.flush()
    return exp


def list_expenses(
    session: Session,
    company_id: int,
    *,
    status: str | None = None,
    category: str | None = None,
    date_from: dt.date | None = None,
    date_to: dt.date | None = None,
    limit: int = 50,
) -> Sequence[Expense]:
    q = select(Expense).where(Expense.company_id == company_id)
    if status:
        q = q.where(Expense.status == status)
    if category:
        q = q.where(func.lower(Expense.category) == category.strip().lower())
    if date_from:
        q = q.where(Expense.expense_date >= date_from)
    if date_to:
        q = q.where(Expense.expense_date <= date_to)
    return session.execute(q.order_by(Expense.expense_date.desc(), Expense.id.desc()).limit(limit)).scalars().all()
