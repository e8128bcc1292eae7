from __future__ import annotations

import datetime as dt
import enum
from decimal import Decimal
from typing import List

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from doklad.utils.time import utc_now_naive

from .base import Base, DecimalString

ZERO = Decimal("0")


class InvoiceStatus(str, enum.Enum):
    DRAFT = "draft"
    SENT = "sent"
    PAID = "paid"
    OVERDUE = "overdue"


class MatchType(str, enum.Enum):
    AUTOMATIC = "automatic"
    MANUAL = "manual"
    PARTIAL = "partial"


class MatchStatus(str, enum.Enum):
    MATCHED = "matched"
    DISPUTED = "disputed"
    CANCELLED = "cancelled"


class Company(Base):
    __tablename__ = "companies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(256))
    ico: Mapped[str | None] = mapped_column(String(16), nullable=True)
    dic: Mapped[str | None] = mapped_column(String(32), nullable=True)
    address: Mapped[str | None] = mapped_column(String(512), nullable=True)
    city: Mapped[str | None] = mapped_column(String(128), nullable=True)
    postal_code: Mapped[str | None] = mapped_column(String(16), nullable=True)
    bank_account: Mapped[str | None] = mapped_column(String(64), nullable=True)
    iban: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utc_now_naive)


class Customer(Base):
    """Zákazník; stejná tabulka slouží i pro dodavatele u nákladů."""

    __tablename__ = "customers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id"), index=True)
    name: Mapped[str] = mapped_column(String(256), index=True)
    email: Mapped[str | None] = mapped_column(String(256), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    ico: Mapped[str | None] = mapped_column(String(16), nullable=True, index=True)
    dic: Mapped[str | None] = mapped_column(String(32), nullable=True)
    address: Mapped[str | None] = mapped_column(String(512), nullable=True)
    city: Mapped[str | None] = mapped_column(String(128), nullable=True)
    postal_code: Mapped[str | None] = mapped_column(String(16), nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utc_now_naive)


class Invoice(Base):
    __tablename__ = "invoices"
    __table_args__ = (UniqueConstraint("company_id", "invoice_number", name="uq_invoices_company_number"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id"), index=True)
    customer_id: Mapped[int | None] = mapped_column(ForeignKey("customers.id"), nullable=True)
    invoice_number: Mapped[str] = mapped_column(String(32))
    issue_date: Mapped[dt.date] = mapped_column(Date)
    due_date: Mapped[dt.date | None] = mapped_column(Date, nullable=True, index=True)
    subtotal: Mapped[Decimal] = mapped_column(DecimalString(), default=ZERO)
    vat_amount: Mapped[Decimal] = mapped_column(DecimalString(), default=ZERO)
    total: Mapped[Decimal] = mapped_column(DecimalString(), default=ZERO)
    currency: Mapped[str] = mapped_column(String(8), default="CZK")
    status: Mapped[str] = mapped_column(String(16), default="draft", index=True)
    is_reverse_charge: Mapped[bool] = mapped_column(Boolean, default=False)
    bank_account: Mapped[str | None] = mapped_column(String(64), nullable=True)
    variable_symbol: Mapped[str | None] = mapped_column(String(16), nullable=True, index=True)
    constant_symbol: Mapped[str | None] = mapped_column(String(16), nullable=True)
    specific_symbol: Mapped[str | None] = mapped_column(String(16), nullable=True)
    paid_at: Mapped[dt.datetime | None] = mapped_column(DateTime, nullable=True)
    paid_amount: Mapped[Decimal | None] = mapped_column(DecimalString(), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utc_now_naive)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utc_now_naive, onupdate=utc_now_naive)

    customer: Mapped[Customer | None] = relationship()
    items: Mapped[List["InvoiceItem"]] = relationship(
        back_populates="invoice", cascade="all, delete-orphan", order_by="InvoiceItem.id"
    )


class InvoiceItem(Base):
    __tablename__ = "invoice_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    invoice_id: Mapped[int] = mapped_column(ForeignKey("invoices.id"), index=True)
    description: Mapped[str] = mapped_column(Text)
    quantity: Mapped[Decimal] = mapped_column(DecimalString(places=3), default=Decimal("1"))
    unit: Mapped[str] = mapped_column(String(16), default="ks")
    unit_price: Mapped[Decimal] = mapped_column(DecimalString(), default=ZERO)
    vat_rate: Mapped[Decimal] = mapped_column(DecimalString(), default=Decimal("21"))
    # řádek bez DPH (quantity * unit_price)
    total: Mapped[Decimal] = mapped_column(DecimalString(), default=ZERO)

    invoice: Mapped["Invoice"] = relationship(back_populates="items")


class InvoiceHistory(Base):
    """Auditní log faktury; řádky se nikdy nemění ani nemažou."""

    __tablename__ = "invoice_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    invoice_id: Mapped[int] = mapped_column(ForeignKey("invoices.id"), index=True)
    action: Mapped[str] = mapped_column(String(32))  # created/updated/sent/paid/reminder_sent
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    old_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    new_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    user_id: Mapped[str] = mapped_column(String(64), default="system")
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utc_now_naive)


class Expense(Base):
    __tablename__ = "expenses"
    __table_args__ = (UniqueConstraint("company_id", "expense_number", name="uq_expenses_company_number"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id"), index=True)
    supplier_id: Mapped[int | None] = mapped_column(ForeignKey("customers.id"), nullable=True)
    expense_number: Mapped[str] = mapped_column(String(32))
    category: Mapped[str] = mapped_column(String(64), default="other")
    description: Mapped[str] = mapped_column(Text)
    amount: Mapped[Decimal] = mapped_column(DecimalString(), default=ZERO)
    vat_amount: Mapped[Decimal] = mapped_column(DecimalString(), default=ZERO)
    total: Mapped[Decimal] = mapped_column(DecimalString(), default=ZERO)
    vat_rate: Mapped[Decimal] = mapped_column(DecimalString(), default=Decimal("21"))
    expense_date: Mapped[dt.date] = mapped_column(Date, index=True)
    status: Mapped[str] = mapped_column(String(16), default="draft")  # draft/approved/paid/rejected
    receipt_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    attachment_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    attachment_mime: Mapped[str | None] = mapped_column(String(64), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utc_now_naive)

    supplier: Mapped[Customer | None] = relationship()


class BankAccount(Base):
    __tablename__ = "bank_accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id"), index=True)
    name: Mapped[str] = mapped_column(String(128))
    account_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    iban: Mapped[str | None] = mapped_column(String(64), nullable=True)
    currency: Mapped[str] = mapped_column(String(8), default="CZK")
    bank_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    payment_email: Mapped[str | None] = mapped_column(String(256), nullable=True, unique=True)
    enable_payment_matching: Mapped[bool] = mapped_column(Boolean, default=True)
    last_processed_payment: Mapped[dt.datetime | None] = mapped_column(DateTime, nullable=True)


class BankTransaction(Base):
    __tablename__ = "bank_transactions"
    __table_args__ = (UniqueConstraint("company_id", "dedup_key", name="uq_bank_transactions_dedup"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id"), index=True)
    bank_account_id: Mapped[int] = mapped_column(ForeignKey("bank_accounts.id"), index=True)
    dedup_key: Mapped[str] = mapped_column(String(64))
    amount: Mapped[Decimal] = mapped_column(DecimalString())
    currency: Mapped[str] = mapped_column(String(8), default="CZK")
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    variable_symbol: Mapped[str | None] = mapped_column(String(16), nullable=True)
    constant_symbol: Mapped[str | None] = mapped_column(String(16), nullable=True)
    specific_symbol: Mapped[str | None] = mapped_column(String(16), nullable=True)
    counterparty_account: Mapped[str | None] = mapped_column(String(64), nullable=True)
    counterparty_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    bank_reference: Mapped[str | None] = mapped_column(String(128), nullable=True)
    transaction_date: Mapped[dt.datetime] = mapped_column(DateTime, index=True)
    is_matched: Mapped[bool] = mapped_column(Boolean, default=False)
    matched_invoice_id: Mapped[int | None] = mapped_column(ForeignKey("invoices.id"), nullable=True)
    imported_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utc_now_naive)


class PaymentMatch(Base):
    """Záznam o spárování platby s fakturou (append-only)."""

    __tablename__ = "payment_matches"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id"), index=True)
    bank_account_id: Mapped[int] = mapped_column(ForeignKey("bank_accounts.id"))
    bank_transaction_id: Mapped[int] = mapped_column(ForeignKey("bank_transactions.id"), index=True)
    invoice_id: Mapped[int] = mapped_column(ForeignKey("invoices.id"), index=True)
    payment_amount: Mapped[Decimal] = mapped_column(DecimalString())
    payment_date: Mapped[dt.datetime] = mapped_column(DateTime)
    variable_symbol: Mapped[str | None] = mapped_column(String(16), nullable=True)
    constant_symbol: Mapped[str | None] = mapped_column(String(16), nullable=True)
    specific_symbol: Mapped[str | None] = mapped_column(String(16), nullable=True)
    counterparty_account: Mapped[str | None] = mapped_column(String(64), nullable=True)
    counterparty_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    bank_reference: Mapped[str | None] = mapped_column(String(128), nullable=True)
    match_type: Mapped[str] = mapped_column(String(16))  # automatic/manual/partial
    match_confidence: Mapped[int] = mapped_column(Integer)
    matched_by: Mapped[str | None] = mapped_column(String(64), nullable=True)  # None = systém
    matched_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utc_now_naive)
    status: Mapped[str] = mapped_column(String(16), default="matched")  # matched/disputed/cancelled
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
