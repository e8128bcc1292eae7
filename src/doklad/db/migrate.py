from __future__ import annotations

from sqlalchemy import text
from sqlalchemy.engine import Engine

from .base import Base
# registrace tabulek do Base.metadata
from . import models  # noqa: F401


_INDEXES = [
    # párování: nezaplacené faktury firmy seřazené podle splatnosti
    "CREATE INDEX IF NOT EXISTS idx_invoices_unpaid ON invoices(company_id, status, paid_at, due_date)",
    "CREATE INDEX IF NOT EXISTS idx_invoices_vs ON invoices(company_id, variable_symbol)",
    "CREATE INDEX IF NOT EXISTS idx_bank_transactions_matched ON bank_transactions(company_id, is_matched, transaction_date)",
    "CREATE INDEX IF NOT EXISTS idx_payment_matches_invoice ON payment_matches(invoice_id, status)",
    "CREATE INDEX IF NOT EXISTS idx_invoice_history_invoice ON invoice_history(invoice_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_customers_company_name ON customers(company_id, name)",
    "CREATE INDEX IF NOT EXISTS idx_expenses_company_date ON expenses(company_id, expense_date)",
]


def _ensure_columns(con) -> None:
    # starší DB bez dedup klíče / odkazu na transakci
    cols = {row[1] for row in con.execute(text("PRAGMA table_info('bank_transactions')")).fetchall()}
    if cols and "dedup_key" not in cols:
        con.execute(text("ALTER TABLE bank_transactions ADD COLUMN dedup_key TEXT"))
        con.execute(text("UPDATE bank_transactions SET dedup_key = 'legacy-' || id WHERE dedup_key IS NULL"))
    cols = {row[1] for row in con.execute(text("PRAGMA table_info('invoices')")).fetchall()}
    if cols and "paid_amount" not in cols:
        con.execute(text("ALTER TABLE invoices ADD COLUMN paid_amount TEXT"))


def init_db(engine: Engine) -> None:
    """Vytvoří tabulky a idempotentně doplní sloupce a indexy (bez externího migračního nástroje)."""
    Base.metadata.create_all(engine)
    with engine.begin() as con:
        _ensure_columns(con)
        con.execute(
            text("CREATE UNIQUE INDEX IF NOT EXISTS idx_bank_transactions_dedup ON bank_transactions(company_id, dedup_key)")
        )
        for ddl in _INDEXES:
            con.execute(text(ddl))
