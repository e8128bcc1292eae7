"""
Best-effort určení faktury, ke které se vztahuje AI příkaz.

Pořadí: explicitní ID -> číslo faktury -> ID z cesty stránky (/invoices/<id>)
-> nejnovější faktura firmy. Poslední krok je heuristika, která předpokládá
jediného aktivního editora; volající dostane příznak used_fallback.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy.orm import Session

from doklad.db import queries as q
from doklad.db.models import Invoice
from doklad.utils.logging_setup import log_event

log = logging.getLogger(__name__)

_INVOICE_PATH_RE = re.compile(r"/invoices/(\d+)(?:/|$|\?)")


class TargetNotFound(LookupError):
    pass


@dataclass
class InvoiceTarget:
    invoice: Invoice
    used_fallback: bool = False
    source: str = "id"


def invoice_id_from_path(page_path: Optional[str]) -> Optional[int]:
    m = _INVOICE_PATH_RE.search(page_path or "")
    return int(m.group(1)) if m else None


def _as_int(v: Any) -> Optional[int]:
    try:
        return int(str(v).strip())
    except (TypeError, ValueError):
        return None


def resolve_invoice_target(
    session: Session,
    company_id: int,
    page_path: Optional[str],
    invoice_id: Any = None,
    invoice_number: Optional[str] = None,
    *,
    allow_fallback: bool = True,
) -> InvoiceTarget:
    if invoice_id is not None:
        iid = _as_int(invoice_id)
        inv = q.get_invoice(session, company_id, iid) if iid is not None else None
        if inv is None:
            raise TargetNotFound(f"Faktura s ID {invoice_id} nebyla nalezena")
        return InvoiceTarget(inv, False, "id")

    if invoice_number:
        inv = q.get_invoice_by_number(session, company_id, invoice_number)
        if inv is None:
            raise TargetNotFound(f"Faktura číslo {invoice_number} nebyla nalezena")
        return InvoiceTarget(inv, False, "number")

    path_id = invoice_id_from_path(page_path)
    if path_id is not None:
        inv = q.get_invoice(session, company_id, path_id)
        if inv is not None:
            return InvoiceTarget(inv, False, "page")

    if allow_fallback:
        inv = q.latest_invoice(session, company_id)
        if inv is not None:
            log_event(
                log,
                "target.fallback",
                "No explicit invoice in context, using the newest invoice",
                invoice_id=inv.id,
                page_path=page_path,
            )
            return InvoiceTarget(inv, True, "latest")

    raise TargetNotFound("Faktura nebyla nalezena")


@dataclass
class InvoiceLocator:
    """Odkaz na cílovou fakturu tak, jak přichází z chatu (ID, číslo nebo jen cesta stránky)."""

    page_path: Optional[str] = None
    invoice_id: Any = None
    invoice_number: Optional[str] = None

    def resolve(self, session: Session, company_id: int, *, allow_fallback: bool = True) -> InvoiceTarget:
        return resolve_invoice_target(
            session,
            company_id,
            self.page_path,
            invoice_id=self.invoice_id,
            invoice_number=self.invoice_number,
            allow_fallback=allow_fallback,
        )
