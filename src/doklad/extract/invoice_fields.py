from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

from doklad.extract.prompts import INVOICE_EXTRACTION_SYSTEM
from doklad.integrations.ares import find_embedded_ico
from doklad.integrations.llm import LLMClient
from doklad.utils.czech_format import parse_czech_amount
from doklad.utils.logging_setup import log_event

log = logging.getLogger(__name__)


@dataclass
class DraftItem:
    description: str
    quantity: Decimal = Decimal("1")
    unit: str = "ks"
    unit_price: Optional[Decimal] = None


@dataclass
class InvoiceDraft:
    customer_name: Optional[str] = None
    customer_ico: Optional[str] = None
    items: List[DraftItem] = field(default_factory=list)
    total_amount: Optional[Decimal] = None
    notes: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not self.customer_name and not self.items and self.total_amount is None


def _clean(v: Any, max_len: int = 512) -> Optional[str]:
    if v is None:
        return None
    s = str(v).strip()
    if not s or s.lower() in {"null", "none"}:
        return None
    return s[:max_len]


def draft_item_from_dict(obj: Dict[str, Any]) -> Optional[DraftItem]:
    if not isinstance(obj, dict):
        return None
    desc = _clean(obj.get("description") or obj.get("productName"), 2000)
    if not desc:
        return None
    qty = parse_czech_amount(obj.get("quantity"))
    if qty is None or qty <= 0:
        qty = Decimal("1")
    price = parse_czech_amount(obj.get("unitPrice"))
    return DraftItem(
        description=desc,
        quantity=qty,
        unit=_clean(obj.get("unit"), 16) or "ks",
        unit_price=price if price is not None and price >= 0 else None,
    )


def invoice_draft_from_dict(obj: Dict[str, Any]) -> InvoiceDraft:
    """Koerce JSONu (z LLM nebo z argumentů funkce) na InvoiceDraft; neznámé klíče ignoruje."""
    obj = obj if isinstance(obj, dict) else {}
    items: List[DraftItem] = []
    for raw in obj.get("items") or []:
        it = draft_item_from_dict(raw)
        if it is not None:
            items.append(it)
    total = parse_czech_amount(obj.get("totalAmount"))
    ico = _clean(obj.get("customerIco"), 16)
    return InvoiceDraft(
        customer_name=_clean(obj.get("customerName"), 256),
        customer_ico=find_embedded_ico(ico) if ico else None,
        items=items,
        total_amount=total if total is not None and total > 0 else None,
        notes=_clean(obj.get("notes"), 4000),
    )


def extract_invoice_fields(free_text: str, llm: LLMClient | None, *, timeout: float | None = None) -> InvoiceDraft:
    """
    Vytěží z volného textu (chat) podklady pro fakturu.

    Selhání LLM nebo nečitelný JSON vrací prázdný draft; IČO napsané přímo
    v textu se doplní i bez LLM.
    """
    draft = InvoiceDraft()
    if llm is not None and llm.configured:
        try:
            draft = invoice_draft_from_dict(llm.complete_json(INVOICE_EXTRACTION_SYSTEM, free_text or "", timeout=timeout))
        except Exception as exc:
            log_event(log, "extract.fallback", "Invoice field extraction failed", kind="invoice", reason=str(exc)[:300])
            draft = InvoiceDraft()
    if not draft.customer_ico:
        draft.customer_ico = find_embedded_ico(free_text or "")
    return draft
