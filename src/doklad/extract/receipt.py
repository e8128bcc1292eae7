from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass
from decimal import Decimal
from io import BytesIO
from typing import Any, Dict, List, Optional, Tuple

from PIL import Image, ImageFilter, ImageOps, UnidentifiedImageError

from doklad.extract.prompts import RECEIPT_EXTRACTION_SYSTEM
from doklad.integrations.llm import LLMClient
from doklad.utils.czech_format import parse_czech_amount, parse_czech_date
from doklad.utils.logging_setup import log_event

log = logging.getLogger(__name__)

MAX_IMAGE_SIDE = 2048
EXPENSE_CATEGORIES = ("office", "travel", "materials", "services", "utilities", "fuel", "food", "other")


@dataclass
class ExpenseDraft:
    supplier_name: Optional[str] = None
    supplier_ico: Optional[str] = None
    description: Optional[str] = None
    category: str = "other"
    amount: Optional[Decimal] = None
    vat_amount: Optional[Decimal] = None
    total: Optional[Decimal] = None
    vat_rate: Optional[Decimal] = None
    expense_date: Optional[dt.date] = None
    receipt_number: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not self.supplier_name and self.total is None and self.amount is None


def _clean(v: Any, max_len: int = 256) -> Optional[str]:
    if v is None:
        return None
    s = str(v).strip()
    if not s or s.lower() in {"null", "none"}:
        return None
    return s[:max_len]


def _enhance(image: Image.Image) -> Image.Image:
    """Lehké zvýšení kontrastu a ostrosti pro lepší čitelnost účtenky."""
    img = ImageOps.autocontrast(image.convert("RGB"))
    return img.filter(ImageFilter.UnsharpMask(radius=2, percent=150, threshold=3))


def prepare_receipt_images(data: bytes, *, enhance: bool = True) -> List[Tuple[str, bytes]]:
    """
    Připraví obrázek účtenky pro vision model: RGB, nejdelší strana max 2048 px, PNG.
    Vrací originál a volitelně zlepšenou variantu; nečitelný obrázek -> [].
    """
    try:
        with Image.open(BytesIO(data)) as im:
            im = ImageOps.exif_transpose(im).convert("RGB")
            im.thumbnail((MAX_IMAGE_SIDE, MAX_IMAGE_SIDE))
            variants = [im]
            if enhance:
                variants.append(_enhance(im))
            out: List[Tuple[str, bytes]] = []
            for v in variants:
                bio = BytesIO()
                v.save(bio, format="PNG")
                out.append(("image/png", bio.getvalue()))
            return out
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        log.warning("Obrázek účtenky nelze načíst: %s", exc)
        return []


def expense_draft_from_dict(obj: Dict[str, Any]) -> ExpenseDraft:
    obj = obj if isinstance(obj, dict) else {}
    category = (_clean(obj.get("category"), 32) or "other").lower()
    if category not in EXPENSE_CATEGORIES:
        category = "other"
    return ExpenseDraft(
        supplier_name=_clean(obj.get("supplierName")),
        supplier_ico=_clean(obj.get("supplierIco"), 16),
        description=_clean(obj.get("description"), 2000),
        category=category,
        amount=parse_czech_amount(obj.get("amount")),
        vat_amount=parse_czech_amount(obj.get("vatAmount")),
        total=parse_czech_amount(obj.get("total")),
        vat_rate=parse_czech_amount(obj.get("vatRate")),
        expense_date=parse_czech_date(obj.get("expenseDate")),
        receipt_number=_clean(obj.get("receiptNumber"), 64),
    )


def extract_receipt_fields(image_bytes: bytes, mime: str, llm: LLMClient | None, *, timeout: float | None = None) -> ExpenseDraft:
    """Vision cesta pro účtenky; jakékoliv selhání vrací prázdný ExpenseDraft."""
    if llm is None or not llm.configured:
        return ExpenseDraft()
    images = prepare_receipt_images(image_bytes)
    if not images:
        return ExpenseDraft()
    try:
        obj = llm.complete_json(
            RECEIPT_EXTRACTION_SYSTEM,
            f"Vytěž údaje z přiložené účtenky (původní typ {mime or 'neznámý'}).",
            images=images,
            timeout=timeout,
        )
    except Exception as exc:
        log_event(log, "extract.fallback", "Receipt extraction failed", kind="receipt", reason=str(exc)[:300])
        return ExpenseDraft()
    draft = expense_draft_from_dict(obj)
    log_event(log, "extract.receipt", "Receipt extracted", empty=draft.is_empty, category=draft.category)
    return draft
