from __future__ import annotations

import datetime as dt
from decimal import Decimal
from io import BytesIO

from PIL import Image

from doklad.extract.invoice_fields import extract_invoice_fields, invoice_draft_from_dict
from doklad.extract.receipt import expense_draft_from_dict, extract_receipt_fields, prepare_receipt_images
from doklad.integrations.llm import LLMError


class _StubLLM:
    configured = True

    def __init__(self, result=None, exc: Exception | None = None):
        self.result = result
        self.exc = exc
        self.kwargs = None

    def complete_json(self, system, user, *, images=None, timeout=None):
        self.kwargs = {"images": images, "timeout": timeout}
        if self.exc is not None:
            raise self.exc
        return self.result


def _png(size=(3000, 1000)) -> bytes:
    bio = BytesIO()
    Image.new("RGB", size, "white").save(bio, format="PNG")
    return bio.getvalue()


def test_prepare_receipt_images_downscales_and_adds_enhanced_variant() -> None:
    out = prepare_receipt_images(_png())

    assert [mime for mime, _ in out] == ["image/png", "image/png"]
    with Image.open(BytesIO(out[0][1])) as im:
        assert max(im.size) == 2048


def test_prepare_receipt_images_rejects_garbage() -> None:
    assert prepare_receipt_images(b"tohle neni obrazek") == []


def test_receipt_extraction_sends_images_to_llm() -> None:
    llm = _StubLLM({"supplierName": "Tesco Stores ČR a.s.", "category": "FOOD", "total": "121,00", "expenseDate": "10.1.2025"})

    draft = extract_receipt_fields(_png((200, 300)), "image/jpeg", llm, timeout=5)

    assert draft.supplier_name == "Tesco Stores ČR a.s."
    assert draft.category == "food"
    assert draft.total == Decimal("121.00")
    assert draft.expense_date == dt.date(2025, 1, 10)
    assert len(llm.kwargs["images"]) == 2
    assert llm.kwargs["timeout"] == 5


def test_receipt_extraction_failure_gives_empty_draft() -> None:
    draft = extract_receipt_fields(_png((200, 300)), "image/png", _StubLLM(exc=LLMError("timeout")))

    assert draft.is_empty


def test_unknown_expense_category_becomes_other() -> None:
    assert expense_draft_from_dict({"category": "casino"}).category == "other"
    assert expense_draft_from_dict(None).is_empty


def test_invoice_draft_coercion() -> None:
    draft = invoice_draft_from_dict(
        {
            "customerName": " ACME s.r.o. ",
            "customerIco": "IČO: 12345678",
            "items": [
                {"description": "Konzultace", "quantity": "2,5", "unit": "hod", "unitPrice": "1 200"},
                {"productName": "Licence", "quantity": "0"},
                {"quantity": "3"},
            ],
            "totalAmount": "null",
        }
    )

    assert draft.customer_name == "ACME s.r.o."
    assert draft.customer_ico == "12345678"
    assert [(it.description, it.quantity, it.unit, it.unit_price) for it in draft.items] == [
        ("Konzultace", Decimal("2.5"), "hod", Decimal("1200")),
        ("Licence", Decimal("1"), "ks", None),
    ]
    assert draft.total_amount is None


def test_invoice_extraction_survives_llm_failure_and_keeps_ico() -> None:
    draft = extract_invoice_fields("faktura pro firmu s IČO 87654321 za služby", _StubLLM(exc=LLMError("HTTP 500")))

    assert draft.items == []
    assert draft.customer_ico == "87654321"
