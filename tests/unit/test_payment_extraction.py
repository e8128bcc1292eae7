from __future__ import annotations

import datetime as dt
import logging
from decimal import Decimal

from doklad.extract.payments import extract_payments, fallback_extract_payments, payment_from_dict
from doklad.integrations.llm import LLMError

FIO_EMAIL = """Vážený kliente,
na účtu 2001234567/2010 došlo k následujícím pohybům:

15.01.2025 Příchozí platba 25 000,00 CZK VS: 2025001 Protiúčet: 123456789/0100
15.01.2025 Příchozí platba 15 500,00 CZK VS: 2025002 Protiúčet: 987654321/0300

S pozdravem
Fio banka
"""


class _StubLLM:
    configured = True

    def __init__(self, result=None, exc: Exception | None = None):
        self.result = result
        self.exc = exc
        self.calls = 0

    def complete_json(self, system, user, *, images=None, timeout=None):
        self.calls += 1
        if self.exc is not None:
            raise self.exc
        return self.result


def test_fallback_reads_fio_statement_line_by_line() -> None:
    payments = fallback_extract_payments(FIO_EMAIL)

    assert [p.amount for p in payments] == [Decimal("25000.00"), Decimal("15500.00")]
    assert [p.variable_symbol for p in payments] == ["2025001", "2025002"]
    assert [p.counterparty_account for p in payments] == ["123456789/0100", "987654321/0300"]
    assert all(p.transaction_date == dt.datetime(2025, 1, 15) for p in payments)
    assert all(p.currency == "CZK" for p in payments)


def test_malformed_llm_response_without_amounts_returns_empty_list(caplog) -> None:
    caplog.set_level(logging.INFO)
    llm = _StubLLM(result={"unexpected": True})

    out = extract_payments("Dobrý den, v tomto období nebyly na účtu žádné pohyby.", llm)

    assert out == []
    assert llm.calls == 1
    assert "extract.fallback" in [getattr(r, "event_name", "") for r in caplog.records]


def test_llm_exception_demotes_to_regex_path() -> None:
    out = extract_payments(FIO_EMAIL, _StubLLM(exc=LLMError("HTTP 503")))

    assert len(out) == 2
    assert out[0].variable_symbol == "2025001"


def test_llm_timeout_of_any_kind_demotes_to_regex_path() -> None:
    out = extract_payments(FIO_EMAIL, _StubLLM(exc=TimeoutError("read timed out")))

    assert len(out) == 2


def test_llm_payments_are_coerced_and_filtered() -> None:
    llm = _StubLLM(
        result={
            "payments": [
                {
                    "amount": "5 000,00",
                    "currency": None,
                    "variableSymbol": "VS 2025001",
                    "counterpartyName": "ACME s.r.o.",
                    "transactionDate": "2025-01-15",
                },
                {"amount": 0, "variableSymbol": "1"},
                {"amount": "-200", "variableSymbol": "2"},
            ]
        }
    )

    out = extract_payments("cokoliv", llm)

    assert len(out) == 1
    p = out[0]
    assert p.amount == Decimal("5000.00")
    assert p.currency == "CZK"
    assert p.variable_symbol == "2025001"
    assert p.counterparty_name == "ACME s.r.o."
    assert p.transaction_date == dt.datetime(2025, 1, 15)


def test_unparsable_date_defaults_to_extraction_time() -> None:
    now = dt.datetime(2025, 3, 1, 12, 0)
    p = payment_from_dict({"amount": 100, "transactionDate": "včera"}, now=now)

    assert p is not None
    assert p.transaction_date == now


def test_czech_date_in_llm_payload() -> None:
    p = payment_from_dict({"amount": "1 200 Kč", "transactionDate": "3.2.2025"})

    assert p is not None
    assert p.amount == Decimal("1200")
    assert p.transaction_date == dt.datetime(2025, 2, 3)


def test_spayd_payload_becomes_payment() -> None:
    text = "Platba QR: SPD*1.0*ACC:CZ6508000000192000145399*AM:450.00*CC:CZK*X-VS:1234567*DT:20250120"

    out = fallback_extract_payments(text)

    assert len(out) == 1
    assert out[0].amount == Decimal("450.00")
    assert out[0].variable_symbol == "1234567"
    assert out[0].counterparty_account == "CZ6508000000192000145399"
    assert out[0].transaction_date == dt.datetime(2025, 1, 20)


def test_outgoing_payment_is_ignored() -> None:
    assert fallback_extract_payments("16.01.2025 Odchozí platba -1 000,00 CZK VS: 55") == []


def test_unconfigured_llm_is_skipped() -> None:
    llm = _StubLLM(result={"payments": []})
    llm.configured = False

    out = extract_payments(FIO_EMAIL, llm)

    assert llm.calls == 0
    assert len(out) == 2


def test_fallback_marks_missing_dates_and_keeps_source_line() -> None:
    now = dt.datetime(2025, 3, 1, 12, 0)

    undated, dated = fallback_extract_payments(
        "Příchozí platba  700,00 CZK\n20.01.2025 Příchozí platba 300,00 CZK", now=now
    )

    assert undated.date_known is False
    assert undated.transaction_date == now
    assert undated.source_text == "Příchozí platba 700,00 CZK"
    assert dated.date_known is True
    assert dated.transaction_date == dt.datetime(2025, 1, 20)
