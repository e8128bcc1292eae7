from __future__ import annotations

import datetime as dt
import logging
import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from doklad.extract.prompts import PAYMENT_EXTRACTION_SYSTEM
from doklad.integrations.llm import LLMClient, LLMError
from doklad.utils.czech_format import parse_czech_amount, parse_czech_date
from doklad.utils.logging_setup import log_event
from doklad.utils.qr_spayd import find_spayd_payloads
from doklad.utils.time import utc_now_naive

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Payment:
    """Jedna příchozí platba vytěžená z e-mailu; po extrakci se nemění."""

    amount: Decimal
    currency: str = "CZK"
    variable_symbol: Optional[str] = None
    constant_symbol: Optional[str] = None
    specific_symbol: Optional[str] = None
    counterparty_account: Optional[str] = None
    counterparty_name: Optional[str] = None
    description: Optional[str] = None
    transaction_date: dt.datetime = dt.datetime(1970, 1, 1)
    bank_reference: Optional[str] = None
    # False = datum ve zdroji chybělo a transaction_date je čas extrakce
    date_known: bool = True
    # normalizovaný řádek výpisu (regexová cesta), stabilní otisk pro deduplikaci
    source_text: Optional[str] = None


# Regexy pro české bankovní výpisy (fallback bez LLM)
_AMOUNT_RE = re.compile(r"(?<![\d,.])([+-]?)\s?(\d{1,3}(?:[ \u00a0]\d{3})+|\d+)(,\d{2})?\s*(?:CZK|Kč)", re.IGNORECASE)
_VS_RE = re.compile(r"\bVS[:.\s]*(\d{1,10})\b", re.IGNORECASE)
_KS_RE = re.compile(r"\bKS[:.\s]*(\d{1,10})\b", re.IGNORECASE)
_SS_RE = re.compile(r"\bSS[:.\s]*(\d{1,10})\b", re.IGNORECASE)
_DATE_RE = re.compile(r"(?<!\d)(\d{1,2}[./]\d{1,2}[./]\d{4})(?!\d)")
_ACCOUNT_RE = re.compile(r"(?<![\d/.-])((?:\d{1,6}-)?\d{2,10}/\d{4})(?!\d)")
_SYMBOL_DIGITS_RE = re.compile(r"\D+")


def _symbol(v: Any) -> Optional[str]:
    if v is None:
        return None
    digits = _SYMBOL_DIGITS_RE.sub("", str(v))
    if not digits or len(digits) > 10:
        return None
    return digits


def _text(v: Any, max_len: int = 256) -> Optional[str]:
    if v is None:
        return None
    s = str(v).strip()
    if not s or s.lower() in {"null", "none"}:
        return None
    return s[:max_len]


def _as_datetime(v: Any, default: dt.datetime) -> dt.datetime:
    d = parse_czech_date(v)
    if d is None:
        return default
    return dt.datetime(d.year, d.month, d.day)


def payment_from_dict(obj: Dict[str, Any], *, now: dt.datetime | None = None) -> Optional[Payment]:
    """Převede jednu položku z odpovědi LLM na Payment; bez kladné částky vrací None."""
    if not isinstance(obj, dict):
        return None
    amount = parse_czech_amount(obj.get("amount"))
    if amount is None or amount <= 0:
        return None
    now = now or utc_now_naive()
    when = parse_czech_date(obj.get("transactionDate"))
    return Payment(
        amount=amount,
        currency=(_text(obj.get("currency"), 8) or "CZK").upper(),
        variable_symbol=_symbol(obj.get("variableSymbol")),
        constant_symbol=_symbol(obj.get("constantSymbol")),
        specific_symbol=_symbol(obj.get("specificSymbol")),
        counterparty_account=_text(obj.get("counterpartyAccount"), 64),
        counterparty_name=_text(obj.get("counterpartyName")),
        description=_text(obj.get("description"), 1000),
        transaction_date=dt.datetime(when.year, when.month, when.day) if when else now,
        bank_reference=_text(obj.get("bankReference"), 128),
        date_known=when is not None,
    )


def _payments_from_llm(obj: Dict[str, Any], now: dt.datetime) -> List[Payment]:
    raw = obj.get("payments")
    if not isinstance(raw, list):
        raise LLMError("Odpověď LLM neobsahuje pole payments")
    out: List[Payment] = []
    for entry in raw:
        p = payment_from_dict(entry, now=now)
        if p is not None:
            out.append(p)
    return out


def _payment_from_line(line: str, *, default_date: dt.datetime, default_known: bool = False) -> Optional[Payment]:
    m = _AMOUNT_RE.search(line)
    if not m or m.group(1) == "-":
        return None
    amount = parse_czech_amount(m.group(2) + (m.group(3) or ""))
    if amount is None or amount <= 0:
        return None
    vs = _VS_RE.search(line)
    ks = _KS_RE.search(line)
    ss = _SS_RE.search(line)
    date_m = _DATE_RE.search(line)
    when = parse_czech_date(date_m.group(1)) if date_m else None
    # účet hledáme mimo nalezené datum
    account_m = _ACCOUNT_RE.search(_DATE_RE.sub(" ", line))
    return Payment(
        amount=amount,
        currency="CZK",
        variable_symbol=vs.group(1) if vs else None,
        constant_symbol=ks.group(1) if ks else None,
        specific_symbol=ss.group(1) if ss else None,
        counterparty_account=account_m.group(1) if account_m else None,
        description=line.strip()[:1000] or None,
        transaction_date=dt.datetime(when.year, when.month, when.day) if when else default_date,
        date_known=when is not None or default_known,
        source_text=" ".join(line.split()),
    )


def _spayd_payments(text: str, now: dt.datetime) -> Iterable[Payment]:
    for sp in find_spayd_payloads(text):
        if sp.amount is None or sp.amount <= 0:
            continue
        when = None
        if sp.date and len(sp.date) == 8 and sp.date.isdigit():
            try:
                when = dt.datetime(int(sp.date[:4]), int(sp.date[4:6]), int(sp.date[6:]))
            except ValueError:
                when = None
        yield Payment(
            amount=sp.amount,
            currency=sp.currency or "CZK",
            variable_symbol=_symbol(sp.vs),
            constant_symbol=_symbol(sp.ks),
            specific_symbol=_symbol(sp.ss),
            counterparty_account=sp.account,
            description=sp.message,
            transaction_date=when or now,
            date_known=when is not None,
        )


def fallback_extract_payments(text: str, *, now: dt.datetime | None = None) -> List[Payment]:
    """
    Regexová extrakce (nižší recall). Nikdy nevyhazuje výjimku; když nic nenajde, vrátí [].

    Každý řádek s částkou v CZK/Kč dává jednu platbu se symboly a datem ze stejného řádku;
    chybí-li datum na řádku, použije se poslední datum z předchozích řádků.
    """
    now = now or utc_now_naive()
    try:
        out: List[Payment] = []
        last_date = now
        last_known = False
        for line in (text or "").splitlines():
            date_m = _DATE_RE.search(line)
            p = _payment_from_line(line, default_date=last_date, default_known=last_known)
            if date_m and parse_czech_date(date_m.group(1)) is not None:
                last_date = _as_datetime(date_m.group(1), last_date)
                last_known = True
            if p is not None:
                out.append(p)
        if not out and text:
            p = _payment_from_line(" ".join(text.split()), default_date=now)
            if p is not None:
                out.append(p)
        out.extend(_spayd_payments(text or "", now))
        return out
    except Exception:
        log.exception("Fallback extrakce plateb selhala")
        return []


def extract_payments(raw_email_text: str, llm: LLMClient | None = None, *, timeout: float | None = None) -> List[Payment]:
    """
    Vytěží platby z textu e-mailu. Primárně přes LLM (JSON mód); jakékoliv selhání
    LLM (výjimka, timeout, nečitelný JSON) se degraduje na regexový fallback.
    """
    now = utc_now_naive()
    if llm is not None and llm.configured:
        try:
            obj = llm.complete_json(PAYMENT_EXTRACTION_SYSTEM, raw_email_text or "", timeout=timeout)
            payments = _payments_from_llm(obj, now)
            log_event(log, "extract.payments", "Payments extracted", source="llm", count=len(payments))
            return payments
        except Exception as exc:  # LLM selhání nikdy nepropaguje
            log_event(log, "extract.fallback", "LLM extraction failed, using regex fallback", reason=str(exc)[:300])
    payments = fallback_extract_payments(raw_email_text or "", now=now)
    log_event(log, "extract.payments", "Payments extracted", source="regex", count=len(payments))
    return payments
