from __future__ import annotations

import datetime as dt
import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Optional

from dateutil import parser as dtparser

CENT = Decimal("0.01")

_CURRENCY_RE = re.compile(r"(kč|czk|eur|usd|,-|\.-)\s*$", re.IGNORECASE)
# "25k", "25 tis.", "1,5 mil." (násobitel za číslem)
_MULTIPLIER_RE = re.compile(r"^(?P<num>-?[\d\s.,]+?)\s*(?P<mult>k|tis\.?|tisíc|mil\.?|milionů|milion)$", re.IGNORECASE)
_MULTIPLIERS = {
    "k": Decimal(1000),
    "tis": Decimal(1000),
    "tisíc": Decimal(1000),
    "mil": Decimal(1_000_000),
    "milion": Decimal(1_000_000),
    "milionů": Decimal(1_000_000),
}

_MONTHS = {
    "leden": "01", "ledna": "01",
    "únor": "02", "unor": "02", "února": "02", "unora": "02",
    "březen": "03", "brezen": "03", "března": "03", "brezna": "03",
    "duben": "04", "dubna": "04",
    "květen": "05", "kveten": "05", "května": "05", "kvetna": "05",
    "červen": "06", "cerven": "06", "června": "06", "cervna": "06",
    "červenec": "07", "cervenec": "07", "července": "07", "cervence": "07",
    "srpen": "08", "srpna": "08",
    "září": "09", "zari": "09",
    "říjen": "10", "rijen": "10", "října": "10", "rijna": "10",
    "listopad": "11", "listopadu": "11",
    "prosinec": "12", "prosince": "12",
}
_WORD_DATE_RE = re.compile(r"\b(\d{1,2})\.?\s*([A-Za-zÁČĎÉĚÍŇÓŘŠŤÚŮÝŽáčďéěíňóřšťúůýž]+)\s*(\d{4})\b")
_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}")


def q2(value: Decimal) -> Decimal:
    """Zaokrouhlí na haléře (ROUND_HALF_UP)."""
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def _normalize_number_token(s: str) -> str:
    s = s.replace("\xa0", " ").replace("\u202f", " ").strip()
    s = s.replace(" ", "")
    if "," in s and "." in s:
        # 1.234,56 (cz) vs 1,234.56 (en): poslední oddělovač je desetinný
        if s.rfind(",") > s.rfind("."):
            s = s.replace(".", "").replace(",", ".")
        else:
            s = s.replace(",", "")
    elif "," in s:
        s = s.replace(",", ".")
    elif s.count(".") > 1:
        s = s.replace(".", "")
    return s


def parse_czech_amount(value: Any) -> Optional[Decimal]:
    """
    Převede částku v českém zápisu na Decimal.

    Zvládá "25k", "25 tis.", "1,5 mil.", mezery jako oddělovač tisíců,
    desetinnou čárku, "1.234,56" a suffixy Kč/CZK/EUR/",-". Nevalidní vstup -> None.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        return Decimal(str(value))
    s = str(value).strip()
    if not s:
        return None
    s = _CURRENCY_RE.sub("", s).strip()
    s = _CURRENCY_RE.sub("", s).strip()

    multiplier = Decimal(1)
    m = _MULTIPLIER_RE.match(s)
    if m:
        multiplier = _MULTIPLIERS[m.group("mult").lower().rstrip(".")]
        s = m.group("num")

    token = _normalize_number_token(s)
    if not re.fullmatch(r"-?\d+(?:\.\d+)?", token):
        return None
    try:
        return Decimal(token) * multiplier
    except InvalidOperation:
        return None


def parse_czech_date(value: Any) -> Optional[dt.date]:
    """Tolerantní parser data (ISO, d.m.yyyy, '5. března 2025'). Nevalidní -> None."""
    if value is None:
        return None
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value
    s = str(value).strip()
    if not s:
        return None
    m = _WORD_DATE_RE.search(s)
    if m:
        mon = _MONTHS.get(m.group(2).lower())
        if mon:
            s = f"{m.group(1).zfill(2)}.{mon}.{m.group(3)}"
    try:
        return dtparser.parse(s, dayfirst=not _ISO_DATE_RE.match(s)).date()
    except (ValueError, OverflowError):
        return None


def format_czk(value: Decimal) -> str:
    """5000 -> '5 000,00 Kč'"""
    txt = f"{q2(value):,.2f}".replace(",", " ").replace(".", ",")
    return f"{txt} Kč"
