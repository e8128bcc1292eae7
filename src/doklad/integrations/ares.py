from __future__ import annotations

import datetime as dt
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import requests

from doklad.utils.logging_setup import log_event
from doklad.utils.time import utc_now_naive

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10
DEFAULT_CACHE_TTL_SECONDS = 7 * 24 * 3600
MAX_CACHE_SIZE = 5_000
MAX_SEARCH_RESULTS = 10

_ARES_BASE_URL = "https://ares.gov.cz/ekonomicke-subjekty-v-be/rest"
_HEADERS = {
    "Accept": "application/json",
    "User-Agent": "Doklad/0.1 (ARES client)",
}

_ICO_DIGITS_RE = re.compile(r"\D+")
_EMBEDDED_ICO_RE = re.compile(r"(?<!\d)(\d{8})(?!\d)")


@dataclass(frozen=True)
class AresRecord:
    ico: str
    name: Optional[str] = None
    dic: Optional[str] = None
    address: Optional[str] = None
    street: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None
    fetched_at: dt.datetime = field(default_factory=utc_now_naive)


class AresError(RuntimeError):
    pass


_ARES_CACHE: dict[str, tuple[dt.datetime, AresRecord]] = {}


def normalize_ico(ico: str) -> str:
    """
    Normalizuje IČO do kanonického tvaru:
    - ponechá jen číslice
    - doplní zleva nuly na délku 8
    """
    if ico is None:
        raise ValueError("IČO je prázdné")
    raw = str(ico).strip()
    if not raw:
        raise ValueError("IČO je prázdné")
    digits = _ICO_DIGITS_RE.sub("", raw)
    if not digits:
        raise ValueError(f"IČO neobsahuje číslice: {ico!r}")
    if len(digits) > 8:
        raise ValueError(f"IČO má více než 8 číslic: {ico!r}")
    return digits.zfill(8)


def find_embedded_ico(text: str) -> Optional[str]:
    """První samostatné 8místné číslo v textu (typicky IČO napsané v chatu)."""
    m = _EMBEDDED_ICO_RE.search(text or "")
    return m.group(1) if m else None


def _record_from_subject(obj: Dict[str, Any], now: dt.datetime) -> AresRecord:
    adr = obj.get("sidlo") or {}
    street = adr.get("nazevUlice") or None
    number = str(adr.get("cisloDomovni") or "")
    orient = str(adr.get("cisloOrientacni") or "")
    if number and orient:
        number = f"{number}/{orient}"
    street_line = " ".join(p for p in [street or adr.get("nazevCastiObce") or "", number] if p).strip() or None
    city = adr.get("nazevObce") or None
    psc = str(adr.get("psc") or "") or None

    address = adr.get("textovaAdresa") if isinstance(adr.get("textovaAdresa"), str) else None
    if not address:
        address = ", ".join(p for p in [street_line, city, psc] if p) or None

    return AresRecord(
        ico=normalize_ico(obj.get("ico") or ""),
        name=obj.get("obchodniJmeno") or obj.get("nazev"),
        dic=obj.get("dic") or obj.get("dicDph"),
        address=address.strip() if address else None,
        street=street_line,
        city=city,
        postal_code=psc,
        fetched_at=now,
    )


def _remember(rec: AresRecord) -> None:
    _ARES_CACHE[rec.ico] = (rec.fetched_at, rec)
    if len(_ARES_CACHE) > MAX_CACHE_SIZE:
        oldest_key = min(_ARES_CACHE.items(), key=lambda item: item[1][0])[0]
        _ARES_CACHE.pop(oldest_key, None)


def fetch_by_ico(
    ico: str,
    *,
    timeout: int = DEFAULT_TIMEOUT,
    cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS,
) -> AresRecord:
    if timeout <= 0:
        raise ValueError("timeout musi byt kladne cislo")
    if cache_ttl_seconds < 0:
        raise ValueError("cache_ttl_seconds nesmi byt zaporne")

    ico_norm = normalize_ico(ico)
    now = utc_now_naive()
    cached = _ARES_CACHE.get(ico_norm)
    if cached:
        fetched_at, rec = cached
        if (now - fetched_at).total_seconds() <= cache_ttl_seconds:
            return rec

    start = time.perf_counter()
    try:
        resp = requests.get(
            f"{_ARES_BASE_URL}/ekonomicke-subjekty/{ico_norm}",
            timeout=(min(timeout, 5), timeout),
            headers=_HEADERS,
        )
        resp.raise_for_status()
        obj = resp.json()
    except (requests.RequestException, ValueError) as e:
        raise AresError(f"Nepodařilo se načíst ARES pro IČO {ico_norm}: {e}") from e
    finally:
        log.debug("ares-fetch ico=%s seconds=%.3f", ico_norm, time.perf_counter() - start)

    if not isinstance(obj, dict):
        raise AresError(f"ARES vrátil neočekávanou odpověď pro IČO {ico_norm}")
    obj.setdefault("ico", ico_norm)
    rec = _record_from_subject(obj, now)
    _remember(rec)
    log_event(log, "ares.lookup", "ARES lookup by IČO", mode="ico", found=True)
    return rec


def search_by_name(name: str, *, timeout: int = DEFAULT_TIMEOUT, limit: int = MAX_SEARCH_RESULTS) -> List[AresRecord]:
    """Vyhledá subjekty podle obchodního jména (POST /ekonomicke-subjekty/vyhledat)."""
    query = (name or "").strip()
    if len(query) < 2:
        return []
    try:
        resp = requests.post(
            f"{_ARES_BASE_URL}/ekonomicke-subjekty/vyhledat",
            json={"obchodniJmeno": query, "pocet": int(limit), "start": 0},
            timeout=(min(timeout, 5), timeout),
            headers={**_HEADERS, "Content-Type": "application/json"},
        )
        resp.raise_for_status()
        obj = resp.json()
    except (requests.RequestException, ValueError) as e:
        raise AresError(f"Vyhledání v ARES selhalo pro {query!r}: {e}") from e

    now = utc_now_naive()
    out: List[AresRecord] = []
    for subj in (obj or {}).get("ekonomickeSubjekty") or []:
        if not isinstance(subj, dict) or not subj.get("ico"):
            continue
        try:
            rec = _record_from_subject(subj, now)
        except ValueError:
            continue
        _remember(rec)
        out.append(rec)
    log_event(log, "ares.lookup", "ARES lookup by name", mode="name", results=len(out))
    return out


class AresRegistry:
    """Registr pro vyhledání zákazníka: IČO v dotazu má přednost, jinak první shoda podle jména."""

    def __init__(self, *, timeout: int = DEFAULT_TIMEOUT, cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS):
        self.timeout = int(timeout)
        self.cache_ttl_seconds = int(cache_ttl_seconds)

    def lookup(self, query: str) -> Optional[AresRecord]:
        ico = find_embedded_ico(query)
        if ico:
            return fetch_by_ico(ico, timeout=self.timeout, cache_ttl_seconds=self.cache_ttl_seconds)
        results = search_by_name(query, timeout=self.timeout, limit=1)
        return results[0] if results else None
