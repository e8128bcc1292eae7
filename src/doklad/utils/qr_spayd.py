from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional

# SPAYD ("QR platba"): 'SPD*1.0*ACC:CZ...*AM:123.45*CC:CZK*X-VS:123...'
_SPD_PREFIX = "SPD*"
_SPD_IN_TEXT_RE = re.compile(r"SPD\*\d\.\d\*[^\s]+")


@dataclass
class SpaydPayment:
    account: Optional[str] = None  # IBAN
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    vs: Optional[str] = None
    ss: Optional[str] = None
    ks: Optional[str] = None
    message: Optional[str] = None
    date: Optional[str] = None  # YYYYMMDD


def parse_spayd(payload: str) -> Optional[SpaydPayment]:
    if not payload:
        return None
    payload = payload.strip()
    if not payload.startswith(_SPD_PREFIX):
        return None
    kv: Dict[str, str] = {}
    # parts[0] == SPD, parts[1] verze
    for part in payload.split("*")[2:]:
        if ":" not in part:
            continue
        k, v = part.split(":", 1)
        kv[k.strip().upper()] = v.strip()

    sp = SpaydPayment()
    acc = kv.get("ACC")
    if acc:
        # může obsahovat IBAN+BIC oddělené '+', případně více účtů
        sp.account = acc.split(",")[0].split("+")[0].strip()
    am = kv.get("AM")
    if am:
        try:
            sp.amount = Decimal(am.replace(",", "."))
        except InvalidOperation:
            sp.amount = None
    if kv.get("CC"):
        sp.currency = kv["CC"].upper()
    sp.vs = kv.get("X-VS")
    sp.ss = kv.get("X-SS")
    sp.ks = kv.get("X-KS")
    sp.message = kv.get("MSG") or kv.get("RN")
    sp.date = kv.get("DT")
    return sp


def find_spayd_payloads(text: str) -> List[SpaydPayment]:
    """Najde v libovolném textu všechny SPAYD řetězce a vrátí jejich rozparsovanou podobu."""
    out: List[SpaydPayment] = []
    for m in _SPD_IN_TEXT_RE.finditer(text or ""):
        sp = parse_spayd(m.group(0))
        if sp is not None:
            out.append(sp)
    return out
