from __future__ import annotations

import re

_IBAN_RE = re.compile(r"^[A-Z]{2}\d{2}[A-Z0-9]{11,30}$")
# tuzemský formát: [předčíslí-]číslo/kód banky
_CZ_ACCOUNT_RE = re.compile(r"^(?:(\d{1,6})-)?(\d{2,10})/(\d{4})$")


def normalize_iban(s: str) -> str:
    """Odstraní mezery a převede na velká písmena."""
    return re.sub(r"\s+", "", (s or "")).upper()


def looks_like_iban(s: str) -> bool:
    return bool(_IBAN_RE.match(normalize_iban(s)))


def is_valid_iban(iban: str) -> bool:
    """Offline kontrola IBAN (ISO 13616, mod-97)."""
    iban = normalize_iban(iban)
    if not _IBAN_RE.match(iban):
        return False
    rearranged = iban[4:] + iban[:4]
    digits = "".join(str(int(ch, 36)) for ch in rearranged)
    return int(digits) % 97 == 1


def is_czech_account(s: str) -> bool:
    return bool(_CZ_ACCOUNT_RE.match(re.sub(r"\s+", "", s or "")))
