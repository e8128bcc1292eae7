from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Dict

API_KEY_ENV_NAMES = ("DOKLAD_OPENAI_API_KEY", "OPENAI_API_KEY")


def load_dotenv(path: Path) -> Dict[str, str]:
    """
    Jednoduché načtení .env souboru do os.environ (existující proměnné nepřepisuje).
    Vrací dict načtených klíčů/hodnot.
    """
    loaded: Dict[str, str] = {}
    if not path.exists():
        return loaded
    for line in path.read_text(encoding="utf-8").splitlines():
        if not line or line.lstrip().startswith("#") or "=" not in line:
            continue
        k, v = line.split("=", 1)
        k = k.strip()
        v = v.strip().strip("\"'")
        if not k or k in os.environ:
            continue
        os.environ[k] = v
        loaded[k] = v
    return loaded


def sanitize_openai_api_key(raw: str | None) -> str:
    """
    Vrátí 'nejpravděpodobnější' OpenAI API key z libovolného textu
    (odstraní uvozovky, prefix Bearer, více řádků).
    """
    if raw is None:
        return ""
    s = str(raw).strip().strip("\"'").strip()
    if s.lower().startswith("bearer "):
        s = s[7:].strip()
    m = re.search(r"(sk-[A-Za-z0-9_-]{20,})", s)
    if m:
        return m.group(1)
    one = s.splitlines()[0].strip() if s else ""
    if one.startswith("sk-") and len(one) >= 24:
        return one
    return ""


def resolve_api_key() -> str:
    for name in API_KEY_ENV_NAMES:
        key = sanitize_openai_api_key(os.environ.get(name))
        if key:
            return key
    return ""
