from __future__ import annotations

import json
import socket
from typing import Any, Dict, Optional


def send_cmd(
    host: str,
    port: int,
    cmd: str,
    payload: Optional[Dict[str, Any]] = None,
    timeout: float = 2.0,
) -> Dict[str, Any]:
    """Pošle jeden JSON řádek řídicímu serveru a vrátí odpověď; chyby spojení vrací jako {"ok": False}."""
    req: Dict[str, Any] = {"cmd": cmd}
    if payload is not None:
        req["payload"] = payload
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.settimeout(timeout)
    try:
        s.connect((host, port))
        s.sendall((json.dumps(req, ensure_ascii=False) + "\n").encode("utf-8"))
        data = b""
        while True:
            chunk = s.recv(65536)
            if not chunk:
                break
            data += chunk
            if b"\n" in data:
                break
        line = data.split(b"\n", 1)[0].decode("utf-8", errors="ignore")
        try:
            return json.loads(line)
        except json.JSONDecodeError:
            return {"ok": False, "error": "invalid_response", "raw": line}
    except OSError as e:
        return {"ok": False, "error": str(e)}
    finally:
        s.close()
