from __future__ import annotations

import json
import logging
import socketserver
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict

log = logging.getLogger(__name__)

Command = Callable[[Dict[str, Any]], Dict[str, Any]]


@dataclass
class ControlContext:
    get_status: Callable[[], Dict[str, Any]]
    request_stop: Callable[[], None]
    # cmd -> handler(payload); výsledek se obalí do {"ok": True, ...}
    commands: Dict[str, Command] = field(default_factory=dict)


def handle_request(ctx: ControlContext, req: Dict[str, Any]) -> Dict[str, Any]:
    """Vyhodnotí jeden řídicí požadavek; nikdy nevyhazuje výjimku."""
    cmd = str(req.get("cmd") or "status")
    if cmd == "stop":
        ctx.request_stop()
        return {"ok": True}
    if cmd == "ping":
        return {"ok": True, "pong": True}
    if cmd == "status":
        return dict(ctx.get_status(), ok=True)
    handler = ctx.commands.get(cmd)
    if handler is None:
        return {"ok": False, "error": "unknown_command", "cmd": cmd}
    payload = req.get("payload") or {}
    if not isinstance(payload, dict):
        return {"ok": False, "error": "invalid_payload", "cmd": cmd}
    try:
        return {"ok": True, "result": handler(payload)}
    except (KeyError, TypeError, ValueError) as exc:
        return {"ok": False, "error": "bad_request", "detail": str(exc)[:300], "cmd": cmd}
    except Exception as exc:
        log.exception("Řídicí příkaz %s selhal", cmd)
        return {"ok": False, "error": "internal_error", "detail": str(exc)[:300], "cmd": cmd}


class _Handler(socketserver.BaseRequestHandler):
    def handle(self):
        data = b""
        while True:
            chunk = self.request.recv(65536)
            if not chunk:
                break
            data += chunk
            if b"\n" in data:
                break
        line = data.split(b"\n", 1)[0].decode("utf-8", errors="ignore").strip()
        try:
            req = json.loads(line) if line else {}
        except json.JSONDecodeError:
            req = None
        ctx: ControlContext = self.server.ctx  # type: ignore[attr-defined]
        if not isinstance(req, dict):
            resp: Dict[str, Any] = {"ok": False, "error": "invalid_json"}
        else:
            resp = handle_request(ctx, req)
        self.request.sendall((json.dumps(resp, ensure_ascii=False, default=str) + "\n").encode("utf-8"))


class ControlServer:
    def __init__(self, host: str, port: int, ctx: ControlContext):
        self._server = socketserver.ThreadingTCPServer((host, port), _Handler)
        self._server.daemon_threads = True
        self._server.ctx = ctx  # type: ignore[attr-defined]
        self._thread: threading.Thread | None = None

    @property
    def address(self):
        return self._server.server_address

    def start(self):
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)
        self._thread.start()

    def shutdown(self):
        self._server.shutdown()
        self._server.server_close()
