from __future__ import annotations

import argparse
import json
import os
import signal
import sys
from pathlib import Path
from typing import Any, Dict

from doklad.db.migrate import init_db
from doklad.db.session import make_engine, make_session_factory
from doklad.utils.config import DEFAULT_CONFIG_NAME, deep_get, load_config
from doklad.utils.env import load_dotenv
from doklad.utils.logging_setup import setup_logging
from doklad.utils.paths import resolve_app_paths

from .app import ServiceApp, build_services
from .control import ControlServer


def _print(obj: Dict[str, Any]) -> None:
    sys.stdout.write(json.dumps(obj, ensure_ascii=False, indent=2, default=str) + "\n")


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="doklad", description="Fakturace, náklady a párování plateb")
    ap.add_argument("--config", default=str(Path.cwd() / DEFAULT_CONFIG_NAME))
    sub = ap.add_subparsers(dest="command")

    sub.add_parser("run", help="řídicí server + sledování mail-drop složky")
    sub.add_parser("init-db", help="vytvoří/aktualizuje databázi")

    ap_pe = sub.add_parser("process-email", help="zpracuje bankovní výpis ze souboru")
    ap_pe.add_argument("--bank-account", type=int, required=True)
    ap_pe.add_argument("--company", type=int, required=True)
    ap_pe.add_argument("file")

    ap_chat = sub.add_parser("chat", help="jedna zpráva AI asistentovi")
    ap_chat.add_argument("--company", type=int, required=True)
    ap_chat.add_argument("--user", default=None)
    ap_chat.add_argument("--page", default="/dashboard")
    ap_chat.add_argument("message")

    ap_stats = sub.add_parser("stats", help="statistika párování plateb")
    ap_stats.add_argument("--company", type=int, required=True)
    return ap


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    if not getattr(args, "command", None):
        args.command = "run"

    config_path = Path(args.config)
    load_dotenv(config_path.parent / ".env")
    cfg = load_config(config_path)

    paths = resolve_app_paths(
        deep_get(cfg, ["app", "data_dir"]),
        deep_get(cfg, ["app", "db_path"]),
        deep_get(cfg, ["app", "log_dir"]),
        deep_get(cfg, ["maildrop", "dir"]),
    )
    log = setup_logging(paths.log_dir, name="doklad_service")

    engine = make_engine(str(paths.db_path))
    init_db(engine)
    sf = make_session_factory(engine)

    if args.command == "init-db":
        log.info("Databáze připravena: %s", paths.db_path)
        _print({"ok": True, "db_path": str(paths.db_path)})
        return 0

    if args.command == "process-email":
        services = build_services(cfg, sf, paths)
        content = Path(args.file).read_text(encoding="utf-8", errors="replace")
        res = services.payments.process_email(content, args.bank_account, args.company)
        _print(res.to_dict())
        return 0 if not res.errors else 1

    if args.command == "chat":
        services = build_services(cfg, sf, paths)
        resp = services.dispatcher.dispatch(args.company, args.user, args.message, {"path": args.page}, [], [])
        _print(resp.to_dict())
        return 0

    if args.command == "stats":
        services = build_services(cfg, sf, paths)
        _print(services.payments.matching_stats(args.company))
        return 0

    pid_path = paths.data_dir / "service.pid"
    pid_path.write_text(str(os.getpid()), encoding="utf-8")

    app = ServiceApp(cfg, sf, paths, log)
    ctrl = ControlServer(
        str(deep_get(cfg, ["service", "host"], "127.0.0.1")),
        int(deep_get(cfg, ["service", "port"], 8765)),
        app.control_context(),
    )
    ctrl.start()

    def _sig(_signum, _frame):
        app.request_stop()

    signal.signal(signal.SIGINT, _sig)
    signal.signal(signal.SIGTERM, _sig)

    try:
        log.info("Service started")
        app.run_forever()
        log.info("Service stopped")
        return 0
    finally:
        ctrl.shutdown()
        pid_path.unlink(missing_ok=True)


if __name__ == "__main__":
    raise SystemExit(main())
