from __future__ import annotations

import json
import logging
import os
import socket
import sys
import threading
import traceback
from collections import deque
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Dict

from doklad.utils.forensic_context import get_forensic_fields

LOG_FILE_NAME = "doklad.log"
FORENSIC_FILE_NAME = "doklad_forensic.jsonl"

_TRUTHY = {"1", "true", "yes", "on"}


def _env_flag(name: str, default: str = "") -> bool:
    return str(os.environ.get(name, default)).strip().lower() in _TRUTHY


class LineCappedFileHandler(logging.Handler):
    """
    Jeden logovací soubor s chováním "ring bufferu":
    po překročení max_lines (+ malá rezerva) se soubor ořízne na posledních max_lines řádků.
    """

    def __init__(self, filename: Path, *, max_lines: int = 5000, encoding: str = "utf-8"):
        super().__init__()
        self._filename = Path(filename)
        self._encoding = encoding
        self.max_lines = int(max_lines)
        # ořezávat po dávkách, ne při každém zápisu
        self._trim_chunk = max(10, self.max_lines // 100)
        self._mtx = threading.RLock()
        self._stream = None
        self._line_count = 0
        self._reopen()

    def _reopen(self) -> None:
        self._filename.parent.mkdir(parents=True, exist_ok=True)
        try:
            with open(self._filename, "r", encoding=self._encoding, errors="ignore") as rf:
                self._line_count = sum(1 for _ in rf)
        except FileNotFoundError:
            self._line_count = 0
        self._stream = open(self._filename, "a", encoding=self._encoding, errors="backslashreplace")

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
            if not msg.endswith("\n"):
                msg += "\n"
            with self._mtx:
                if self._stream is None:
                    self._reopen()
                self._stream.write(msg)
                self._stream.flush()
                self._line_count += msg.count("\n")
                if self._line_count >= self.max_lines + self._trim_chunk:
                    self._trim()
        except Exception:
            self.handleError(record)

    def _trim(self) -> None:
        if self._stream is not None:
            self._stream.close()
            self._stream = None
        with open(self._filename, "r", encoding=self._encoding, errors="ignore") as rf:
            tail = deque(rf, maxlen=self.max_lines)
        with open(self._filename, "w", encoding=self._encoding, errors="backslashreplace") as wf:
            wf.writelines(tail)
        self._reopen()

    def close(self) -> None:
        with self._mtx:
            if self._stream is not None:
                try:
                    self._stream.close()
                finally:
                    self._stream = None
        super().close()


class ForensicContextFilter(logging.Filter):
    """Doplní do každého záznamu host, uživatele a aktuální forenzní contextvars."""

    def __init__(self) -> None:
        super().__init__()
        self._hostname = socket.gethostname()
        self._user = os.environ.get("USERNAME") or os.environ.get("USER") or "unknown"

    def filter(self, record: logging.LogRecord) -> bool:
        record.hostname = self._hostname
        record.user = self._user
        record.forensic = get_forensic_fields()
        return True


class JsonLineFormatter(logging.Formatter):
    """Serializuje log record do JSONL pro strojové čtení."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "funcName": record.funcName,
            "line": record.lineno,
            "process": record.process,
            "threadName": record.threadName,
            "hostname": getattr(record, "hostname", None),
            "user": getattr(record, "user", None),
            "event_name": getattr(record, "event_name", None),
            "forensic": getattr(record, "forensic", None) or get_forensic_fields(),
        }
        extra_obj = getattr(record, "extra_payload", None)
        if extra_obj:
            payload["extra"] = extra_obj
        if record.exc_info:
            payload["exception"] = "".join(traceback.format_exception(*record.exc_info))
        return json.dumps(payload, ensure_ascii=False, default=str)


_ROOT_CONFIGURED = False
_ROOT_CONFIG_LOCK = threading.Lock()
_HOOKS_INSTALLED = False


def _install_runtime_hooks(log: logging.Logger) -> None:
    global _HOOKS_INSTALLED
    if _HOOKS_INSTALLED:
        return
    _HOOKS_INSTALLED = True

    def _sys_excepthook(exc_type, exc, tb):
        log.critical("Nezachycená výjimka v hlavním vlákně", exc_info=(exc_type, exc, tb))

    def _threading_excepthook(args: threading.ExceptHookArgs) -> None:
        log.critical(
            "Nezachycená výjimka ve vlákně name=%s",
            getattr(args.thread, "name", "unknown"),
            exc_info=(args.exc_type, args.exc_value, args.exc_traceback),
        )

    sys.excepthook = _sys_excepthook
    threading.excepthook = _threading_excepthook
    logging.captureWarnings(True)


def _max_lines() -> int:
    raw = os.environ.get("DOKLAD_LOG_MAX_LINES")
    if raw:
        try:
            val = int(raw)
            if val > 0:
                return val
        except ValueError:
            pass
    return 200_000


def setup_logging(log_dir: Path, name: str = "doklad") -> logging.Logger:
    """
    Nastaví sdílené logování:
      <log_dir>/doklad.log              textový log
      <log_dir>/doklad_forensic.jsonl   JSONL s forenzním kontextem

    Konzole je ve výchozím stavu vypnutá, zapíná se přes DOKLAD_LOG_CONSOLE=1.
    """
    global _ROOT_CONFIGURED

    log_dir.mkdir(parents=True, exist_ok=True)
    max_lines = _max_lines()

    with _ROOT_CONFIG_LOCK:
        if not _ROOT_CONFIGURED:
            root = logging.getLogger()
            root.setLevel(logging.DEBUG)
            fmt = logging.Formatter(
                "%(asctime)s.%(msecs)03d %(levelname)s pid=%(process)d tid=%(threadName)s "
                "[%(name)s:%(funcName)s:%(lineno)d] %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
            forensic_filter = ForensicContextFilter()

            fh = LineCappedFileHandler(log_dir / LOG_FILE_NAME, max_lines=max_lines)
            fh.setFormatter(fmt)
            fh.addFilter(forensic_filter)
            root.addHandler(fh)

            fh_json = LineCappedFileHandler(log_dir / FORENSIC_FILE_NAME, max_lines=max_lines * 2)
            fh_json.setFormatter(JsonLineFormatter())
            fh_json.addFilter(forensic_filter)
            root.addHandler(fh_json)

            if _env_flag("DOKLAD_LOG_CONSOLE"):
                ch = logging.StreamHandler()
                ch.setFormatter(fmt)
                ch.addFilter(forensic_filter)
                root.addHandler(ch)

            setattr(root, "_doklad_log_detail", _env_flag("DOKLAD_LOG_DETAIL", "1"))
            _ROOT_CONFIGURED = True

    logger = logging.getLogger(name)
    logger.setLevel(logging.DEBUG)
    logger.propagate = True
    _install_runtime_hooks(logger)
    log_event(logger, "logging.start", "Logging inicializován", log_dir=str(log_dir), pid=os.getpid(), max_lines=max_lines)
    return logger


def log_event(logger: logging.Logger, event_name: str, message: str, **extra: Any) -> None:
    """
    Strukturované logování:
    - doplní event_name a extra_payload (pro JSONL)
    - do textového logu přidá čitelný suffix key=value
    """
    extra_payload: Dict[str, Any] = dict(extra)
    if not getattr(logging.getLogger(), "_doklad_log_detail", True):
        # bez detailu vynecháme velké hodnoty
        extra_payload = {k: v for k, v in extra_payload.items() if len(repr(v)) <= 400}

    suffix = ""
    if extra_payload:
        suffix = " | " + " ".join(f"{k}={extra_payload[k]!r}" for k in sorted(extra_payload))
    logger.info(
        f"{message}{suffix}",
        extra={
            "event_name": event_name,
            "extra_payload": extra_payload,
            "forensic": get_forensic_fields(),
        },
    )
