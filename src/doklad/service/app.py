from __future__ import annotations

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Optional

from doklad.integrations.ares import AresRegistry
from doklad.integrations.llm import LLMClient, LLMConfig
from doklad.matching.engine import MatchingEngine
from doklad.matching.llm_matcher import LLMSemanticMatcher
from doklad.utils.config import deep_get
from doklad.utils.env import resolve_api_key
from doklad.utils.logging_setup import log_event
from doklad.utils.time import utc_now_naive

from .control import ControlContext
from .dispatcher import AICommandDispatcher
from .maildrop import DirectoryWatcher, MaildropProcessor, scan_directory
from .mutations import InvoiceMutationService
from .payments import PaymentProcessingService
from .webhook import BankEmailIntake


def llm_from_config(cfg: Dict[str, Any]) -> LLMClient:
    """LLM klient z konfigurace; bez API klíče vrací nenakonfigurovaného klienta."""
    key = resolve_api_key()
    if not key:
        return LLMClient(None)
    sec = cfg.get("llm") or {}
    return LLMClient(
        LLMConfig(
            api_key=key,
            model=str(sec.get("model") or "gpt-4o-mini"),
            vision_model=sec.get("vision_model") or None,
            base_url=str(sec.get("base_url") or "https://api.openai.com/v1"),
            timeout_sec=float(sec.get("timeout_sec") or 30),
            temperature=float(sec.get("temperature") or 0.0),
            max_output_tokens=int(sec.get("max_output_tokens") or 1500),
        )
    )


@dataclass
class Services:
    llm: LLMClient
    mutations: InvoiceMutationService
    payments: PaymentProcessingService
    intake: BankEmailIntake
    dispatcher: AICommandDispatcher


def build_services(cfg: Dict[str, Any], session_factory, paths, *, llm: LLMClient | None = None) -> Services:
    llm = llm if llm is not None else llm_from_config(cfg)
    timeout = float(deep_get(cfg, ["llm", "timeout_sec"], 30))
    registry = None
    if deep_get(cfg, ["ares", "enabled"], True):
        registry = AresRegistry(
            timeout=int(deep_get(cfg, ["ares", "timeout"], 10)),
            cache_ttl_seconds=int(deep_get(cfg, ["ares", "cache_ttl_seconds"], 7 * 24 * 3600)),
        )
    engine = MatchingEngine(
        LLMSemanticMatcher(llm, timeout=timeout) if llm.configured else None,
        tolerance=Decimal(str(deep_get(cfg, ["matching", "tolerance"], "0.01"))),
        min_confidence=int(deep_get(cfg, ["matching", "min_confidence"], 70)),
    )
    mutations = InvoiceMutationService(session_factory, registry=registry)
    payments = PaymentProcessingService(session_factory, engine, mutations, llm=llm, llm_timeout=timeout)
    intake = BankEmailIntake(session_factory, payments, archive_dir=paths.email_archive_dir)
    dispatcher = AICommandDispatcher(llm, mutations, timeout=timeout)
    return Services(llm=llm, mutations=mutations, payments=payments, intake=intake, dispatcher=dispatcher)


class ServiceApp:
    """
    Běžící služba: řídicí příkazy přes ControlServer a sledování mail-drop
    složky. Soubory z mail-dropu se zpracovávají sekvenčně jedním workerem.
    """

    def __init__(self, cfg: Dict[str, Any], session_factory, paths, logger, *, services: Services | None = None):
        self.cfg = cfg
        self.sf = session_factory
        self.paths = paths
        self.log = logger
        self.services = services or build_services(cfg, session_factory, paths)
        self._stop = threading.Event()
        self._started_at = utc_now_naive()
        self._executor = ThreadPoolExecutor(max_workers=1)
        self._inflight_lock = threading.Lock()
        self._inflight: set[Future] = set()
        self._files_done = 0

        self.maildrop_enabled = bool(deep_get(cfg, ["maildrop", "enabled"], True))
        self._maildrop = MaildropProcessor(Path(paths.maildrop_dir), self.services.intake)
        self._watcher: Optional[DirectoryWatcher] = (
            DirectoryWatcher(Path(paths.maildrop_dir), self.enqueue_path) if self.maildrop_enabled else None
        )

    # --- mail-drop ---------------------------------------------------------

    def _drop_future(self, fut: Future) -> None:
        with self._inflight_lock:
            self._inflight.discard(fut)

    def _inflight_count(self) -> int:
        with self._inflight_lock:
            self._inflight = {f for f in self._inflight if not f.done()}
            return len(self._inflight)

    def _process_path(self, p: Path) -> None:
        if not p.exists():
            return
        self._maildrop.process_file(p)
        with self._inflight_lock:
            self._files_done += 1

    def enqueue_path(self, p: Path) -> None:
        # počkat, až zapisující proces soubor dopíše
        time.sleep(0.2)
        if self._stop.is_set():
            return
        fut = self._executor.submit(self._process_path, Path(p))
        with self._inflight_lock:
            self._inflight.add(fut)
        fut.add_done_callback(self._drop_future)

    # --- řídicí příkazy ----------------------------------------------------

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": not self._stop.is_set(),
            "started_at": self._started_at.isoformat(),
            "llm_configured": self.services.llm.configured,
            "maildrop_enabled": self.maildrop_enabled,
            "maildrop_dir": str(self.paths.maildrop_dir),
            "inflight": self._inflight_count(),
            "files_processed": self._files_done,
        }

    def request_stop(self) -> None:
        self._stop.set()

    def _cmd_process_email(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        res = self.services.payments.process_email(
            str(payload["emailContent"]), int(payload["bankAccountId"]), int(payload["companyId"])
        )
        return res.to_dict()

    def _cmd_bank_email(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self.services.intake.handle_bank_email(
            str(payload["to"]),
            payload.get("from"),
            payload.get("subject"),
            payload.get("text"),
            payload.get("attachments") or [],
        )

    def _cmd_chat(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        resp = self.services.dispatcher.dispatch(
            int(payload["companyId"]),
            payload.get("userId"),
            str(payload.get("message") or ""),
            payload.get("pageContext"),
            payload.get("chatHistory") or [],
            payload.get("attachments") or [],
        )
        return resp.to_dict()

    def _cmd_stats(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self.services.payments.matching_stats(int(payload["companyId"]))

    def _cmd_unmatched(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        rows = self.services.payments.unmatched_payments(int(payload["companyId"]), limit=int(payload.get("limit") or 100))
        return {"transactions": rows}

    def _cmd_manual_match(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        res = self.services.mutations.manual_match(
            int(payload["companyId"]),
            int(payload["transactionId"]),
            int(payload["invoiceId"]),
            payload.get("userId"),
        )
        return res.to_dict()

    def control_context(self) -> ControlContext:
        return ControlContext(
            get_status=self.get_status,
            request_stop=self.request_stop,
            commands={
                "process_email": self._cmd_process_email,
                "bank_email": self._cmd_bank_email,
                "chat": self._cmd_chat,
                "stats": self._cmd_stats,
                "unmatched": self._cmd_unmatched,
                "manual_match": self._cmd_manual_match,
            },
        )

    # --- hlavní smyčka -----------------------------------------------------

    def run_forever(self, poll_interval: float = 1.0) -> None:
        if self._watcher is not None:
            # soubory, které dorazily, když služba neběžela
            for p in scan_directory(Path(self.paths.maildrop_dir)):
                self.enqueue_path(p)
            self._watcher.start()
        log_event(self.log, "service.start", "Service running", maildrop=self.maildrop_enabled, llm=self.services.llm.configured)
        try:
            while not self._stop.is_set():
                self._stop.wait(poll_interval)
        finally:
            if self._watcher is not None:
                try:
                    self._watcher.stop()
                except Exception:
                    self.log.exception("Watcher stop failed")
            self._executor.shutdown(wait=True, cancel_futures=True)
            log_event(self.log, "service.stop", "Service stopped", files_processed=self._files_done)
