from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence
from urllib.parse import urlencode

from doklad.extract.invoice_fields import extract_invoice_fields, invoice_draft_from_dict
from doklad.extract.prompts import ASSISTANT_SYSTEM, HELP_RESPONSE
from doklad.extract.receipt import expense_draft_from_dict, extract_receipt_fields
from doklad.integrations.llm import LLMClient
from doklad.utils.forensic_context import forensic_scope, new_correlation_id
from doklad.utils.logging_setup import log_event

from .mutations import ActionResult, InvoiceMutationService, navigate
from .status import STATUS_LABELS_CS, InvalidStatusTransition
from .targets import InvoiceLocator, TargetNotFound
from .tools import ARG_LABELS_CS, TOOLS, missing_arguments

log = logging.getLogger(__name__)

HISTORY_LIMIT = 10
APOLOGY = "Omlouváme se, došlo k neočekávané chybě. Zkuste to prosím znovu nebo kontaktujte podporu."
INVOICE_APOLOGY = "Omlouváme se, nepodařilo se vytvořit fakturu. Zkuste to prosím znovu nebo použijte formulář."
RECEIPT_UNREADABLE = (
    "Nepodařilo se přečíst údaje z účtenky. Zkuste prosím ostřejší fotografii nebo vyplňte náklad ve formuláři."
)
TARGET_NOT_FOUND = "Faktura nebyla nalezena. Otevřete prosím fakturu, kterou chcete upravit, nebo uveďte její číslo."
INVOICE_HINT = (
    "Pro vytvoření faktury potřebuji alespoň název zákazníka a popis služby. "
    "Zkuste například: 'vytvoř fakturu TestCompany za služby 15000 Kč'"
)
NO_ANSWER = "Nepodařilo se zpracovat požadavek. Zkuste ho prosím formulovat jinak."

# navigace bez LLM (klíčová slova -> stránka)
_OFFLINE_ROUTES = (
    (("faktur", "invoice"), "/invoices", "Přesměrovávám vás na seznam faktur."),
    (("zákazník", "zakaznik", "customer"), "/customers", "Přesměrovávám vás na seznam zákazníků."),
    (("náklad", "naklad", "výdaj", "expense"), "/expenses", "Přesměrovávám vás na náklady."),
    (("dashboard", "přehled", "domů"), "/dashboard", "Přesměrovávám vás na hlavní panel."),
    (("nastavení", "settings"), "/settings", "Přesměrovávám vás na nastavení."),
)
_HELP_WORDS = ("pomoc", "help", "co umíš", "nápověda")


class MissingArguments(ValueError):
    def __init__(self, tool_name: str, missing: Sequence[str]):
        self.tool_name = tool_name
        self.missing = list(missing)
        super().__init__(f"{tool_name}: chybí {', '.join(self.missing)}")

    def clarification(self) -> str:
        labels = [ARG_LABELS_CS.get(m, m) for m in self.missing]
        return f"Pro dokončení akce potřebuji ještě: {', '.join(labels)}. Doplňte je prosím."


@dataclass
class Attachment:
    filename: str
    mime: str
    data: bytes

    @property
    def is_image(self) -> bool:
        return self.mime.lower().startswith("image/")

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> "Attachment":
        raw = obj.get("data") or obj.get("content") or b""
        if isinstance(raw, str):
            try:
                raw = base64.b64decode(raw, validate=True)
            except (binascii.Error, ValueError):
                raw = raw.encode("utf-8")
        return cls(
            filename=str(obj.get("filename") or obj.get("name") or "priloha"),
            mime=str(obj.get("mime") or obj.get("contentType") or obj.get("type") or "application/octet-stream"),
            data=bytes(raw),
        )


@dataclass
class DispatchResponse:
    content: str
    action: Optional[Dict[str, Any]] = None
    used_fallback_target: bool = False

    @classmethod
    def from_result(cls, res: ActionResult) -> "DispatchResponse":
        return cls(res.content, res.action, res.used_fallback_target)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"content": self.content}
        if self.action is not None:
            out["action"] = self.action
        if self.used_fallback_target:
            out["usedFallbackTarget"] = True
        return out


def _page_path(page_context: Any) -> Optional[str]:
    if isinstance(page_context, dict):
        return page_context.get("path") or page_context.get("currentPath")
    return str(page_context) if page_context else None


def offline_reply(message: str) -> DispatchResponse:
    """Odpověď podle klíčových slov, když LLM není k dispozici."""
    msg = (message or "").lower()
    if any(w in msg for w in _HELP_WORDS):
        return DispatchResponse(HELP_RESPONSE)
    for words, path, text in _OFFLINE_ROUTES:
        if any(w in msg for w in words):
            return DispatchResponse(text, navigate(path))
    return DispatchResponse(HELP_RESPONSE)


class AICommandDispatcher:
    """
    Převede zprávu z chatu na jednu operaci Mutation Service přes function calling.

    Obrázek v přílohách jde mimo function calling rovnou na vytěžení účtenky
    a založení nákladu. Žádná výjimka neodejde k volajícímu; chyby se logují
    a uživatel dostane českou omluvu s doporučeným dalším krokem.
    """

    def __init__(
        self,
        llm: LLMClient | None,
        mutations: InvoiceMutationService,
        *,
        receipt_extractor: Callable[..., Any] = extract_receipt_fields,
        invoice_extractor: Callable[..., Any] = extract_invoice_fields,
        history_limit: int = HISTORY_LIMIT,
        timeout: float | None = None,
    ):
        self.llm = llm
        self.mutations = mutations
        self.receipt_extractor = receipt_extractor
        self.invoice_extractor = invoice_extractor
        self.history_limit = int(history_limit)
        self.timeout = timeout
        self._handlers: Dict[str, Callable[..., ActionResult]] = {
            "create_invoice": self._create_invoice,
            "add_item_to_invoice": self._add_item,
            "update_invoice_universal": self._update_universal,
            "update_invoice_prices": self._update_prices,
            "add_note_to_invoice": self._add_note,
            "update_invoice_status": self._update_status,
            "create_expense": self._create_expense,
            "get_expenses": self._get_expenses,
            "navigate_to_page": self._navigate,
            "provide_help": self._provide_help,
        }

    # --- vstupní bod -------------------------------------------------------

    def dispatch(
        self,
        company_id: int,
        user_id: str | None,
        message: str,
        page_context: Any = None,
        chat_history: Optional[Sequence[Dict[str, Any]]] = None,
        attachments: Optional[Sequence[Any]] = None,
    ) -> DispatchResponse:
        with forensic_scope(correlation_id=new_correlation_id(), company_id=company_id, phase="dispatch"):
            try:
                atts = [a if isinstance(a, Attachment) else Attachment.from_dict(a) for a in attachments or []]
                image = next((a for a in atts if a.is_image and a.data), None)
                if image is not None:
                    return self._handle_receipt(company_id, user_id, image)

                text = (message or "").strip()
                low = text.lower()
                if ("vytvoř fakturu" in low or "vytvořte fakturu" in low) and len(text.split()) <= 2:
                    return DispatchResponse(INVOICE_HINT)

                if self.llm is None or not self.llm.configured:
                    return offline_reply(text)

                messages = self.build_messages(text, _page_path(page_context), chat_history)
                reply = self.llm.chat_with_tools(messages, TOOLS, timeout=self.timeout)
            except Exception as exc:
                log_event(log, "dispatcher.error", "Dispatcher failed before tool call", error_type=type(exc).__name__, error=str(exc)[:300])
                return DispatchResponse(APOLOGY)

            if reply.tool_call is None:
                return DispatchResponse((reply.content or "").strip() or NO_ANSWER)
            return self._run_tool(company_id, user_id, text, _page_path(page_context), reply.tool_call.name, reply.tool_call.arguments)

    def build_messages(
        self,
        message: str,
        page_path: Optional[str],
        chat_history: Optional[Sequence[Dict[str, Any]]],
    ) -> List[Dict[str, Any]]:
        msgs: List[Dict[str, Any]] = [{"role": "system", "content": ASSISTANT_SYSTEM}]
        history = [h for h in (chat_history or []) if isinstance(h, dict) and h.get("role") in ("user", "assistant")]
        for h in (history[-self.history_limit:] if self.history_limit > 0 else []):
            content = h.get("content") if h.get("content") is not None else h.get("message")
            msgs.append({"role": h["role"], "content": str(content or "")})
        msgs.append({"role": "user", "content": f"{message}\n\nKontext: aktuální stránka {page_path or '/'}"})
        return msgs

    # --- provedení funkce ----------------------------------------------------

    def _run_tool(self, company_id: int, user_id: str | None, message: str, page_path: Optional[str], name: str, args: Dict[str, Any]) -> DispatchResponse:
        handler = self._handlers.get(name)
        if handler is None:
            log_event(log, "dispatcher.unknown_tool", "LLM chose an unknown tool", tool=name)
            return DispatchResponse(NO_ANSWER)
        log_event(log, "dispatcher.tool", "Dispatching tool call", tool=name, arg_keys=sorted((args or {}).keys()))
        try:
            missing = missing_arguments(name, args)
            if missing:
                raise MissingArguments(name, missing)
            res = handler(company_id, user_id, message, page_path, args or {})
            return DispatchResponse.from_result(res)
        except MissingArguments as exc:
            log_event(log, "dispatcher.missing_arguments", "Tool call is missing arguments", tool=name, missing=exc.missing)
            return DispatchResponse(exc.clarification())
        except InvalidStatusTransition as exc:
            log_event(log, "dispatcher.tool_error", "Invalid status transition", tool=name, error=str(exc))
            return DispatchResponse(self._status_message(exc))
        except TargetNotFound as exc:
            log_event(log, "dispatcher.tool_error", "Target invoice not found", tool=name, error=str(exc))
            return DispatchResponse(TARGET_NOT_FOUND, navigate("/invoices"))
        except Exception as exc:
            log.exception("Nástroj %s selhal", name)
            log_event(log, "dispatcher.tool_error", "Tool failed", tool=name, error_type=type(exc).__name__, error=str(exc)[:300])
            if name == "create_invoice":
                return DispatchResponse(INVOICE_APOLOGY, navigate("/invoices/new"))
            return DispatchResponse(APOLOGY)

    @staticmethod
    def _status_message(exc: InvalidStatusTransition) -> str:
        if exc.reason == "unknown_status":
            allowed = ", ".join(f"{s.value} ({label})" for s, label in STATUS_LABELS_CS.items())
            return f"Stav \"{exc.requested}\" neznám. Povolené stavy jsou: {allowed}."
        return f"Stav faktury nelze změnit z \"{exc.current}\" na \"{exc.requested}\"."

    def _handle_receipt(self, company_id: int, user_id: str | None, image: Attachment) -> DispatchResponse:
        log_event(log, "dispatcher.tool", "Receipt image received", tool="create_expense", source="vision", mime=image.mime)
        try:
            draft = self.receipt_extractor(image.data, image.mime, self.llm, timeout=self.timeout)
            if draft.is_empty or (draft.total is None and draft.amount is None):
                return DispatchResponse(RECEIPT_UNREADABLE, navigate("/expenses/new"))
            res = self.mutations.create_expense(
                company_id,
                draft,
                user_id=user_id,
                attachment_name=image.filename,
                attachment_mime=image.mime,
            )
            return DispatchResponse.from_result(res)
        except Exception as exc:
            log.exception("Zpracování účtenky selhalo")
            log_event(log, "dispatcher.tool_error", "Receipt processing failed", tool="create_expense", error_type=type(exc).__name__)
            return DispatchResponse(APOLOGY)

    # --- handlery ------------------------------------------------------------

    @staticmethod
    def _locator(page_path: Optional[str], args: Dict[str, Any]) -> InvoiceLocator:
        return InvoiceLocator(page_path=page_path, invoice_id=args.get("invoiceId"), invoice_number=args.get("invoiceNumber") or None)

    def _create_invoice(self, company_id, user_id, message, page_path, args) -> ActionResult:
        draft = invoice_draft_from_dict(args)
        if not draft.items:
            # LLM vybral funkci, ale položky nevyplnil; zkusíme samostatné vytěžení
            extracted = self.invoice_extractor(message, self.llm, timeout=self.timeout)
            draft.items = extracted.items
            draft.total_amount = draft.total_amount or extracted.total_amount
            draft.customer_ico = draft.customer_ico or extracted.customer_ico
        return self.mutations.create_invoice_from_draft(company_id, draft, user_id=user_id)

    def _add_item(self, company_id, user_id, message, page_path, args) -> ActionResult:
        return self.mutations.add_item(
            company_id,
            self._locator(page_path, args),
            description=str(args["description"]),
            quantity=args.get("quantity"),
            unit=str(args.get("unit") or "ks"),
            unit_price=args["unitPrice"],
            vat_rate=args.get("vatRate"),
            user_id=user_id,
        )

    def _update_universal(self, company_id, user_id, message, page_path, args) -> ActionResult:
        return self.mutations.update_invoice(company_id, self._locator(page_path, args), str(args["updateType"]), args, user_id=user_id)

    def _update_prices(self, company_id, user_id, message, page_path, args) -> ActionResult:
        return self.mutations.update_prices(company_id, self._locator(page_path, args), list(args["items"]), user_id=user_id)

    def _add_note(self, company_id, user_id, message, page_path, args) -> ActionResult:
        return self.mutations.add_note(company_id, self._locator(page_path, args), str(args["note"]), user_id=user_id)

    def _update_status(self, company_id, user_id, message, page_path, args) -> ActionResult:
        return self.mutations.update_status(company_id, self._locator(page_path, args), args["status"], user_id=user_id)

    def _create_expense(self, company_id, user_id, message, page_path, args) -> ActionResult:
        return self.mutations.create_expense(company_id, expense_draft_from_dict(args), user_id=user_id)

    def _get_expenses(self, company_id, user_id, message, page_path, args) -> ActionResult:
        return self.mutations.list_expenses(
            company_id,
            status=args.get("status") or None,
            category=args.get("category") or None,
            date_from=args.get("dateFrom"),
            date_to=args.get("dateTo"),
        )

    def _navigate(self, company_id, user_id, message, page_path, args) -> ActionResult:
        path = str(args["path"]).strip()
        if not path.startswith("/"):
            path = "/" + path
        filters = {k: v for k, v in (args.get("filters") or {}).items() if v}
        if filters:
            path = f"{path}?{urlencode(filters)}"
        return ActionResult(f"Přecházím na {path}.", navigate(path))

    def _provide_help(self, company_id, user_id, message, page_path, args) -> ActionResult:
        return ActionResult(str(args.get("response") or HELP_RESPONSE))
