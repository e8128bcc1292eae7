from __future__ import annotations

import datetime as dt
import logging
import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from doklad.db import queries as q
from doklad.db.models import BankTransaction, Expense, Invoice, InvoiceStatus, MatchType, PaymentMatch
from doklad.db.session import unit_of_work
from doklad.extract.invoice_fields import InvoiceDraft
from doklad.extract.receipt import ExpenseDraft
from doklad.extract.vat_math import DEFAULT_VAT_RATE, compute_invoice_totals, compute_item_total, vat_from_net
from doklad.integrations.ares import AresRegistry
from doklad.matching.engine import MatchResult
from doklad.utils.czech_format import format_czk, parse_czech_amount, parse_czech_date, q2
from doklad.utils.forensic_context import forensic_scope
from doklad.utils.iban import is_valid_iban, looks_like_iban, normalize_iban
from doklad.utils.logging_setup import log_event
from doklad.utils.time import add_days, today, utc_now_naive

from .customers import resolve_customer
from .status import STATUS_LABELS_CS, parse_status, validate_status_transition
from .targets import InvoiceLocator, InvoiceTarget, TargetNotFound

log = logging.getLogger(__name__)

DEFAULT_DUE_DAYS = 14
MANUAL_MATCH_NOTE = "Manual match by user"
UPDATE_TYPES = ("splatnost", "poznamky", "zakaznik", "platba", "mnozstvi", "ceny", "status", "obecne")

_DIGITS_RE = re.compile(r"\D+")


def navigate(path: str) -> Dict[str, Any]:
    return {"type": "navigate", "data": {"path": path}}


def refresh_current_page() -> Dict[str, Any]:
    return {"type": "refresh_current_page", "data": {}}


@dataclass
class ActionResult:
    """Odpověď pro uživatele + deklarativní pokyn pro UI."""

    content: str
    action: Optional[Dict[str, Any]] = None
    used_fallback_target: bool = False

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"content": self.content}
        if self.action is not None:
            out["action"] = self.action
        if self.used_fallback_target:
            out["usedFallbackTarget"] = True
        return out


def recompute_invoice_totals(invoice: Invoice) -> None:
    subtotal, vat, total = compute_invoice_totals(invoice.items, reverse_charge=bool(invoice.is_reverse_charge))
    invoice.subtotal = subtotal
    invoice.vat_amount = vat
    invoice.total = total


def _text(v: Any, max_len: int = 512) -> Optional[str]:
    if v is None:
        return None
    s = str(v).strip()
    return s[:max_len] if s else None


def _fmt(v: Any) -> Optional[str]:
    if v is None:
        return None
    if isinstance(v, dt.date):
        return v.isoformat()
    return str(v)


class InvoiceMutationService:
    """
    Operace nad fakturami a náklady volané z chatu a z párování plateb.

    Každá operace běží v jedné transakci (unit_of_work); přepočet součtů,
    změna faktury a auditní záznam se zapíšou společně, nebo vůbec.
    """

    def __init__(
        self,
        session_factory,
        *,
        registry: AresRegistry | None = None,
        due_days: int = DEFAULT_DUE_DAYS,
        default_vat_rate: Decimal = DEFAULT_VAT_RATE,
    ):
        self.session_factory = session_factory
        self.registry = registry
        self.due_days = int(due_days)
        self.default_vat_rate = Decimal(default_vat_rate)

    # --- párování plateb ---------------------------------------------------

    def record_match(
        self,
        session: Session,
        transaction: BankTransaction,
        result: MatchResult,
        *,
        matched_by: str | None = None,
    ) -> PaymentMatch:
        """Zapíše rozhodnutí párování v rámci transakce volajícího (bez commitu)."""
        invoice = q.get_invoice(session, transaction.company_id, result.invoice_id)
        if invoice is None:
            raise TargetNotFound(f"Faktura s ID {result.invoice_id} nebyla nalezena")
        match = q.commit_payment_match(
            session,
            transaction=transaction,
            invoice=invoice,
            match_type=result.match_type.value,
            confidence=result.confidence,
            matched_amount=result.matched_amount,
            notes=result.notes,
            matched_by=matched_by,
        )
        log_event(
            log,
            "mutation.applied",
            "Payment match recorded",
            operation="record_match",
            invoice_id=invoice.id,
            transaction_id=transaction.id,
            match_type=result.match_type.value,
            confidence=result.confidence,
        )
        return match

    def manual_match(self, company_id: int, transaction_id: int, invoice_id: int, user_id: str | None) -> ActionResult:
        with forensic_scope(company_id=company_id, invoice_id=invoice_id, phase="manual_match"):
            with unit_of_work(self.session_factory) as session:
                tx = q.get_transaction(session, company_id, int(transaction_id))
                if tx is None:
                    raise TargetNotFound(f"Transakce {transaction_id} nebyla nalezena")
                inv = q.get_invoice(session, company_id, int(invoice_id))
                if inv is None:
                    raise TargetNotFound(f"Faktura s ID {invoice_id} nebyla nalezena")
                result = MatchResult(inv.id, MatchType.MANUAL, 100, Decimal(tx.amount), MANUAL_MATCH_NOTE)
                self.record_match(session, tx, result, matched_by=str(user_id) if user_id else None)
                number = inv.invoice_number
                amount = tx.amount
        return ActionResult(f"Platba {format_czk(amount)} byla ručně spárována s fakturou {number}.", refresh_current_page())

    # --- úpravy faktur -----------------------------------------------------

    def _target(self, session: Session, company_id: int, locator: InvoiceLocator | None) -> InvoiceTarget:
        return (locator or InvoiceLocator()).resolve(session, company_id)

    def add_item(
        self,
        company_id: int,
        locator: InvoiceLocator | None,
        *,
        description: str,
        quantity: Any = 1,
        unit: str = "ks",
        unit_price: Any,
        vat_rate: Any = None,
        user_id: str | None = None,
    ) -> ActionResult:
        qty = parse_czech_amount(quantity)
        if qty is None or qty <= 0:
            qty = Decimal("1")
        price = parse_czech_amount(unit_price)
        if price is None:
            raise ValueError(f"Neplatná cena položky: {unit_price!r}")
        rate = parse_czech_amount(vat_rate)
        rate = self.default_vat_rate if rate is None else rate

        with forensic_scope(company_id=company_id, phase="add_item"):
            with unit_of_work(self.session_factory) as session:
                target = self._target(session, company_id, locator)
                inv = target.invoice
                old_total = inv.total
                item = q.add_invoice_item(
                    session,
                    inv,
                    description=description,
                    quantity=qty,
                    unit=unit or "ks",
                    unit_price=q2(price),
                    vat_rate=rate,
                    total=compute_item_total(qty, price),
                )
                recompute_invoice_totals(inv)
                q.append_history(
                    session,
                    inv.id,
                    "updated",
                    f"Přidána položka {item.description} ({qty} {item.unit} x {q2(price)})",
                    old_value=old_total,
                    new_value=inv.total,
                    user_id=user_id,
                )
                number, new_total = inv.invoice_number, inv.total
                log_event(log, "mutation.applied", "Invoice item added", operation="add_item", invoice_id=inv.id)
        return ActionResult(
            f'Položka "{item.description}" byla přidána k faktuře {number}. Nový celkový součet: {format_czk(new_total)}.',
            refresh_current_page(),
            target.used_fallback,
        )

    def _apply_item_changes(self, inv: Invoice, changes: Sequence[Dict[str, Any]], *, default_first: bool) -> Tuple[List[Tuple[str, str, str]], List[str]]:
        """
        Aplikuje změny množství/cen na položky podle popisu (podřetězec, bez ohledu na velikost písmen).
        Bez popisu a s jedinou položkou na faktuře se změna použije na ni.
        """
        applied: List[Tuple[str, str, str]] = []
        missing: List[str] = []
        for ch in changes or []:
            if not isinstance(ch, dict):
                continue
            needle = _text(ch.get("description") or ch.get("productName"), 256)
            item = None
            if needle:
                for it in inv.items:
                    if needle.lower() in (it.description or "").lower():
                        item = it
                        break
            elif default_first and len(inv.items) == 1:
                item = inv.items[0]
            if item is None:
                missing.append(needle or "?")
                continue
            before = f"{item.quantity} {item.unit} x {item.unit_price}"
            qty = parse_czech_amount(ch.get("quantity"))
            if qty is not None and qty > 0:
                item.quantity = qty
            price = parse_czech_amount(ch.get("unitPrice"))
            if price is not None and price >= 0:
                item.unit_price = q2(price)
            unit = _text(ch.get("unit"), 16)
            if unit:
                item.unit = unit
            item.total = compute_item_total(item.quantity, item.unit_price)
            applied.append((item.description, before, f"{item.quantity} {item.unit} x {item.unit_price}"))
        if applied:
            recompute_invoice_totals(inv)
        return applied, missing

    def update_invoice(
        self,
        company_id: int,
        locator: InvoiceLocator | None,
        update_type: str,
        payload: Dict[str, Any],
        *,
        user_id: str | None = None,
    ) -> ActionResult:
        kind = (update_type or "").strip().lower()
        if kind not in UPDATE_TYPES:
            raise ValueError(f"Neznámý typ aktualizace: {update_type!r}")
        payload = payload or {}

        with forensic_scope(company_id=company_id, phase=f"update_{kind}"):
            with unit_of_work(self.session_factory) as session:
                target = self._target(session, company_id, locator)
                inv = target.invoice
                changes: List[Tuple[str, Any, Any]] = []
                missing: List[str] = []

                if kind in ("splatnost", "obecne") and payload.get("dueDate"):
                    due = parse_czech_date(payload.get("dueDate"))
                    if due is None:
                        raise ValueError(f"Neplatné datum splatnosti: {payload.get('dueDate')!r}")
                    changes.append(("splatnost", inv.due_date, due))
                    inv.due_date = due
                elif kind == "splatnost":
                    raise ValueError("Chybí nové datum splatnosti")

                if kind in ("poznamky", "obecne") and _text(payload.get("notes"), 4000):
                    old = inv.notes
                    inv.notes = self._append_note(old, payload["notes"])
                    changes.append(("poznámky", old, inv.notes))

                if kind == "zakaznik":
                    changes.extend(self._update_customer(inv, payload.get("customer") or {}))

                if kind == "platba":
                    changes.extend(self._update_payment_details(inv, payload.get("paymentDetails") or {}))

                if kind in ("mnozstvi", "ceny"):
                    item_changes = list(payload.get("items") or []) + list(payload.get("pricingItems") or [])
                    applied, missing = self._apply_item_changes(inv, item_changes, default_first=True)
                    changes.extend(("položka " + name, before, after) for name, before, after in applied)

                if kind == "status":
                    changes.extend(self._set_status(inv, payload.get("status")))

                for field_name, old, new in changes:
                    q.append_history(
                        session,
                        inv.id,
                        "updated",
                        f"Změna: {field_name}",
                        old_value=_fmt(old),
                        new_value=_fmt(new),
                        user_id=user_id,
                    )
                number = inv.invoice_number
                log_event(
                    log,
                    "mutation.applied",
                    "Invoice updated",
                    operation="update_invoice",
                    update_type=kind,
                    invoice_id=inv.id,
                    changes=len(changes),
                    used_fallback=target.used_fallback,
                )

        if not changes:
            msg = f"Na faktuře {number} nebylo co změnit."
            if missing:
                msg = f"Na faktuře {number} jsem nenašel položky: {', '.join(missing)}."
            return ActionResult(msg, None, target.used_fallback)
        summary = ", ".join(name for name, _, _ in changes)
        msg = f"Faktura {number} byla aktualizována ({summary})."
        if missing:
            msg += f" Nenalezené položky: {', '.join(missing)}."
        return ActionResult(msg, refresh_current_page(), target.used_fallback)

    @staticmethod
    def _append_note(old: Optional[str], note: str) -> str:
        note = str(note).strip()
        return f"{old}\n\n{note}" if old else note

    @staticmethod
    def _update_customer(inv: Invoice, data: Dict[str, Any]) -> List[Tuple[str, Any, Any]]:
        cust = inv.customer
        if cust is None:
            raise ValueError("Faktura nemá přiřazeného zákazníka")
        out: List[Tuple[str, Any, Any]] = []
        for key, attr, label, max_len in (
            ("email", "email", "e-mail zákazníka", 256),
            ("phone", "phone", "telefon zákazníka", 64),
            ("address", "address", "adresa zákazníka", 512),
        ):
            val = _text(data.get(key), max_len)
            if val and val != getattr(cust, attr):
                out.append((label, getattr(cust, attr), val))
                setattr(cust, attr, val)
        return out

    @staticmethod
    def _update_payment_details(inv: Invoice, data: Dict[str, Any]) -> List[Tuple[str, Any, Any]]:
        out: List[Tuple[str, Any, Any]] = []
        account = _text(data.get("bankAccount"), 64)
        if account:
            if looks_like_iban(account):
                if not is_valid_iban(account):
                    raise ValueError(f"Neplatný IBAN: {account}")
                account = normalize_iban(account)
            out.append(("bankovní účet", inv.bank_account, account))
            inv.bank_account = account
        vs_raw = data.get("variableSymbol")
        if vs_raw not in (None, ""):
            vs = _DIGITS_RE.sub("", str(vs_raw))
            if not vs or len(vs) > 10:
                raise ValueError(f"Neplatný variabilní symbol: {vs_raw!r}")
            out.append(("variabilní symbol", inv.variable_symbol, vs))
            inv.variable_symbol = vs
        return out

    @staticmethod
    def _set_status(inv: Invoice, requested: Any) -> List[Tuple[str, Any, Any]]:
        new = validate_status_transition(inv.status, requested)
        if new is None:
            return []
        old = inv.status
        inv.status = new.value
        if new == InvoiceStatus.PAID and inv.paid_at is None:
            inv.paid_at = utc_now_naive()
            inv.paid_amount = inv.total
        elif new != InvoiceStatus.PAID:
            inv.paid_at = None
            inv.paid_amount = None
        return [("stav", old, new.value)]

    def update_prices(
        self,
        company_id: int,
        locator: InvoiceLocator | None,
        items: Sequence[Dict[str, Any]],
        *,
        user_id: str | None = None,
    ) -> ActionResult:
        with forensic_scope(company_id=company_id, phase="update_prices"):
            with unit_of_work(self.session_factory) as session:
                target = self._target(session, company_id, locator)
                inv = target.invoice
                old_total = inv.total
                applied, missing = self._apply_item_changes(inv, items, default_first=False)
                if applied:
                    q.append_history(
                        session,
                        inv.id,
                        "updated",
                        "Aktualizace cen: " + ", ".join(name for name, _, _ in applied),
                        old_value=old_total,
                        new_value=inv.total,
                        user_id=user_id,
                    )
                number, new_total = inv.invoice_number, inv.total
                log_event(log, "mutation.applied", "Invoice prices updated", operation="update_prices", invoice_id=inv.id, items=len(applied))
        if not applied:
            return ActionResult(
                f"Na faktuře {number} jsem nenašel položky: {', '.join(missing) or '?'}. Zkontrolujte prosím názvy položek.",
                None,
                target.used_fallback,
            )
        msg = f"Ceny ve faktuře {number} byly aktualizovány. Nový celkový součet: {format_czk(new_total)}."
        if missing:
            msg += f" Nenalezené položky: {', '.join(missing)}."
        return ActionResult(msg, refresh_current_page(), target.used_fallback)

    def add_note(self, company_id: int, locator: InvoiceLocator | None, note: str, *, user_id: str | None = None) -> ActionResult:
        note = (note or "").strip()
        if not note:
            raise ValueError("Poznámka je prázdná")
        with forensic_scope(company_id=company_id, phase="add_note"):
            with unit_of_work(self.session_factory) as session:
                target = self._target(session, company_id, locator)
                inv = target.invoice
                old = inv.notes
                inv.notes = self._append_note(old, note)
                q.append_history(session, inv.id, "updated", "Přidána poznámka", old_value=old, new_value=inv.notes, user_id=user_id)
                number = inv.invoice_number
                log_event(log, "mutation.applied", "Invoice note added", operation="add_note", invoice_id=inv.id)
        return ActionResult(f'Poznámka byla přidána k faktuře {number}: "{note}"', refresh_current_page(), target.used_fallback)

    def update_status(self, company_id: int, locator: InvoiceLocator | None, status: Any, *, user_id: str | None = None) -> ActionResult:
        requested = parse_status(status)
        with forensic_scope(company_id=company_id, phase="update_status"):
            with unit_of_work(self.session_factory) as session:
                target = self._target(session, company_id, locator)
                inv = target.invoice
                changes = self._set_status(inv, requested)
                for _, old, new in changes:
                    q.append_history(session, inv.id, "updated", "Změna stavu", old_value=old, new_value=new, user_id=user_id)
                number = inv.invoice_number
                log_event(log, "mutation.applied", "Invoice status updated", operation="update_status", invoice_id=inv.id, status=requested.value, changed=bool(changes))
        label = STATUS_LABELS_CS[requested]
        if not changes:
            return ActionResult(f'Faktura {number} už je ve stavu "{label}".', None, target.used_fallback)
        return ActionResult(f'Stav faktury {number} byl změněn na "{label}".', refresh_current_page(), target.used_fallback)

    # --- vytváření dokladů -------------------------------------------------

    def create_invoice_from_draft(self, company_id: int, draft: InvoiceDraft, *, user_id: str | None = None) -> ActionResult:
        if not draft.customer_name or not draft.items:
            return ActionResult(
                "Nepodařilo se extrahovat potřebné údaje. Zkuste zadat příkaz znovu s názvem zákazníka a produktem.",
                navigate("/invoices/new"),
            )
        with forensic_scope(company_id=company_id, phase="create_invoice"):
            with unit_of_work(self.session_factory) as session:
                customer = resolve_customer(session, company_id, draft.customer_name, ico=draft.customer_ico, registry=self.registry)
                company = q.get_company(session, company_id)
                number = q.next_document_number(session, Invoice, company_id)
                issue = today()
                inv = q.create_invoice(
                    session,
                    company_id,
                    invoice_number=number,
                    customer_id=customer.id,
                    issue_date=issue,
                    due_date=add_days(issue, self.due_days),
                    status=InvoiceStatus.DRAFT.value,
                    variable_symbol=_DIGITS_RE.sub("", number)[:10] or None,
                    bank_account=(company.iban or company.bank_account) if company else None,
                    notes=draft.notes,
                )
                priced = [it for it in draft.items if it.unit_price is not None]
                for it in draft.items:
                    price = it.unit_price
                    if price is None and draft.total_amount is not None and len(draft.items) == 1:
                        price = q2(draft.total_amount / it.quantity)
                    price = price if price is not None else Decimal("0")
                    q.add_invoice_item(
                        session,
                        inv,
                        description=it.description,
                        quantity=it.quantity,
                        unit=it.unit,
                        unit_price=q2(price),
                        vat_rate=self.default_vat_rate,
                        total=compute_item_total(it.quantity, price),
                    )
                if draft.total_amount is not None:
                    inv.subtotal = q2(draft.total_amount)
                    inv.vat_amount = vat_from_net(inv.subtotal, self.default_vat_rate)
                    inv.total = q2(inv.subtotal + inv.vat_amount)
                else:
                    recompute_invoice_totals(inv)
                q.append_history(session, inv.id, "created", "Faktura vytvořena AI asistentem", new_value=inv.total, user_id=user_id)
                invoice_id = inv.id
                log_event(
                    log,
                    "mutation.applied",
                    "Invoice created from draft",
                    operation="create_invoice",
                    invoice_id=invoice_id,
                    items=len(draft.items),
                    priced_items=len(priced),
                )

        msg = f'Faktura pro zákazníka "{draft.customer_name}" byla úspěšně vytvořena! Číslo faktury: {number}.'
        if len(draft.items) > 1:
            msg += f" Faktura obsahuje {len(draft.items)} položek."
        if draft.total_amount is None and not priced:
            msg += " Částka bude potřeba doplnit v editačním formuláři."
        msg += " Nyní můžete fakturu dokončit v editačním formuláři."
        return ActionResult(msg, navigate(f"/invoices/{invoice_id}/edit"))

    def create_expense(
        self,
        company_id: int,
        draft: ExpenseDraft,
        *,
        user_id: str | None = None,
        attachment_name: str | None = None,
        attachment_mime: str | None = None,
    ) -> ActionResult:
        rate = draft.vat_rate if draft.vat_rate is not None else self.default_vat_rate
        amount, vat, total = self._expense_amounts(draft.amount, draft.vat_amount, draft.total, rate)
        with forensic_scope(company_id=company_id, phase="create_expense"):
            with unit_of_work(self.session_factory) as session:
                supplier = None
                if draft.supplier_name or draft.supplier_ico:
                    supplier = resolve_customer(session, company_id, draft.supplier_name, ico=draft.supplier_ico, registry=self.registry)
                number = q.next_document_number(session, Expense, company_id, prefix="N")
                exp = q.create_expense(
                    session,
                    company_id,
                    supplier_id=supplier.id if supplier else None,
                    expense_number=number,
                    category=draft.category or "other",
                    description=_text(draft.description, 2000) or draft.supplier_name or "Náklad",
                    amount=amount,
                    vat_amount=vat,
                    total=total,
                    vat_rate=rate,
                    expense_date=draft.expense_date or today(),
                    status="draft",
                    receipt_number=draft.receipt_number,
                    attachment_name=attachment_name,
                    attachment_mime=attachment_mime,
                )
                supplier_name = supplier.name if supplier else "neuveden"
                log_event(log, "mutation.applied", "Expense created", operation="create_expense", expense_id=exp.id, created_by=user_id)
        return ActionResult(
            f'Náklad {number} od dodavatele "{supplier_name}" na {format_czk(total)} byl vytvořen jako koncept.',
            navigate("/expenses"),
        )

    @staticmethod
    def _expense_amounts(amount: Optional[Decimal], vat: Optional[Decimal], total: Optional[Decimal], rate: Decimal) -> Tuple[Decimal, Decimal, Decimal]:
        """Dopočítá základ/DPH/celkem z toho, co je na dokladu k dispozici."""
        if amount is None and total is None:
            raise ValueError("Náklad nemá částku")
        if total is None:
            vat = q2(vat) if vat is not None else vat_from_net(q2(amount), rate)
            return q2(amount), vat, q2(q2(amount) + vat)
        total = q2(total)
        if amount is None:
            if vat is not None:
                amount = total - q2(vat)
            else:
                amount = q2(total * 100 / (100 + rate)) if rate > 0 else total
        amount = q2(amount)
        return amount, q2(total - amount), total

    def list_expenses(
        self,
        company_id: int,
        *,
        status: str | None = None,
        category: str | None = None,
        date_from: Any = None,
        date_to: Any = None,
    ) -> ActionResult:
        d_from = parse_czech_date(date_from)
        d_to = parse_czech_date(date_to)
        with unit_of_work(self.session_factory) as session:
            rows = q.list_expenses(session, company_id, status=status, category=category, date_from=d_from, date_to=d_to)
            lines = []
            total = Decimal("0")
            for e in rows:
                total += Decimal(e.total)
                supplier = e.supplier.name if e.supplier else "bez dodavatele"
                lines.append(f"• {e.expense_number} | {supplier} | {e.description} | {format_czk(e.total)} ({e.expense_date:%d.%m.%Y})")
        if not lines:
            return ActionResult("Nebyly nalezeny žádné náklady odpovídající zadání.", navigate("/expenses"))
        head = f"Nalezeno {len(lines)} nákladů v celkové výši {format_czk(total)}:"
        return ActionResult("\n".join([head, *lines]), navigate("/expenses"))
