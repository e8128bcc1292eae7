from __future__ import annotations

from typing import Any, Dict, FrozenSet

from doklad.db.models import InvoiceStatus

# povolené přechody stavů faktury
ALLOWED_TRANSITIONS: Dict[InvoiceStatus, FrozenSet[InvoiceStatus]] = {
    InvoiceStatus.DRAFT: frozenset({InvoiceStatus.SENT, InvoiceStatus.PAID, InvoiceStatus.OVERDUE}),
    InvoiceStatus.SENT: frozenset({InvoiceStatus.PAID, InvoiceStatus.OVERDUE, InvoiceStatus.DRAFT}),
    InvoiceStatus.OVERDUE: frozenset({InvoiceStatus.PAID, InvoiceStatus.SENT}),
    InvoiceStatus.PAID: frozenset({InvoiceStatus.SENT}),
}

STATUS_LABELS_CS = {
    InvoiceStatus.DRAFT: "koncept",
    InvoiceStatus.SENT: "odeslaná",
    InvoiceStatus.PAID: "zaplacená",
    InvoiceStatus.OVERDUE: "po splatnosti",
}


class InvalidStatusTransition(ValueError):
    def __init__(self, current: Any, requested: Any, reason: str = "transition"):
        self.current = current
        self.requested = requested
        self.reason = reason
        super().__init__(f"Nepovolená změna stavu faktury: {current!r} -> {requested!r} ({reason})")


def parse_status(value: Any) -> InvoiceStatus:
    if isinstance(value, InvoiceStatus):
        return value
    raw = str(value or "").strip().lower()
    try:
        return InvoiceStatus(raw)
    except ValueError:
        raise InvalidStatusTransition(None, value, "unknown_status") from None


def validate_status_transition(current: Any, requested: Any) -> InvoiceStatus | None:
    """
    Ověří přechod stavu a vrátí cílový stav. Stejný stav -> None (no-op).
    Neznámý cílový stav nebo nepovolený přechod vyhodí InvalidStatusTransition.
    """
    target = parse_status(requested)
    try:
        cur = parse_status(current)
    except InvalidStatusTransition:
        # neznámý uložený stav (legacy data) lze přepsat jen na koncept
        if target == InvoiceStatus.DRAFT:
            return target
        raise InvalidStatusTransition(current, requested, "unknown_current_status") from None
    if cur == target:
        return None
    if target not in ALLOWED_TRANSITIONS[cur]:
        raise InvalidStatusTransition(cur.value, target.value)
    return target
