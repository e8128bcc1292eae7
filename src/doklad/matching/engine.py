from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Iterable, List, Optional, Protocol, Sequence

from doklad.db.models import MatchType
from doklad.extract.payments import Payment
from doklad.utils.logging_setup import log_event

log = logging.getLogger(__name__)

DEFAULT_TOLERANCE = Decimal("0.01")
DEFAULT_MIN_CONFIDENCE = 70
AMOUNT_ONLY_CONFIDENCE = 70
AMOUNT_ONLY_NOTE = "Matched by amount only"


@dataclass(frozen=True)
class InvoiceCandidate:
    """Nezaplacená faktura tak, jak ji vidí párování (bez ORM)."""

    id: int
    total: Decimal
    variable_symbol: Optional[str] = None
    customer_name: Optional[str] = None
    due_date: Optional[dt.date] = None
    currency: str = "CZK"

    @classmethod
    def from_invoice(cls, inv: Any) -> "InvoiceCandidate":
        customer = getattr(inv, "customer", None)
        return cls(
            id=int(inv.id),
            total=Decimal(inv.total),
            variable_symbol=inv.variable_symbol or None,
            customer_name=getattr(customer, "name", None),
            due_date=inv.due_date,
            currency=(getattr(inv, "currency", None) or "CZK").upper(),
        )


def candidates_from_invoices(invoices: Iterable[Any]) -> List[InvoiceCandidate]:
    return [inv if isinstance(inv, InvoiceCandidate) else InvoiceCandidate.from_invoice(inv) for inv in invoices]


@dataclass(frozen=True)
class MatchResult:
    invoice_id: int
    match_type: MatchType
    confidence: int
    matched_amount: Decimal
    notes: Optional[str] = None

    def __post_init__(self) -> None:
        if not 0 <= int(self.confidence) <= 100:
            raise ValueError(f"Jistota mimo rozsah 0-100: {self.confidence}")
        if self.match_type == MatchType.AUTOMATIC and self.confidence != 100:
            raise ValueError("Automatické párování musí mít jistotu 100")
        if self.match_type == MatchType.PARTIAL and self.confidence >= 100:
            raise ValueError("Částečné párování musí mít jistotu pod 100")


@dataclass(frozen=True)
class MatchSuggestion:
    """Návrh sémantického párovače; invoice_id None = nic nenašel."""

    invoice_id: Optional[int]
    confidence: int = 0
    match_type: str = MatchType.PARTIAL.value
    matched_amount: Optional[Decimal] = None
    notes: Optional[str] = None


class SemanticMatcher(Protocol):
    def suggest(self, payment: Payment, candidates: Sequence[InvoiceCandidate]) -> Optional[MatchSuggestion]:
        ...


def _due_sort_key(c: InvoiceCandidate):
    # splatnost sestupně, faktury bez splatnosti na konec
    return (c.due_date is None, -(c.due_date.toordinal()) if c.due_date else 0)


class MatchingEngine:
    """
    Kaskáda párování platby na nezaplacenou fakturu, první úspěch vyhrává:

    1. shoda VS, měny a částky (tolerance včetně) -> automatic, jistota 100
    2. návrh sémantického párovače s jistotou >= min_confidence
    3. shoda jen částky (ve stejné měně) -> partial, jistota 70
    4. jinak None (transakce zůstává k ručnímu spárování)

    V každém kroku se bere první vyhovující faktura v pořadí podle splatnosti sestupně.
    """

    def __init__(
        self,
        semantic_matcher: SemanticMatcher | None = None,
        *,
        tolerance: Decimal = DEFAULT_TOLERANCE,
        min_confidence: int = DEFAULT_MIN_CONFIDENCE,
    ):
        self.semantic_matcher = semantic_matcher
        self.tolerance = Decimal(tolerance)
        self.min_confidence = int(min_confidence)

    def _amount_ok(self, a: Decimal, b: Decimal) -> bool:
        return abs(Decimal(a) - Decimal(b)) <= self.tolerance

    @staticmethod
    def _same_currency(payment: Payment, c: InvoiceCandidate) -> bool:
        return (payment.currency or "CZK").upper() == (c.currency or "CZK").upper()

    def match(self, payment: Payment, unpaid_invoices: Iterable[Any]) -> Optional[MatchResult]:
        pool = sorted(candidates_from_invoices(unpaid_invoices), key=_due_sort_key)
        if not pool:
            return None

        result = (
            self._exact_symbol(payment, pool)
            or self._semantic(payment, pool)
            or self._amount_only(payment, pool)
        )
        log_event(
            log,
            "match.result",
            "Payment match decision",
            matched=result is not None,
            invoice_id=result.invoice_id if result else None,
            match_type=result.match_type.value if result else None,
            confidence=result.confidence if result else None,
            candidates=len(pool),
        )
        return result

    def _exact_symbol(self, payment: Payment, pool: Sequence[InvoiceCandidate]) -> Optional[MatchResult]:
        vs = (payment.variable_symbol or "").strip()
        if not vs:
            return None
        for c in pool:
            if (
                (c.variable_symbol or "").strip() == vs
                and self._same_currency(payment, c)
                and self._amount_ok(c.total, payment.amount)
            ):
                return MatchResult(c.id, MatchType.AUTOMATIC, 100, payment.amount)
        return None

    def _semantic(self, payment: Payment, pool: Sequence[InvoiceCandidate]) -> Optional[MatchResult]:
        if self.semantic_matcher is None:
            return None
        if not payment.variable_symbol and not payment.counterparty_name:
            return None
        try:
            s = self.semantic_matcher.suggest(payment, pool)
        except Exception as exc:
            log_event(log, "match.semantic_error", "Semantic matcher failed", error_type=type(exc).__name__, error=str(exc)[:300])
            return None
        if s is None or s.invoice_id is None:
            return None
        ids = {c.id for c in pool}
        if s.invoice_id not in ids:
            log_event(log, "match.semantic_rejected", "Suggested invoice not among candidates", invoice_id=s.invoice_id)
            return None
        confidence = max(0, min(100, int(s.confidence)))
        if confidence < self.min_confidence:
            log_event(log, "match.semantic_rejected", "Suggestion below threshold", invoice_id=s.invoice_id, confidence=confidence)
            return None

        match_type = MatchType.AUTOMATIC if str(s.match_type).lower() == MatchType.AUTOMATIC.value else MatchType.PARTIAL
        if match_type == MatchType.AUTOMATIC and confidence < 100:
            match_type = MatchType.PARTIAL
        if match_type == MatchType.PARTIAL and confidence >= 100:
            confidence = 99
        amount = s.matched_amount if s.matched_amount is not None else payment.amount
        return MatchResult(s.invoice_id, match_type, confidence, Decimal(amount), s.notes)

    def _amount_only(self, payment: Payment, pool: Sequence[InvoiceCandidate]) -> Optional[MatchResult]:
        for c in pool:
            if self._same_currency(payment, c) and self._amount_ok(c.total, payment.amount):
                return MatchResult(c.id, MatchType.PARTIAL, AMOUNT_ONLY_CONFIDENCE, payment.amount, AMOUNT_ONLY_NOTE)
        return None
