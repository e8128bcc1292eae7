from __future__ import annotations

import logging
from typing import Optional, Sequence

from doklad.extract.payments import Payment
from doklad.extract.prompts import MATCH_SYSTEM, payment_match_prompt
from doklad.integrations.llm import LLMClient
from doklad.utils.czech_format import parse_czech_amount

from .engine import InvoiceCandidate, MatchSuggestion

log = logging.getLogger(__name__)


class LLMSemanticMatcher:
    """SemanticMatcher nad LLM: pošle platbu a kandidáty, vrátí jediný návrh."""

    def __init__(self, llm: LLMClient, *, timeout: float | None = None):
        self.llm = llm
        self.timeout = timeout

    def suggest(self, payment: Payment, candidates: Sequence[InvoiceCandidate]) -> Optional[MatchSuggestion]:
        if not candidates or not self.llm.configured:
            return None
        obj = self.llm.complete_json(MATCH_SYSTEM, payment_match_prompt(payment, candidates), timeout=self.timeout)
        raw_id = obj.get("invoiceId")
        try:
            invoice_id = int(str(raw_id).strip()) if raw_id not in (None, "", "null") else None
        except ValueError:
            log.warning("LLM vrátil nečíselné invoiceId: %r", raw_id)
            invoice_id = None
        try:
            confidence = int(float(obj.get("matchConfidence") or 0))
        except (TypeError, ValueError):
            confidence = 0
        notes = obj.get("notes")
        return MatchSuggestion(
            invoice_id=invoice_id,
            confidence=confidence,
            match_type=str(obj.get("matchType") or "partial").strip().lower(),
            matched_amount=parse_czech_amount(obj.get("matchedAmount")),
            notes=str(notes)[:1000] if notes else None,
        )
