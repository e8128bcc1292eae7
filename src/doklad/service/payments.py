from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List

from sqlalchemy.exc import IntegrityError

from doklad.db import queries as q
from doklad.db.session import unit_of_work
from doklad.extract.payments import Payment, extract_payments
from doklad.integrations.llm import LLMClient
from doklad.matching.engine import MatchingEngine, candidates_from_invoices
from doklad.utils.czech_format import q2
from doklad.utils.forensic_context import forensic_scope, new_correlation_id
from doklad.utils.logging_setup import log_event

from .mutations import InvoiceMutationService

log = logging.getLogger(__name__)

BANK_ACCOUNT_NOT_FOUND = "Bank account not found"


@dataclass
class ProcessResult:
    processed: int = 0
    matched: int = 0
    duplicates: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "matched": self.matched,
            "duplicates": self.duplicates,
            "errors": list(self.errors),
        }


def _fingerprint(payment: Payment) -> str:
    if payment.bank_reference:
        return "ref:" + payment.bank_reference
    if payment.source_text:
        return "line:" + payment.source_text.lower()
    return "text:" + " ".join(
        " ".join((v or "").split()).lower() for v in (payment.counterparty_name, payment.description)
    )


def compute_dedup_key(company_id: int, bank_account_id: int, payment: Payment, occurrence: int = 0) -> str:
    """
    Otisk platby pro detekci opakovaně zpracovaného výpisu.

    Bankovní reference (nebo řádek výpisu) odliší různé platby se stejnou částkou a dnem;
    `occurrence` je pořadí shodné položky v rámci jednoho výpisu. Čas extrakce do klíče
    nevstupuje, u platby bez data se datum vynechá.
    """
    parts = [
        str(company_id),
        str(bank_account_id),
        payment.transaction_date.date().isoformat() if payment.date_known else "",
        str(q2(payment.amount)),
        payment.currency or "",
        payment.variable_symbol or "",
        (payment.counterparty_account or "").replace(" ", ""),
        _fingerprint(payment),
        str(occurrence),
    ]
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()


def dedup_keys(company_id: int, bank_account_id: int, payments: List[Payment]) -> List[str]:
    """Klíče pro celý výpis; opakovaná shodná položka dostane další pořadové číslo."""
    seen: Dict[str, int] = {}
    keys: List[str] = []
    for p in payments:
        base = compute_dedup_key(company_id, bank_account_id, p)
        n = seen.get(base, 0)
        seen[base] = n + 1
        keys.append(base if n == 0 else compute_dedup_key(company_id, bank_account_id, p, n))
    return keys


class PaymentProcessingService:
    """
    Zpracování bankovního výpisu z e-mailu: extrakce plateb, deduplikace,
    párování a zápis. Každá platba je samostatná transakce; chyba jedné
    platby nevrací zpět ostatní.
    """

    def __init__(
        self,
        session_factory,
        engine: MatchingEngine,
        mutations: InvoiceMutationService,
        *,
        llm: LLMClient | None = None,
        llm_timeout: float | None = None,
    ):
        self.session_factory = session_factory
        self.engine = engine
        self.mutations = mutations
        self.llm = llm
        self.llm_timeout = llm_timeout

    def process_email(self, email_content: str, bank_account_id: int, company_id: int) -> ProcessResult:
        result = ProcessResult()
        with forensic_scope(
            correlation_id=new_correlation_id(),
            company_id=company_id,
            bank_account_id=bank_account_id,
            phase="process_email",
        ):
            with unit_of_work(self.session_factory) as session:
                account = q.get_bank_account(session, int(bank_account_id), int(company_id))
            if account is None:
                result.errors.append(BANK_ACCOUNT_NOT_FOUND)
                return result

            payments = extract_payments(email_content, self.llm, timeout=self.llm_timeout)
            keys = dedup_keys(int(company_id), int(bank_account_id), payments)
            for payment, key in zip(payments, keys):
                self._process_one(payment, key, int(bank_account_id), int(company_id), result)

            with unit_of_work(self.session_factory) as session:
                q.touch_last_processed(session, int(bank_account_id))
            log_event(
                log,
                "payment.batch",
                "Bank statement processed",
                extracted=len(payments),
                **result.to_dict(),
            )
        return result

    def _process_one(self, payment: Payment, key: str, bank_account_id: int, company_id: int, result: ProcessResult) -> None:
        matched = False
        try:
            with unit_of_work(self.session_factory) as session:
                if q.find_transaction_by_dedup(session, company_id, key) is not None:
                    result.duplicates += 1
                    log_event(log, "payment.duplicate", "Payment already processed", dedup_key=key[:16])
                    return
                candidates = candidates_from_invoices(q.list_unpaid_invoices(session, company_id))
                decision = self.engine.match(payment, candidates)
                tx = q.create_bank_transaction(
                    session,
                    company_id=company_id,
                    bank_account_id=bank_account_id,
                    dedup_key=key,
                    amount=payment.amount,
                    currency=payment.currency,
                    transaction_date=payment.transaction_date,
                    description=payment.description,
                    variable_symbol=payment.variable_symbol,
                    constant_symbol=payment.constant_symbol,
                    specific_symbol=payment.specific_symbol,
                    counterparty_account=payment.counterparty_account,
                    counterparty_name=payment.counterparty_name,
                    bank_reference=payment.bank_reference,
                )
                if decision is not None:
                    self.mutations.record_match(session, tx, decision)
                    matched = True
        except IntegrityError:
            # souběžné zpracování stejného výpisu; unikátní klíč zabránil duplicitě
            result.duplicates += 1
            log_event(log, "payment.duplicate", "Payment already processed (constraint)", dedup_key=key[:16])
            return
        except Exception as exc:
            log.exception("Zpracování platby selhalo")
            result.errors.append(f"Platba {payment.amount} {payment.currency} (VS {payment.variable_symbol or '-'}): {exc}")
            return

        result.processed += 1
        if matched:
            result.matched += 1
        log_event(
            log,
            "payment.processed",
            "Payment stored",
            amount=str(payment.amount),
            matched=matched,
            invoice_id=decision.invoice_id if decision else None,
        )

    def matching_stats(self, company_id: int) -> Dict[str, Any]:
        with unit_of_work(self.session_factory) as session:
            stats = q.matching_stats(session, int(company_id))
        last = stats.get("last_processed")
        stats["last_processed"] = last.isoformat() if last else None
        return stats

    def unmatched_payments(self, company_id: int, *, limit: int = 100) -> List[Dict[str, Any]]:
        with unit_of_work(self.session_factory) as session:
            rows = q.unmatched_transactions(session, int(company_id), limit=limit)
            return [
                {
                    "id": tx.id,
                    "amount": str(tx.amount),
                    "currency": tx.currency,
                    "transactionDate": tx.transaction_date.isoformat(),
                    "variableSymbol": tx.variable_symbol,
                    "counterpartyName": tx.counterparty_name,
                    "counterpartyAccount": tx.counterparty_account,
                    "description": tx.description,
                }
                for tx in rows
            ]
