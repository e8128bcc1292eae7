from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from email.utils import getaddresses
from typing import Any, Dict, List, Optional, Sequence, Union

from doklad.db import queries as q
from doklad.db.session import unit_of_work
from doklad.utils.logging_setup import log_event
from doklad.utils.time import utc_now_naive

from .payments import BANK_ACCOUNT_NOT_FOUND, PaymentProcessingService

log = logging.getLogger(__name__)

ATTACHMENTS_MARKER = "--- ATTACHMENTS ---"


@dataclass
class EmailAttachment:
    filename: str
    content: str
    content_type: str = "text/plain"

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> "EmailAttachment":
        return cls(
            filename=str(obj.get("filename") or "attachment"),
            content=str(obj.get("content") or ""),
            content_type=str(obj.get("contentType") or obj.get("content_type") or "text/plain"),
        )


def build_email_content(from_address: str | None, subject: str | None, text: str | None, attachments: Sequence[EmailAttachment] = ()) -> str:
    """Složí text pro extrakci: hlavička From/Subject, tělo a textové/CSV přílohy."""
    content = text or ""
    if subject:
        content = f"Subject: {subject}\n\n{content}"
    if from_address:
        content = f"From: {from_address}\n{content}"
    textual = [a for a in attachments or [] if "text" in a.content_type.lower() or "csv" in a.content_type.lower()]
    if textual:
        content += f"\n\n{ATTACHMENTS_MARKER}\n"
        for a in textual:
            content += f"\n{a.filename}:\n{a.content}\n"
    return content


def recipient_addresses(to: Union[str, Sequence[str], None]) -> List[str]:
    """Holé adresy příjemců z hlavičky To (display name, více adres oddělených čárkou)."""
    raw = [to] if isinstance(to, str) else [str(v) for v in to or []]
    out: List[str] = []
    for _name, addr in getaddresses(raw):
        addr = addr.strip().lower()
        if addr and addr not in out:
            out.append(addr)
    return out


class BankEmailIntake:
    """Příjem e-mailu s výpisem: podle adresy příjemce najde bankovní účet a spustí zpracování."""

    def __init__(self, session_factory, payments: PaymentProcessingService, archive_dir: Optional[Path] = None):
        self.session_factory = session_factory
        self.payments = payments
        self.archive_dir = Path(archive_dir) if archive_dir else None

    def _archive(self, bank_account_id: int, data: Dict[str, Any]) -> Optional[Path]:
        if self.archive_dir is None:
            return None
        try:
            self.archive_dir.mkdir(parents=True, exist_ok=True)
            now = utc_now_naive()
            path = self.archive_dir / f"payment-email-{bank_account_id}-{now:%Y%m%dT%H%M%S%f}.json"
            payload = dict(data, processedAt=now.isoformat(), bankAccountId=bank_account_id)
            path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
            return path
        except OSError as exc:
            # archiv je jen pro audit, zpracování pokračuje
            log.warning("Uložení e-mailu do archivu selhalo: %s", exc)
            return None

    def handle_bank_email(
        self,
        to_address: Union[str, Sequence[str]],
        from_address: str | None,
        subject: str | None,
        text: str | None,
        attachments: Sequence[Any] = (),
    ) -> Dict[str, Any]:
        atts: List[EmailAttachment] = [a if isinstance(a, EmailAttachment) else EmailAttachment.from_dict(a) for a in attachments or []]
        recipients = recipient_addresses(to_address)
        account_ids = None
        with unit_of_work(self.session_factory) as session:
            for addr in recipients:
                account = q.find_bank_account_by_email(session, addr)
                if account is not None:
                    account_ids = (account.id, account.company_id)
                    break
        if account_ids is None:
            log_event(log, "email.unknown_recipient", "No bank account for payment e-mail", to_address=recipients)
            return {"processed": 0, "matched": 0, "errors": [BANK_ACCOUNT_NOT_FOUND]}

        bank_account_id, company_id = account_ids
        self._archive(
            bank_account_id,
            {
                "from": from_address,
                "to": recipients,
                "subject": subject,
                "body": text,
                "attachments": [{"filename": a.filename, "contentType": a.content_type, "content": a.content} for a in atts],
            },
        )
        content = build_email_content(from_address, subject, text, atts)
        result = self.payments.process_email(content, bank_account_id, company_id)
        log_event(log, "email.processed", "Payment e-mail processed", processed=result.processed, matched=result.matched)
        return result.to_dict()
