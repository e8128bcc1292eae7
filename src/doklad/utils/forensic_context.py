from __future__ import annotations

import contextvars
import uuid
from contextlib import contextmanager
from typing import Any, Dict, Iterator

# Context proměnné – udržují se per-thread/async task.
correlation_id_var = contextvars.ContextVar("correlation_id", default=None)
company_id_var = contextvars.ContextVar("company_id", default=None)
bank_account_id_var = contextvars.ContextVar("bank_account_id", default=None)
invoice_id_var = contextvars.ContextVar("invoice_id", default=None)
phase_var = contextvars.ContextVar("phase", default=None)
attempt_var = contextvars.ContextVar("attempt", default=None)
llm_request_id_client_var = contextvars.ContextVar("llm_request_id_client", default=None)

_VARS: Dict[str, contextvars.ContextVar] = {
    "correlation_id": correlation_id_var,
    "company_id": company_id_var,
    "bank_account_id": bank_account_id_var,
    "invoice_id": invoice_id_var,
    "phase": phase_var,
    "attempt": attempt_var,
    "llm_request_id_client": llm_request_id_client_var,
}


def new_correlation_id() -> str:
    return str(uuid.uuid4())


def get_forensic_fields() -> Dict[str, Any]:
    """Vrátí současný stav všech forenzních contextvars jako dict."""
    return {name: var.get() for name, var in _VARS.items()}


@contextmanager
def forensic_scope(**fields: Any) -> Iterator[None]:
    """
    Dočasně nastaví vybrané contextvars (neznámé klíče ignoruje).
    Po opuštění scope se původní hodnoty obnoví v opačném pořadí.
    """
    tokens = []
    try:
        for name, value in fields.items():
            var = _VARS.get(name)
            if var is None:
                continue
            tokens.append((var, var.set(value)))
        yield
    finally:
        for var, tok in reversed(tokens):
            try:
                var.reset(tok)
            except ValueError:
                # token z jiného contextu; reset nesmí shodit volající kód
                pass
