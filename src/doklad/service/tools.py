"""Nabídka funkcí (OpenAI function calling) pro AI asistenta."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

_STR = {"type": "string"}
_NUM = {"type": "number"}

_ITEM_SCHEMA = {
    "type": "object",
    "properties": {
        "description": {"type": "string", "description": "Popis produktu/služby"},
        "quantity": {"type": "string", "description": "Množství jako text (např. '1', '2.5')"},
        "unit": {"type": "string", "description": "Jednotka (ks, kg, hod, m, ...)"},
        "unitPrice": {"type": "number", "description": "Cena za jednotku bez DPH (volitelné)"},
    },
    "required": ["description", "quantity", "unit"],
}


def _fn(name: str, description: str, properties: Dict[str, Any], required: Optional[List[str]] = None) -> Dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": {"type": "object", "properties": properties, "required": list(required or [])},
        },
    }


TOOLS: List[Dict[str, Any]] = [
    _fn(
        "create_invoice",
        "Vytvoření nové faktury pro zákazníka s položkami",
        {
            "customerName": {"type": "string", "description": "Název zákazníka nebo firmy"},
            "customerIco": {"type": "string", "description": "IČO zákazníka (8 číslic), pokud je uvedeno"},
            "items": {"type": "array", "items": _ITEM_SCHEMA},
            "totalAmount": {"type": "number", "description": "Celková částka bez DPH (volitelné)"},
            "notes": {"type": "string", "description": "Poznámka k faktuře (volitelné)"},
        },
        ["customerName", "items"],
    ),
    _fn(
        "add_item_to_invoice",
        "Přidání nové položky k existující faktuře",
        {
            "description": {"type": "string", "description": "Popis produktu/služby"},
            "quantity": {"type": "string", "description": "Množství (např. '1', '2.5')"},
            "unit": {"type": "string", "description": "Jednotka (ks, kg, hod, m, ...)"},
            "unitPrice": {"type": "number", "description": "Cena za jednotku bez DPH"},
            "vatRate": {"type": "number", "description": "Sazba DPH v procentech (výchozí 21)"},
            "invoiceNumber": {"type": "string", "description": "Číslo faktury (volitelné, jinak faktura z aktuální stránky)"},
        },
        ["description", "quantity", "unit", "unitPrice"],
    ),
    _fn(
        "update_invoice_universal",
        "Univerzální úprava faktury: splatnost, poznámky, zákazník, platební údaje, množství, ceny, stav",
        {
            "updateType": {
                "type": "string",
                "enum": ["splatnost", "ceny", "poznamky", "zakaznik", "platba", "mnozstvi", "status", "obecne"],
                "description": "Typ aktualizace",
            },
            "dueDate": {"type": "string", "description": "Nová splatnost (YYYY-MM-DD)"},
            "notes": {"type": "string", "description": "Poznámka k faktuře"},
            "customer": {"type": "object", "properties": {"email": _STR, "phone": _STR, "address": _STR}},
            "paymentDetails": {"type": "object", "properties": {"bankAccount": _STR, "variableSymbol": _STR}},
            "items": {
                "type": "array",
                "items": {"type": "object", "properties": {"description": _STR, "quantity": _STR, "unitPrice": _NUM}},
            },
            "status": {"type": "string", "enum": ["draft", "sent", "paid", "overdue"]},
            "invoiceNumber": {"type": "string", "description": "Číslo faktury (volitelné)"},
        },
        ["updateType"],
    ),
    _fn(
        "update_invoice_prices",
        "Změna cen položek existující faktury",
        {
            "items": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "productName": {"type": "string", "description": "Název položky pro dohledání"},
                        "unitPrice": {"type": "number", "description": "Nová cena za jednotku"},
                        "unit": {"type": "string", "description": "Jednotka (ks, kg, ...)"},
                    },
                    "required": ["productName", "unitPrice"],
                },
            },
            "invoiceNumber": {"type": "string", "description": "Číslo faktury (volitelné)"},
        },
        ["items"],
    ),
    _fn(
        "add_note_to_invoice",
        "Přidání poznámky k existující faktuře (nemění ceny)",
        {
            "note": {"type": "string", "description": "Text poznámky"},
            "invoiceNumber": {"type": "string", "description": "Číslo faktury (volitelné, jinak z aktuální stránky)"},
        },
        ["note"],
    ),
    _fn(
        "update_invoice_status",
        "Změna stavu faktury",
        {
            "invoiceNumber": {"type": "string", "description": "Číslo faktury"},
            "status": {"type": "string", "enum": ["draft", "sent", "paid", "overdue"], "description": "Nový stav"},
        },
        ["invoiceNumber", "status"],
    ),
    _fn(
        "create_expense",
        "Vytvoření nového nákladu: dodavatel, kategorie, částka, DPH",
        {
            "supplierName": {"type": "string", "description": "Dodavatel (např. 'ČEZ a.s.', 'Tesco')"},
            "supplierIco": {"type": "string", "description": "IČO dodavatele (volitelné)"},
            "category": {"type": "string", "description": "Kategorie (office, travel, materials, services, utilities, fuel, food, other)"},
            "description": {"type": "string", "description": "Popis nákladu"},
            "amount": {"type": "number", "description": "Částka bez DPH"},
            "total": {"type": "number", "description": "Celková částka včetně DPH"},
            "vatRate": {"type": "number", "description": "Sazba DPH (21, 12, 0)"},
            "expenseDate": {"type": "string", "description": "Datum nákladu (YYYY-MM-DD)"},
            "receiptNumber": {"type": "string", "description": "Číslo účtenky/faktury"},
        },
        ["supplierName", "category", "description", "total"],
    ),
    _fn(
        "get_expenses",
        "Zobrazení seznamu nákladů s filtry",
        {
            "status": {"type": "string", "description": "Stav nákladu (draft, approved, paid, rejected)"},
            "category": {"type": "string", "description": "Kategorie nákladu"},
            "dateFrom": {"type": "string", "description": "Od data (YYYY-MM-DD)"},
            "dateTo": {"type": "string", "description": "Do data (YYYY-MM-DD)"},
        },
    ),
    _fn(
        "navigate_to_page",
        "Přechod na stránku aplikace, volitelně s filtrem",
        {
            "path": {"type": "string", "description": "Cesta (např. /invoices, /customers, /dashboard)"},
            "filters": {
                "type": "object",
                "properties": {
                    "status": {"type": "string", "description": "Filtr podle stavu (sent, paid, overdue, draft)"},
                    "search": {"type": "string", "description": "Hledaný text"},
                },
            },
        },
        ["path"],
    ),
    _fn(
        "provide_help",
        "Obecná nápověda nebo informace bez provedení akce",
        {"response": {"type": "string", "description": "Odpověď pro uživatele"}},
        ["response"],
    ),
]

TOOL_NAMES = tuple(t["function"]["name"] for t in TOOLS)
REQUIRED_ARGS: Dict[str, List[str]] = {t["function"]["name"]: t["function"]["parameters"]["required"] for t in TOOLS}

# české názvy argumentů pro doplňující dotaz
ARG_LABELS_CS = {
    "customerName": "název zákazníka",
    "items": "položky faktury",
    "description": "popis",
    "quantity": "množství",
    "unit": "jednotku",
    "unitPrice": "cenu za jednotku",
    "updateType": "typ úpravy",
    "note": "text poznámky",
    "invoiceNumber": "číslo faktury",
    "status": "nový stav",
    "supplierName": "dodavatele",
    "category": "kategorii",
    "total": "celkovou částku",
    "path": "cílovou stránku",
    "response": "odpověď",
}


def missing_arguments(tool_name: str, args: Dict[str, Any]) -> List[str]:
    """Povinné argumenty, které chybí nebo jsou prázdné."""
    out = []
    for key in REQUIRED_ARGS.get(tool_name, []):
        val = (args or {}).get(key)
        if val is None or (isinstance(val, (str, list, dict)) and not val):
            out.append(key)
        elif isinstance(val, str) and not val.strip():
            out.append(key)
    return out
