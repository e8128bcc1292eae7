"""České prompty pro extrakci a párování."""

from __future__ import annotations

PAYMENT_EXTRACTION_SYSTEM = (
    "Jsi extrakční systém pro české bankovní výpisy a avíza o platbách z e-mailů. "
    "Najdi v textu všechny PŘÍCHOZÍ platby a vrať POUZE validní JSON ve tvaru:\n"
    "{\n"
    '  "payments": [\n'
    "    {\n"
    '      "amount": číslo (kladná částka),\n'
    '      "currency": "CZK",\n'
    '      "variableSymbol": "variabilní symbol nebo null",\n'
    '      "constantSymbol": "konstantní symbol nebo null",\n'
    '      "specificSymbol": "specifický symbol nebo null",\n'
    '      "counterpartyAccount": "číslo účtu protistrany nebo null",\n'
    '      "counterpartyName": "jméno plátce nebo null",\n'
    '      "description": "zpráva pro příjemce nebo popis",\n'
    '      "transactionDate": "YYYY-MM-DD",\n'
    '      "bankReference": "identifikátor transakce v bance nebo null"\n'
    "    }\n"
    "  ]\n"
    "}\n"
    "Odchozí platby a poplatky ignoruj. Nevymýšlej si hodnoty; když si nejsi jistý, dej null. "
    "Pokud v textu žádná platba není, vrať {\"payments\": []}."
)

INVOICE_EXTRACTION_SYSTEM = (
    "Analyzuj text a extrahuj informace pro fakturu. Vrať POUZE JSON:\n"
    "{\n"
    '  "customerName": "název zákazníka/firmy nebo null",\n'
    '  "customerIco": "IČO zákazníka (8 číslic) nebo null",\n'
    '  "items": [\n'
    '    {"description": "název produktu/služby", "quantity": "množství", '
    '"unit": "jednotka (ks, kg, hod, m, l)", "unitPrice": "cena za jednotku bez DPH nebo null"}\n'
    "  ],\n"
    '  "totalAmount": "celková částka bez DPH nebo null",\n'
    '  "notes": "poznámky nebo null"\n'
    "}\n"
    "Pravidla:\n"
    '- "25k" znamená 25000, "5k" znamená 5000\n'
    "- zachovej českou diakritiku\n"
    '- "za služby", "za práci", "za konzultace" = jedna položka služby s jednotkou "ks"\n'
    "- vždy vytvoř alespoň jednu položku, i když je popis obecný\n"
    "- pokud text fakturu nepopisuje, vrať všechny hodnoty jako null a prázdné items"
)

RECEIPT_EXTRACTION_SYSTEM = (
    "Jsi extrakční systém pro české účtenky a přijaté faktury (obrázek). Vrať POUZE JSON:\n"
    "{\n"
    '  "supplierName": "název prodejce nebo null",\n'
    '  "supplierIco": "IČO prodejce nebo null",\n'
    '  "description": "stručný popis nákupu",\n'
    '  "category": "office|travel|materials|services|utilities|fuel|food|other",\n'
    '  "amount": "částka bez DPH nebo null",\n'
    '  "vatAmount": "DPH nebo null",\n'
    '  "total": "celková částka s DPH",\n'
    '  "vatRate": "sazba DPH v procentech (21, 12, 0) nebo null",\n'
    '  "expenseDate": "YYYY-MM-DD nebo null",\n'
    '  "receiptNumber": "číslo dokladu nebo null"\n'
    "}\n"
    "Nevymýšlej si hodnoty; když údaj na dokladu není, dej null."
)

MATCH_SYSTEM = (
    "Jsi expert na párování bankovních plateb s fakturami v českém účetnictví. "
    "Vyber nejvýše JEDNU fakturu, ke které platba nejpravděpodobněji patří, a vrať POUZE JSON:\n"
    "{\n"
    '  "invoiceId": číslo ID faktury nebo null,\n'
    '  "matchConfidence": 0-100,\n'
    '  "matchType": "automatic" nebo "partial",\n'
    '  "matchedAmount": částka,\n'
    '  "notes": "krátké zdůvodnění"\n'
    "}\n"
    "Zohledni variabilní symbol, částku, jméno plátce a splatnost. "
    "Pokud si nejsi jistý, vrať invoiceId null."
)


def payment_match_prompt(payment, candidates) -> str:
    lines = [
        "Platba:",
        f"- Částka: {payment.amount} {payment.currency}",
        f"- VS: {payment.variable_symbol or 'neuvedeno'}",
        f"- Plátce: {payment.counterparty_name or 'neuvedeno'}",
        f"- Účet plátce: {payment.counterparty_account or 'neuvedeno'}",
        f"- Popis: {payment.description or ''}",
        f"- Datum: {payment.transaction_date:%Y-%m-%d}",
        "",
        "Nezaplacené faktury:",
    ]
    for c in candidates:
        due = c.due_date.isoformat() if c.due_date else "neuvedeno"
        lines.append(
            f"- ID: {c.id}, Částka: {c.total}, VS: {c.variable_symbol or 'neuvedeno'}, "
            f"Zákazník: {c.customer_name or 'neuvedeno'}, Splatnost: {due}"
        )
    return "\n".join(lines)


ASSISTANT_SYSTEM = (
    "Jsi AI asistent českého fakturačního systému. Pomáháš s vytvářením a úpravou faktur, "
    "s náklady, navigací v aplikaci a s odpověďmi na otázky. "
    "Pro každou akci použij právě jednu z nabídnutých funkcí a vyplň její argumenty; "
    "když uživatel jen něco zjišťuje, odpověz stručně česky bez volání funkce.\n"
    "Pravidla:\n"
    '- české částky: "25k" = 25000, "5k" = 5000\n'
    "- zachovávej českou diakritiku\n"
    "- když chybí údaje, zeptej se na ně\n"
    "- aktuální stránka uživatele je uvedena v kontextu; faktura, kterou upravuje, je v cestě /invoices/<id>"
)

HELP_RESPONSE = (
    "Jsem AI asistent pro fakturaci. Mohu vám pomoci s:\n"
    "\n"
    "Vytváření faktur:\n"
    '• "vytvoř fakturu ABC za služby 15000 Kč"\n'
    '• "fakturu XYZ: 5 kg produktu A, 3 ks produktu B za 25k"\n'
    "\n"
    "Úpravy faktury:\n"
    '• "přidej položku konzultace 2 hod po 1000 Kč"\n'
    '• "změň splatnost na 31.1.2026"\n'
    '• "označ fakturu 20260001 jako zaplacenou"\n'
    "\n"
    "Náklady:\n"
    "• pošlete fotku účtenky a založím náklad\n"
    '• "zobraz náklady za leden"\n'
    "\n"
    "Navigace:\n"
    '• "přejdi na zákazníky", "zobraz dashboard", "otevři nastavení"\n'
    "\n"
    "Stačí napsat, co potřebujete."
)
