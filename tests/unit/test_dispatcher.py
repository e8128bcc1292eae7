from __future__ import annotations

import base64
import logging
from decimal import Decimal
from unittest.mock import Mock

import pytest

from doklad.extract.invoice_fields import DraftItem, InvoiceDraft
from doklad.extract.prompts import HELP_RESPONSE
from doklad.extract.receipt import ExpenseDraft
from doklad.integrations.llm import ChatReply, LLMError, ToolCall
from doklad.service.dispatcher import (
    APOLOGY,
    INVOICE_APOLOGY,
    INVOICE_HINT,
    NO_ANSWER,
    RECEIPT_UNREADABLE,
    TARGET_NOT_FOUND,
    AICommandDispatcher,
)
from doklad.service.mutations import ActionResult, InvoiceMutationService
from doklad.service.status import InvalidStatusTransition
from doklad.service.targets import TargetNotFound


class _ChatLLM:
    configured = True

    def __init__(self, reply: ChatReply | None = None, exc: Exception | None = None):
        self.reply = reply
        self.exc = exc
        self.messages = None
        self.calls = 0

    def chat_with_tools(self, messages, tools, *, timeout=None):
        self.calls += 1
        self.messages = messages
        if self.exc is not None:
            raise self.exc
        return self.reply


def _tool(name: str, **arguments) -> _ChatLLM:
    return _ChatLLM(ChatReply(content=None, tool_call=ToolCall(name=name, arguments=arguments)))


@pytest.fixture()
def mutations() -> Mock:
    return Mock(spec=InvoiceMutationService)


def test_missing_arguments_ask_for_clarification(mutations) -> None:
    d = AICommandDispatcher(_tool("add_note_to_invoice", note="  "), mutations)

    resp = d.dispatch(1, "u1", "přidej poznámku", {"path": "/invoices/5"})

    assert resp.content == "Pro dokončení akce potřebuji ještě: text poznámky. Doplňte je prosím."
    assert resp.action is None
    mutations.add_note.assert_not_called()


def test_llm_failure_returns_apology(mutations, caplog) -> None:
    caplog.set_level(logging.INFO)
    d = AICommandDispatcher(_ChatLLM(exc=LLMError("LLM HTTP 503")), mutations)

    resp = d.dispatch(1, None, "přidej položku", None)

    assert resp.content == APOLOGY
    assert "dispatcher.error" in [getattr(r, "event_name", "") for r in caplog.records]


def test_plain_text_reply_without_tool_call(mutations) -> None:
    assert AICommandDispatcher(_ChatLLM(ChatReply(content=" Dobrý den! ")), mutations).dispatch(1, None, "ahoj").content == "Dobrý den!"
    assert AICommandDispatcher(_ChatLLM(ChatReply(content=None)), mutations).dispatch(1, None, "ahoj").content == NO_ANSWER


def test_unknown_tool_is_not_executed(mutations) -> None:
    resp = AICommandDispatcher(_tool("delete_everything"), mutations).dispatch(1, None, "smaž vše")

    assert resp.content == NO_ANSWER
    assert mutations.method_calls == []


def test_forbidden_status_change_is_explained(mutations) -> None:
    mutations.update_status.side_effect = InvalidStatusTransition("paid", "draft")
    d = AICommandDispatcher(_tool("update_invoice_status", invoiceNumber="2025001", status="draft"), mutations)

    resp = d.dispatch(1, None, "vrať fakturu do konceptu")

    assert resp.content == 'Stav faktury nelze změnit z "paid" na "draft".'


def test_unknown_status_lists_allowed_values(mutations) -> None:
    mutations.update_status.side_effect = InvalidStatusTransition(None, "stornováno", "unknown_status")
    d = AICommandDispatcher(_tool("update_invoice_status", invoiceNumber="2025001", status="stornováno"), mutations)

    resp = d.dispatch(1, None, "storno")

    assert resp.content.startswith('Stav "stornováno" neznám.')
    assert "paid (zaplacená)" in resp.content


def test_missing_target_invoice(mutations) -> None:
    mutations.add_note.side_effect = TargetNotFound("Faktura číslo 1 nebyla nalezena")
    d = AICommandDispatcher(_tool("add_note_to_invoice", note="x", invoiceNumber="1"), mutations)

    resp = d.dispatch(1, None, "poznámka")

    assert resp.content == TARGET_NOT_FOUND
    assert resp.action == {"type": "navigate", "data": {"path": "/invoices"}}


def test_invoice_creation_failure_points_to_form(mutations) -> None:
    mutations.create_invoice_from_draft.side_effect = RuntimeError("db locked")
    d = AICommandDispatcher(
        _tool("create_invoice", customerName="ACME", items=[{"description": "Služby", "quantity": "1", "unit": "ks"}]),
        mutations,
    )

    resp = d.dispatch(1, None, "vytvoř fakturu ACME za služby")

    assert resp.content == INVOICE_APOLOGY
    assert resp.action == {"type": "navigate", "data": {"path": "/invoices/new"}}


def test_other_tool_failure_is_generic_apology(mutations) -> None:
    mutations.list_expenses.side_effect = RuntimeError("boom")

    resp = AICommandDispatcher(_tool("get_expenses"), mutations).dispatch(1, None, "náklady")

    assert resp.content == APOLOGY
    assert resp.action is None


def test_history_is_truncated_and_page_context_appended(mutations) -> None:
    llm = _ChatLLM(ChatReply(content="ok"))
    history = [{"role": "user" if i % 2 == 0 else "assistant", "content": f"zpráva {i}"} for i in range(12)]
    history.append({"role": "system", "content": "ignorovat"})

    AICommandDispatcher(llm, mutations).dispatch(1, None, "co dál?", {"path": "/invoices/5"}, history)

    assert len(llm.messages) == 12
    assert llm.messages[0]["role"] == "system"
    assert llm.messages[1]["content"] == "zpráva 2"
    assert llm.messages[-1] == {"role": "user", "content": "co dál?\n\nKontext: aktuální stránka /invoices/5"}


def test_add_item_arguments_reach_mutation_service(mutations) -> None:
    mutations.add_item.return_value = ActionResult("hotovo", {"type": "refresh_current_page", "data": {}})
    d = AICommandDispatcher(
        _tool("add_item_to_invoice", description="Consulting", quantity="2", unit="hod", unitPrice=1000, invoiceNumber="2025010"),
        mutations,
    )

    resp = d.dispatch(3, "u9", "přidej konzultace", {"path": "/invoices/7"})

    assert resp.to_dict() == {"content": "hotovo", "action": {"type": "refresh_current_page", "data": {}}}
    args, kwargs = mutations.add_item.call_args
    assert args[0] == 3
    assert args[1].invoice_number == "2025010"
    assert args[1].page_path == "/invoices/7"
    assert kwargs["description"] == "Consulting"
    assert kwargs["unit_price"] == 1000
    assert kwargs["user_id"] == "u9"


def test_create_invoice_without_usable_items_falls_back_to_extraction(mutations) -> None:
    mutations.create_invoice_from_draft.return_value = ActionResult("vytvořeno")
    extractor = Mock(return_value=InvoiceDraft(items=[DraftItem("Služby")], total_amount=Decimal("15000")))
    d = AICommandDispatcher(
        _tool("create_invoice", customerName="TestCompany", items=[{"quantity": "1"}]),
        mutations,
        invoice_extractor=extractor,
    )

    d.dispatch(1, None, "vytvoř fakturu TestCompany za služby 15000 Kč")

    extractor.assert_called_once()
    draft = mutations.create_invoice_from_draft.call_args.args[1]
    assert draft.customer_name == "TestCompany"
    assert [it.description for it in draft.items] == ["Služby"]
    assert draft.total_amount == Decimal("15000")


def test_navigate_with_filters(mutations) -> None:
    d = AICommandDispatcher(_tool("navigate_to_page", path="invoices", filters={"status": "overdue", "search": ""}), mutations)

    resp = d.dispatch(1, None, "ukaž faktury po splatnosti")

    assert resp.content == "Přecházím na /invoices?status=overdue."
    assert resp.action == {"type": "navigate", "data": {"path": "/invoices?status=overdue"}}


def test_short_create_invoice_request_gets_hint(mutations) -> None:
    llm = _ChatLLM(ChatReply(content="x"))

    resp = AICommandDispatcher(llm, mutations).dispatch(1, None, "Vytvoř fakturu")

    assert resp.content == INVOICE_HINT
    assert llm.calls == 0


def test_receipt_image_goes_to_vision_extraction(mutations) -> None:
    llm = _ChatLLM(ChatReply(content="x"))
    extractor = Mock(return_value=ExpenseDraft(supplier_name="Tesco", total=Decimal("121")))
    mutations.create_expense.return_value = ActionResult("Náklad vytvořen", {"type": "navigate", "data": {"path": "/expenses"}})
    d = AICommandDispatcher(llm, mutations, receipt_extractor=extractor)
    attachment = {"filename": "uctenka.jpg", "mime": "image/jpeg", "data": base64.b64encode(b"fakejpeg").decode("ascii")}

    resp = d.dispatch(1, "u1", "", None, [], [attachment])

    assert resp.content == "Náklad vytvořen"
    assert llm.calls == 0
    assert extractor.call_args.args[:2] == (b"fakejpeg", "image/jpeg")
    kwargs = mutations.create_expense.call_args.kwargs
    assert kwargs["attachment_name"] == "uctenka.jpg"
    assert kwargs["attachment_mime"] == "image/jpeg"


def test_unreadable_receipt(mutations) -> None:
    d = AICommandDispatcher(_ChatLLM(), mutations, receipt_extractor=Mock(return_value=ExpenseDraft()))

    resp = d.dispatch(1, None, "účtenka", None, [], [{"filename": "a.png", "mime": "image/png", "data": "aGVsbG8="}])

    assert resp.content == RECEIPT_UNREADABLE
    assert resp.action == {"type": "navigate", "data": {"path": "/expenses/new"}}
    mutations.create_expense.assert_not_called()


@pytest.mark.parametrize(
    "message,path",
    [("ukaž mi faktury", "/invoices"), ("seznam zákazníků", "/customers"), ("kde jsou náklady", "/expenses")],
)
def test_offline_keyword_navigation(mutations, message, path) -> None:
    resp = AICommandDispatcher(None, mutations).dispatch(1, None, message)

    assert resp.action == {"type": "navigate", "data": {"path": path}}


def test_offline_help(mutations) -> None:
    assert AICommandDispatcher(None, mutations).dispatch(1, None, "pomoc").content == HELP_RESPONSE
    assert AICommandDispatcher(None, mutations).dispatch(1, None, "xyz").content == HELP_RESPONSE


def test_add_note_end_to_end(session_factory, company_id, make_invoice) -> None:
    invoice_id = make_invoice("2025020", items=[{"description": "Hosting", "unit_price": 500}])
    d = AICommandDispatcher(_tool("add_note_to_invoice", note="Zaplaceno hotově"), InvoiceMutationService(session_factory))

    resp = d.dispatch(company_id, "u1", "poznamenej platbu", {"path": f"/invoices/{invoice_id}"})

    assert resp.to_dict() == {
        "content": 'Poznámka byla přidána k faktuře 2025020: "Zaplaceno hotově"',
        "action": {"type": "refresh_current_page", "data": {}},
    }
