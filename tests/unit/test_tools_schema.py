from __future__ import annotations

import pytest

from doklad.service.dispatcher import AICommandDispatcher
from doklad.service.tools import ARG_LABELS_CS, REQUIRED_ARGS, TOOL_NAMES, TOOLS, missing_arguments


def test_tool_names_are_unique_and_dispatchable() -> None:
    assert len(TOOL_NAMES) == len(set(TOOL_NAMES)) == 10
    handlers = AICommandDispatcher(None, mutations=None)._handlers
    assert set(handlers) == set(TOOL_NAMES)


@pytest.mark.parametrize("tool", TOOLS, ids=lambda t: t["function"]["name"])
def test_required_arguments_are_declared(tool) -> None:
    params = tool["function"]["parameters"]
    assert tool["type"] == "function"
    assert params["type"] == "object"
    assert set(params["required"]) <= set(params["properties"])
    for key in params["required"]:
        assert key in ARG_LABELS_CS


def test_missing_arguments_treats_blank_values_as_missing() -> None:
    assert missing_arguments("create_invoice", {"customerName": " ", "items": []}) == ["customerName", "items"]
    assert missing_arguments("add_note_to_invoice", {"note": "ok"}) == []
    assert missing_arguments("get_expenses", {}) == []
    assert missing_arguments("unknown_tool", {}) == []
    assert REQUIRED_ARGS["update_invoice_status"] == ["invoiceNumber", "status"]
