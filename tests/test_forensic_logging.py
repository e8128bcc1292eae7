import json as json_module
import logging
from io import StringIO
from unittest.mock import Mock

from doklad.integrations import llm as llm_module
from doklad.integrations.llm import LLMClient, LLMConfig
from doklad.utils.forensic_context import forensic_scope, get_forensic_fields
from doklad.utils.logging_setup import ForensicContextFilter, JsonLineFormatter, log_event


def test_json_formatter_includes_contextvars():
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(JsonLineFormatter())
    handler.addFilter(ForensicContextFilter())
    logger = logging.getLogger("doklad.test_forensic")
    logger.setLevel(logging.INFO)
    logger.handlers = []
    logger.addHandler(handler)
    logger.propagate = False

    with forensic_scope(correlation_id="corr-1", company_id=7, unknown_key="ignored"):
        log_event(logger, "test.event", "Test message", foo="bar")

    handler.flush()
    payload = json_module.loads(stream.getvalue().strip())
    assert payload["forensic"]["correlation_id"] == "corr-1"
    assert payload["forensic"]["company_id"] == 7
    assert payload["event_name"] == "test.event"
    assert payload["extra"]["foo"] == "bar"


def test_forensic_scope_restores_previous_values():
    with forensic_scope(phase="outer"):
        with forensic_scope(phase="inner", invoice_id=5):
            assert get_forensic_fields()["phase"] == "inner"
        assert get_forensic_fields()["phase"] == "outer"
        assert get_forensic_fields()["invoice_id"] is None
    assert get_forensic_fields()["phase"] is None


class _FakeResp:
    def __init__(self, status_code, body, headers=None):
        self.status_code = status_code
        self._body = body
        self.headers = headers or {}
        self.text = json_module.dumps(body)

    def json(self):
        return self._body


def test_llm_client_logs_error_retry_and_response(monkeypatch, caplog):
    success_body = {"model": "gpt-4o-mini", "choices": [{"message": {"content": '{"payments": []}'}}]}
    calls = {"idx": 0}

    def fake_post(url, headers, json=None, timeout=None):
        idx = calls["idx"]
        calls["idx"] += 1
        if idx == 0:
            return _FakeResp(502, {"error": {"message": "bad gateway"}})
        return _FakeResp(200, success_body, headers={"x-request-id": "req-123"})

    monkeypatch.setattr(llm_module.requests, "post", fake_post)
    monkeypatch.setattr(llm_module.time, "sleep", Mock())

    client = LLMClient(LLMConfig(api_key="sk-test"))
    caplog.set_level(logging.INFO, logger="doklad.integrations.llm")
    obj = client.complete_json("system", "Hello", timeout=1)

    assert obj == {"payments": []}
    event_names = [getattr(rec, "event_name", "") for rec in caplog.records]
    assert "llm.request" in event_names
    assert "llm.error" in event_names
    assert "llm.retry" in event_names
    assert "llm.response" in event_names
    assert "structured_output.parse" in event_names
    # API klíč se do logu nesmí dostat
    assert "sk-test" not in caplog.text
