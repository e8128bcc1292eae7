from __future__ import annotations

import pytest

from doklad.db.models import InvoiceStatus
from doklad.service.status import InvalidStatusTransition, parse_status, validate_status_transition


@pytest.mark.parametrize(
    "current,requested",
    [
        ("draft", "sent"),
        ("draft", "paid"),
        ("sent", "paid"),
        ("sent", "overdue"),
        ("overdue", "paid"),
        ("paid", "sent"),
    ],
)
def test_allowed_transitions(current, requested) -> None:
    assert validate_status_transition(current, requested) == InvoiceStatus(requested)


@pytest.mark.parametrize("current,requested", [("paid", "draft"), ("paid", "overdue"), ("overdue", "draft")])
def test_forbidden_transitions(current, requested) -> None:
    with pytest.raises(InvalidStatusTransition) as ei:
        validate_status_transition(current, requested)
    assert ei.value.reason == "transition"


def test_same_status_is_noop() -> None:
    assert validate_status_transition("sent", "SENT") is None


def test_unknown_status_is_rejected() -> None:
    with pytest.raises(InvalidStatusTransition) as ei:
        parse_status("cancelled")
    assert ei.value.reason == "unknown_status"
    assert isinstance(ei.value, ValueError)


def test_legacy_current_status_can_only_go_to_draft() -> None:
    assert validate_status_transition("archived", "draft") == InvoiceStatus.DRAFT
    with pytest.raises(InvalidStatusTransition) as ei:
        validate_status_transition("archived", "paid")
    assert ei.value.reason == "unknown_current_status"
