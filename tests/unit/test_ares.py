from __future__ import annotations

import socket
from unittest.mock import Mock, patch

import pytest
import requests

from doklad.integrations import ares
from doklad.service.customers import resolve_customer
from doklad.db.session import unit_of_work


class _Response:
    def __init__(self, body, status: int = 200):
        self._body = body
        self.status_code = status

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"http {self.status_code}")

    def json(self):
        return self._body


_SUBJECT = {
    "ico": "12345678",
    "obchodniJmeno": "ACME s.r.o.",
    "dic": "CZ12345678",
    "sidlo": {"nazevUlice": "Vodičkova", "cisloDomovni": 10, "cisloOrientacni": 2, "nazevObce": "Praha", "psc": 11000},
}


@pytest.fixture(autouse=True)
def _clear_cache():
    ares._ARES_CACHE.clear()
    yield
    ares._ARES_CACHE.clear()


def test_fetch_by_ico_maps_subject_and_keeps_socket_timeout() -> None:
    sentinel = 12.5
    original = socket.getdefaulttimeout()
    socket.setdefaulttimeout(sentinel)
    try:
        with patch("doklad.integrations.ares.requests.get", return_value=_Response(_SUBJECT)) as mocked_get:
            rec = ares.fetch_by_ico("123 456 78", timeout=3, cache_ttl_seconds=0)
        assert socket.getdefaulttimeout() == sentinel
    finally:
        socket.setdefaulttimeout(original)

    mocked_get.assert_called_once()
    assert mocked_get.call_args.kwargs["timeout"] == (3, 3)
    assert rec.ico == "12345678"
    assert rec.name == "ACME s.r.o."
    assert rec.street == "Vodičkova 10/2"
    assert rec.city == "Praha"
    assert rec.postal_code == "11000"


def test_fetch_by_ico_uses_cache() -> None:
    with patch("doklad.integrations.ares.requests.get", return_value=_Response(_SUBJECT)) as mocked_get:
        ares.fetch_by_ico("12345678")
        ares.fetch_by_ico("12345678")
    assert mocked_get.call_count == 1


def test_fetch_by_ico_http_error_is_ares_error() -> None:
    with patch("doklad.integrations.ares.requests.get", return_value=_Response({}, status=404)):
        with pytest.raises(ares.AresError):
            ares.fetch_by_ico("87654321")


def test_normalize_ico() -> None:
    assert ares.normalize_ico("1234567") == "01234567"
    with pytest.raises(ValueError):
        ares.normalize_ico("123456789")
    assert ares.find_embedded_ico("Firma ACME, IČO 12345678, Praha") == "12345678"
    assert ares.find_embedded_ico("tel. 123456789") is None


def test_registry_prefers_embedded_ico() -> None:
    registry = ares.AresRegistry(timeout=5)
    with patch("doklad.integrations.ares.requests.get", return_value=_Response(_SUBJECT)) as mocked_get, patch(
        "doklad.integrations.ares.requests.post"
    ) as mocked_post:
        rec = registry.lookup("ACME 12345678")
    assert rec is not None and rec.ico == "12345678"
    mocked_get.assert_called_once()
    mocked_post.assert_not_called()


def test_registry_search_by_name() -> None:
    body = {"ekonomickeSubjekty": [_SUBJECT, {"obchodniJmeno": "bez IČO"}]}
    with patch("doklad.integrations.ares.requests.post", return_value=_Response(body)) as mocked_post:
        rec = ares.AresRegistry().lookup("ACME")
    assert rec is not None and rec.name == "ACME s.r.o."
    assert mocked_post.call_args.kwargs["json"]["pocet"] == 1


def test_resolve_customer_creates_from_registry(session_factory, company_id) -> None:
    registry = Mock()
    registry.lookup.return_value = ares.AresRecord(ico="12345678", name="ACME s.r.o.", dic="CZ12345678", city="Praha")

    with unit_of_work(session_factory) as session:
        first = resolve_customer(session, company_id, "acme", registry=registry)
        again = resolve_customer(session, company_id, "ACME s.r.o.", registry=registry)
        first_id, first_ico, first_name = first.id, first.ico, first.name

    assert first_name == "ACME s.r.o."
    assert first_ico == "12345678"
    assert again.id == first_id
    registry.lookup.assert_called_once_with("acme")


def test_resolve_customer_survives_registry_failure(session_factory, company_id) -> None:
    registry = Mock()
    registry.lookup.side_effect = ares.AresError("ARES nedostupný")

    with unit_of_work(session_factory) as session:
        c = resolve_customer(session, company_id, "Nová firma", registry=registry)
        name, ico = c.name, c.ico

    assert name == "Nová firma"
    assert ico is None
