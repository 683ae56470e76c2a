from unittest.mock import patch

import httpx
import pytest

from marketplace.services.collaborators import HttpAddressResolver, HttpEngineerCounters, ResolvedAddress

BASE = "https://identity.example.test"


def _response(status_code, json=None, method="GET", url=BASE):
    return httpx.Response(status_code, json=json, request=httpx.Request(method, url))


def test_resolve_returns_coordinates_for_owner():
    resolver = HttpAddressResolver(base_url=BASE + "/", timeout=2.0)
    body = {"owner_id": "cust-1", "city": "Sanaa", "coords": {"lat": 15.3694, "lng": 44.191}}

    with patch("marketplace.services.collaborators.httpx.get", return_value=_response(200, body)) as get:
        resolved = resolver.resolve("cust-1", "addr-1")

    assert resolved == ResolvedAddress(lat=15.3694, lng=44.191, city="Sanaa")
    args, kwargs = get.call_args
    assert args[0] == f"{BASE}/addresses/addr-1"
    assert kwargs["params"] == {"owner_id": "cust-1"}
    assert kwargs["timeout"] == 2.0


def test_resolve_rejects_foreign_address():
    resolver = HttpAddressResolver(base_url=BASE)
    body = {"owner_id": "cust-2", "lat": 1.0, "lng": 2.0}

    with patch("marketplace.services.collaborators.httpx.get", return_value=_response(200, body)):
        assert resolver.resolve("cust-1", "addr-1") is None


@pytest.mark.parametrize("status_code", [403, 404])
def test_resolve_treats_missing_as_none(status_code):
    resolver = HttpAddressResolver(base_url=BASE)
    with patch("marketplace.services.collaborators.httpx.get", return_value=_response(status_code, {})):
        assert resolver.resolve("cust-1", "addr-1") is None


def test_resolve_without_coordinates_is_none():
    resolver = HttpAddressResolver(base_url=BASE)
    with patch("marketplace.services.collaborators.httpx.get", return_value=_response(200, {"owner_id": "cust-1"})):
        assert resolver.resolve("cust-1", "addr-1") is None


def test_resolve_propagates_server_errors():
    resolver = HttpAddressResolver(base_url=BASE)
    with patch("marketplace.services.collaborators.httpx.get", return_value=_response(503, {})):
        with pytest.raises(httpx.HTTPStatusError):
            resolver.resolve("cust-1", "addr-1")


def test_resolver_requires_base_url(monkeypatch):
    monkeypatch.delenv("ADDRESS_SERVICE_URL", raising=False)
    with pytest.raises(RuntimeError):
        HttpAddressResolver(base_url="").resolve("cust-1", "addr-1")


def test_counter_reset_reads_count():
    counters = HttpEngineerCounters(base_url=BASE)
    reply = _response(200, {"reset": 12}, method="POST")

    with patch("marketplace.services.collaborators.httpx.post", return_value=reply) as post:
        assert counters.reset_monthly_counters() == 12

    assert post.call_args.args[0] == f"{BASE}/engineers/counters/reset"


def test_counter_reset_tolerates_empty_body():
    counters = HttpEngineerCounters(base_url=BASE)
    reply = httpx.Response(204, request=httpx.Request("POST", BASE))

    with patch("marketplace.services.collaborators.httpx.post", return_value=reply):
        assert counters.reset_monthly_counters() == 0
