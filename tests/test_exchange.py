import json
import threading

import httpx
import pytest

from conftest import ARCH, ORG, SPEC_REF, exchange_def
from msupgrade.errors import RegistryError
from msupgrade.exchange import ExchangeClient, split_node_id


def _ms_payload(*versions):
    return {
        "microservices": {
            f"{ORG}/gps_{v}_{ARCH}": exchange_def(v).model_dump(by_alias=True) for v in versions
        },
        "lastIndex": 0,
    }


def _client(handler, **kw):
    kw.setdefault("retry_delay_s", 0)
    return ExchangeClient(
        base_url="http://exchange.test/v1",
        node_id=f"{ORG}/node1",
        node_token="secret",
        transport=httpx.MockTransport(handler),
        **kw,
    )


def test_highest_matching_version_within_range():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("authorization")
        return httpx.Response(200, json=_ms_payload("1.0.0", "1.9.0", "10.0.0", "2.0.0"))

    ms = _client(handler).get_highest_matching_version(SPEC_REF, ORG, "[1.0.0,2.0.0)", ARCH)
    assert ms.version == "1.9.0"
    assert seen["url"].startswith("http://exchange.test/v1/orgs/IBM/microservices")
    assert "specRef=" in seen["url"]
    assert seen["auth"].startswith("Basic ")

    ms = _client(handler).get_highest_matching_version(SPEC_REF, ORG, "1.0.0", ARCH)
    assert ms.version == "10.0.0"


def test_no_version_in_range_is_an_error():
    def handler(request):
        return httpx.Response(200, json=_ms_payload("1.0.0"))

    with pytest.raises(RegistryError):
        _client(handler).get_highest_matching_version(SPEC_REF, ORG, "[2.0.0,3.0.0)", ARCH)


def test_transient_errors_are_retried():
    calls = {"n": 0}

    def handler(request):
        calls["n"] += 1
        if calls["n"] == 1:
            raise httpx.ConnectError("refused", request=request)
        if calls["n"] == 2:
            return httpx.Response(503)
        return httpx.Response(200, json=_ms_payload("1.0.0"))

    ms = _client(handler).get_highest_matching_version(SPEC_REF, ORG, "1.0.0", ARCH)
    assert ms.version == "1.0.0"
    assert calls["n"] == 3


def test_transient_retries_log_events(store):
    calls = {"n": 0}

    def handler(request):
        calls["n"] += 1
        if calls["n"] == 1:
            return httpx.Response(429)
        return httpx.Response(200, json=_ms_payload("1.0.0"))

    _client(handler, store=store).get_highest_matching_version(SPEC_REF, ORG, "1.0.0", ARCH)
    assert store.latest_events(1)[0]["level"] == "WARN"


def test_client_errors_are_not_retried():
    calls = {"n": 0}

    def handler(request):
        calls["n"] += 1
        return httpx.Response(401, text="bad creds")

    with pytest.raises(RegistryError) as ei:
        _client(handler).get_highest_matching_version(SPEC_REF, ORG, "1.0.0", ARCH)
    assert ei.value.status_code == 401
    assert calls["n"] == 1


def test_cancel_stops_retry_loop():
    client = _client(lambda request: httpx.Response(502), retry_delay_s=30)
    timer = threading.Timer(0.05, client.cancel)
    timer.start()
    try:
        with pytest.raises(RegistryError):
            client.get_highest_matching_version(SPEC_REF, ORG, "1.0.0", ARCH)
    finally:
        timer.cancel()


def test_reset_after_cancel_allows_calls_again():
    client = _client(lambda request: httpx.Response(200, json=_ms_payload("1.0.0")))
    client.cancel()
    with pytest.raises(RegistryError):
        client.get_highest_matching_version(SPEC_REF, ORG, "1.0.0", ARCH)

    client.reset()
    assert client.get_highest_matching_version(SPEC_REF, ORG, "1.0.0", ARCH).version == "1.0.0"


def test_unregister_microservice_puts_node_without_it():
    node_id = f"{ORG}/node1"
    put_body = {}

    def handler(request):
        assert request.url.path == "/v1/orgs/IBM/nodes/node1"
        if request.method == "GET":
            return httpx.Response(
                200,
                json={
                    "nodes": {
                        node_id: {
                            "token": "",
                            "name": "node1",
                            "registeredMicroservices": [
                                {"url": SPEC_REF, "numAgreements": 1, "policy": "{}", "properties": []},
                                {"url": "https://other/ms", "numAgreements": 1, "policy": "{}", "properties": []},
                            ],
                        }
                    }
                },
            )
        put_body.update(json.loads(request.content))
        return httpx.Response(201, json={"code": "ok"})

    assert _client(handler).unregister_microservice(node_id, SPEC_REF) is True
    assert [ms["url"] for ms in put_body["registeredMicroservices"]] == ["https://other/ms"]
    assert put_body["name"] == "node1"


def test_get_node_missing_from_response():
    def handler(request):
        return httpx.Response(200, json={"nodes": {}})

    with pytest.raises(RegistryError):
        _client(handler).get_node(f"{ORG}/node1")


def test_split_node_id():
    assert split_node_id("IBM/node1") == ("IBM", "node1")
    with pytest.raises(RegistryError):
        split_node_id("node1")
