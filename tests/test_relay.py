"""
Tests for the HTTP relay endpoint

The relay target is an httpx.MockTransport, so no network is involved.
"""

import json
import logging

import httpx
import pytest

from conftest import make_client
from models.relay import RelayRequest
from services.relay_client import merge_headers
from utils.logging import JSONFormatter


def relay_body(**overrides):
    body = {"method": "GET", "url": "http://target.test/resource", "body": "", "headers": {}}
    body.update(overrides)
    return json.dumps(body)


class RecordingTarget:
    """MockTransport handler answering with a fixed response and keeping the requests."""

    def __init__(self, status_code=200, content=b"target body"):
        self.status_code = status_code
        self.content = content
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, content=self.content)


@pytest.mark.parametrize("status_code,content", [(200, b"hello"), (404, b"missing"), (503, b"")])
def test_relays_status_and_body(status_code, content):
    target = RecordingTarget(status_code, content)
    client = make_client(transport=httpx.MockTransport(target))

    response = client.post("/request", content=relay_body())

    assert response.status_code == status_code
    assert response.content == content


def test_sends_method_body_and_headers():
    target = RecordingTarget()
    client = make_client(transport=httpx.MockTransport(target))

    client.post("/request", content=relay_body(method="PUT", body="payload", headers={"X-Custom": "1"}))

    sent = target.requests[0]
    assert sent.method == "PUT"
    assert str(sent.url) == "http://target.test/resource"
    assert sent.content == b"payload"
    assert sent.headers["x-custom"] == "1"


def test_propagates_request_id_and_trace_context():
    target = RecordingTarget()
    client = make_client(transport=httpx.MockTransport(target))

    client.post("/request", content=relay_body(), headers={"X-Request-Id": "inbound-id"})

    sent = target.requests[0]
    assert sent.headers["x-request-id"] == "inbound-id"
    assert sent.headers["traceparent"].startswith("00-")


def test_caller_supplied_request_id_wins():
    target = RecordingTarget()
    client = make_client(transport=httpx.MockTransport(target))

    client.post(
        "/request",
        content=relay_body(headers={"X-Request-ID": "caller-id"}),
        headers={"X-Request-Id": "inbound-id"},
    )

    sent = target.requests[0]
    assert sent.headers.get_list("x-request-id") == ["caller-id"]


def test_empty_method_defaults_to_get():
    target = RecordingTarget()
    client = make_client(transport=httpx.MockTransport(target))

    client.post("/request", content=json.dumps({"url": "http://target.test/"}))

    assert target.requests[0].method == "GET"


@pytest.mark.parametrize("body", ["", "not json", "{", "[]", '{"headers": "x"}'])
def test_malformed_body_is_rejected(body):
    target = RecordingTarget()
    client = make_client(transport=httpx.MockTransport(target))

    response = client.post("/request", content=body)

    assert response.status_code == 400
    assert target.requests == []


def test_transport_failure_is_rejected():
    def unreachable(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = make_client(transport=httpx.MockTransport(unreachable))

    response = client.post("/request", content=relay_body())

    assert response.status_code == 400
    assert "connection refused" in response.text


def test_relay_only_accepts_post(client):
    assert client.get("/request").status_code == 405


def test_merge_headers_is_case_insensitive():
    merged = merge_headers({"X-Request-ID": "a"}, {"x-request-id": "b", "traceparent": "t"}, {"TraceParent": "u"})

    assert merged == {"X-Request-ID": "a", "traceparent": "t"}


def test_relay_target_is_logged(caplog):
    caplog.set_level(logging.INFO)
    caplog.handler.setFormatter(JSONFormatter())
    client = make_client(transport=httpx.MockTransport(RecordingTarget()))

    client.post("/request", content=relay_body(method="DELETE"))

    line = next(l for l in caplog.text.splitlines() if "Request completed." in l)
    assert json.loads(line)["relay_method"] == "DELETE"
    assert json.loads(line)["relay_url"] == "http://target.test/resource"


def test_redirects_are_followed():
    def redirecting(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/start":
            return httpx.Response(302, headers={"Location": "http://target.test/final"})
        return httpx.Response(200, content=b"final")

    client = make_client(transport=httpx.MockTransport(redirecting))

    response = client.post("/request", content=relay_body(url="http://target.test/start"))

    assert response.status_code == 200
    assert response.content == b"final"


def test_redirect_loop_is_rejected():
    def looping(request: httpx.Request) -> httpx.Response:
        return httpx.Response(302, headers={"Location": "http://target.test/again"})

    client = make_client(transport=httpx.MockTransport(looping))

    response = client.post("/request", content=relay_body())

    assert response.status_code == 400


def test_relay_request_method_defaults_to_get():
    assert RelayRequest.model_validate_json('{"url": "http://target.test/"}').method == "GET"
    assert RelayRequest(url="http://target.test/").method == "GET"
    assert RelayRequest(method="PATCH").method == "PATCH"
