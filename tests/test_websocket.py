"""
Tests for the duplex echo websocket endpoint
"""

import logging
import time

from conftest import make_client
from services.echo_session import IDLE_CLOSE_CODE
from utils.settings import Settings


def test_echoes_text_frames(client):
    with client.websocket_connect("/websocket") as ws:
        ws.send_text("hello")
        assert ws.receive_text() == "hello"

        ws.send_text("world")
        assert ws.receive_text() == "world"


def test_echoes_binary_frames_as_binary(client):
    with client.websocket_connect("/websocket") as ws:
        ws.send_bytes(b"\x00\x01\xff")
        message = ws.receive()

    assert message["type"] == "websocket.send"
    assert message["bytes"] == b"\x00\x01\xff"
    assert message.get("text") is None


def test_one_reply_per_message(client):
    with client.websocket_connect("/websocket") as ws:
        for i in range(5):
            ws.send_text(f"message-{i}")
        replies = [ws.receive_text() for _ in range(5)]

    assert replies == [f"message-{i}" for i in range(5)]


def test_idle_session_is_closed_by_server():
    client = make_client(Settings(grpc_address="", websocket_read_timeout=0.2))

    started = time.monotonic()
    with client.websocket_connect("/websocket") as ws:
        message = ws.receive()
    elapsed = time.monotonic() - started

    assert message["type"] == "websocket.close"
    assert message["code"] == IDLE_CLOSE_CODE
    assert 0.2 <= elapsed < 2.0


def test_inbound_frames_extend_the_deadline():
    client = make_client(Settings(grpc_address="", websocket_read_timeout=0.5))

    with client.websocket_connect("/websocket") as ws:
        for _ in range(4):
            time.sleep(0.2)
            ws.send_text("ping")
            assert ws.receive_text() == "ping"


def test_session_is_traced(client, spans):
    with client.websocket_connect("/websocket", headers={"X-Request-Id": "ws-1"}) as ws:
        ws.send_text("hello")
        ws.receive_text()

    span = next(s for s in spans.get_finished_spans() if s.name == "websocketHandler")
    assert span.attributes["http.request_id"] == "ws-1"
    assert any(event.name == "Received message: hello" for event in span.events)


def test_session_is_counted_and_logged_once(client, instrumentation, caplog):
    caplog.set_level(logging.INFO)

    with client.websocket_connect("/websocket") as ws:
        ws.send_text("hello")
        ws.receive_text()

    records = [r for r in caplog.records if r.getMessage() == "Request completed."]
    assert len(records) == 1
    assert records[0].http_response_status_code == 101
    assert records[0].http_route == "/websocket"
    assert records[0].http_request_body_size == 5
    assert records[0].http_response_body_size == 5

    labels = {"response_code": "101", "request_method": "GET", "request_path": "/websocket"}
    assert instrumentation.registry.get_sample_value("echoserver_http_requests_total", labels) == 1.0


def test_session_span_is_child_of_server_span(client, spans):
    with client.websocket_connect("/websocket") as ws:
        ws.send_text("hello")
        ws.receive_text()

    finished = {s.name: s for s in spans.get_finished_spans()}
    server_span = finished["GET:/websocket"]
    assert finished["websocketHandler"].parent.span_id == server_span.context.span_id
    assert server_span.attributes["http.response.status_code"] == 101
