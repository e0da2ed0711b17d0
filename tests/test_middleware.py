"""
Tests for the middleware pipeline

- Request ids are reused from x-request-id or generated per request
- Every response produces exactly one "Request completed." log line and one
  counter increment labeled with its status code
- Incoming W3C trace context is continued by the server span
- Recovery logs the fault with its traceback
"""

import json
import logging
import re

import pytest

from utils.context_utils import new_request_id
from utils.logging import JSONFormatter

GENERATED_ID = re.compile(r"^.+/[A-Za-z0-9]{10}-\d{6,}$")

TRACE_ID = "4bf92f3577b34da6a3ce929d0e0e4736"
PARENT_SPAN_ID = "00f067aa0ba902b7"


def completed_records(caplog):
    return [r for r in caplog.records if r.getMessage() == "Request completed."]


# =============================================================================
# Request id
# =============================================================================

class TestRequestID:

    def test_reuses_incoming_header(self, client):
        response = client.get("/health", headers={"X-Request-Id": "abc-123"})

        assert response.headers["x-request-id"] == "abc-123"

    def test_generates_id_when_missing(self, client):
        first = client.get("/health").headers["x-request-id"]
        second = client.get("/health").headers["x-request-id"]

        assert GENERATED_ID.match(first)
        assert GENERATED_ID.match(second)
        assert first != second

    def test_generates_id_when_empty(self, client):
        response = client.get("/health", headers={"X-Request-Id": ""})

        assert GENERATED_ID.match(response.headers["x-request-id"])

    def test_generated_ids_share_prefix_and_count_up(self):
        first, second = new_request_id(), new_request_id()

        prefix, _, counter = first.rpartition("-")
        next_prefix, _, next_counter = second.rpartition("-")
        assert prefix == next_prefix
        assert int(next_counter) == int(counter) + 1

    def test_error_responses_carry_request_id(self, client):
        response = client.get("/panic", headers={"X-Request-Id": "boom"})

        assert response.status_code == 500
        assert response.headers["x-request-id"] == "boom"

    def test_request_id_is_logged(self, client, caplog):
        caplog.set_level(logging.INFO)
        caplog.handler.setFormatter(JSONFormatter())

        client.get("/health", headers={"X-Request-Id": "logged-id"})

        line = next(l for l in caplog.text.splitlines() if "Request completed." in l)
        assert json.loads(line)["request_id"] == "logged-id"
        assert len(json.loads(line)["trace_id"]) == 32


# =============================================================================
# Metrics and logs
# =============================================================================

class TestInstrumentation:

    @pytest.mark.parametrize("path,status", [
        ("/health", 200),
        ("/status?status=404", 404),
        ("/status?status=503", 503),
        ("/timeout", 400),
        ("/panic", 500),
    ])
    def test_one_log_line_and_one_count_per_response(self, client, instrumentation, caplog, path, status):
        caplog.set_level(logging.INFO)

        response = client.get(path)

        assert response.status_code == status
        records = completed_records(caplog)
        assert len(records) == 1
        assert records[0].http_response_status_code == status
        assert records[0].levelno == (logging.ERROR if status >= 500 else logging.INFO)

        route = path.split("?")[0]
        labels = {"response_code": str(status), "request_method": "GET", "request_path": route}
        assert instrumentation.registry.get_sample_value("echoserver_http_requests_total", labels) == 1.0
        assert instrumentation.registry.get_sample_value("echoserver_http_request_duration_seconds_count", labels) == 1.0

    def test_log_fields(self, client, caplog):
        caplog.set_level(logging.INFO)

        client.post("/?q=1", content=b"abc", headers={"User-Agent": "probe/1.0"})

        record = completed_records(caplog)[0]
        assert record.http_request_method == "POST"
        assert record.http_route == "/"
        assert record.url_scheme == "http"
        assert record.url_path == "/"
        assert record.url_full == "http://testserver/?q=1"
        assert record.user_agent_original == "probe/1.0"
        assert record.http_request_body_size == 3
        assert record.http_response_body_size > 0
        assert record.server_address == "testserver"

    def test_response_size_histogram(self, client, instrumentation):
        client.get("/health")

        labels = {"response_code": "200", "request_method": "GET", "request_path": "/health"}
        assert instrumentation.registry.get_sample_value("echoserver_http_response_size_bytes_sum", labels) == 2.0

    def test_unmatched_paths_share_one_label(self, client, instrumentation):
        client.get("/a")
        client.get("/b")

        labels = {"response_code": "404", "request_method": "GET", "request_path": "unmatched"}
        assert instrumentation.registry.get_sample_value("echoserver_http_requests_total", labels) == 2.0

    def test_recording_failure_never_fails_the_request(self, client, instrumentation, monkeypatch):
        def broken(*args, **kwargs):
            raise RuntimeError("registry unavailable")

        monkeypatch.setattr(instrumentation.http_requests, "labels", broken)

        assert client.get("/health").status_code == 200


# =============================================================================
# Tracing
# =============================================================================

class TestTracing:

    def test_continues_incoming_trace(self, client, spans):
        traceparent = f"00-{TRACE_ID}-{PARENT_SPAN_ID}-01"

        client.get("/health", headers={"traceparent": traceparent, "X-Request-Id": "traced"})

        finished = {s.name: s for s in spans.get_finished_spans()}
        server_span = finished["GET:/health"]
        handler_span = finished["healthHandler"]

        assert format(server_span.context.trace_id, "032x") == TRACE_ID
        assert format(server_span.parent.span_id, "016x") == PARENT_SPAN_ID
        assert server_span.attributes["http.request_id"] == "traced"
        assert handler_span.parent.span_id == server_span.context.span_id

    def test_new_trace_without_headers(self, client, spans):
        client.get("/health")

        server_span = next(s for s in spans.get_finished_spans() if s.name == "GET:/health")
        assert server_span.parent is None


# =============================================================================
# Recovery
# =============================================================================

def test_recovery_logs_fault_with_traceback(client, caplog):
    caplog.set_level(logging.INFO)

    client.get("/panic")

    recovered = [r for r in caplog.records if r.getMessage() == "Recover panic."]
    assert len(recovered) == 1
    assert recovered[0].levelno == logging.ERROR
    assert recovered[0].exc_info is not None
    assert recovered[0].error == "Fault('panic test')"
