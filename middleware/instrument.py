"""
Instrumentation Middleware

Wraps every HTTP request and websocket session with a server span, request
metrics and exactly one "Request completed." log line:

1. Extract incoming trace headers and start a SERVER span, recording its ids
   on the current RequestContext
2. Run the inner application while capturing the response status and the
   request/response body sizes
3. On completion (including after a recovered fault) finish the span, record
   counter and histograms labeled by status code, method and route, and log at
   ERROR for status >= 500, INFO otherwise

A websocket session is recorded when it ends, as 101 once the handshake was
accepted and 403 when it was refused. Frame payloads count as body sizes.

The route label comes from the static route table, resolved before the
handler runs; paths outside the table are labeled "unmatched".
"""

import logging
import time
from typing import Collection, Tuple

from opentelemetry.trace import SpanKind, Status, StatusCode
from starlette.datastructures import Headers
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from services.duration import format_duration
from services.instrumentation import Instrumentation, current_span_ids
from services.request_dump import request_target
from utils.context_utils import get_request_context

logger = logging.getLogger(__name__)

UNMATCHED_ROUTE = "unmatched"


def split_host_port(value: str) -> Tuple[str, int]:
    """Split "host:port" (or "[v6]:port"); missing or bad ports become 0."""
    if value.startswith("["):
        host, _, rest = value[1:].partition("]")
        port = rest[1:] if rest.startswith(":") else ""
    else:
        host, sep, port = value.rpartition(":")
        if not sep:
            host, port = value, ""
    return host, int(port) if port.isdigit() else 0


def _frame_size(message: Message) -> int:
    if message.get("text") is not None:
        return len(message["text"].encode("utf-8"))
    return len(message.get("bytes") or b"")


class InstrumentationMiddleware:
    """
    Pure ASGI middleware emitting traces, metrics and logs per request.

    Args:
        app: Inner ASGI application
        instrumentation: Injected metric registry / tracer bundle
        routes: Static set of route paths served by the application
    """

    def __init__(self, app: ASGIApp, instrumentation: Instrumentation, routes: Collection[str]):
        self.app = app
        self.instrumentation = instrumentation
        self.routes = frozenset(routes)

    def resolve_route(self, path: str) -> str:
        return path if path in self.routes else UNMATCHED_ROUTE

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] not in ("http", "websocket"):
            await self.app(scope, receive, send)
            return

        start = time.perf_counter()
        websocket = scope["type"] == "websocket"
        method = scope.get("method", "GET")
        route = self.resolve_route(scope["path"])
        headers = Headers(scope=scope)

        status_code = 0 if websocket else 200
        request_size = 0
        response_size = 0

        async def receive_wrapper() -> Message:
            nonlocal request_size
            message = await receive()
            if message["type"] == "http.request":
                request_size += len(message.get("body", b""))
            elif message["type"] == "websocket.receive":
                request_size += _frame_size(message)
            return message

        async def send_wrapper(message: Message) -> None:
            nonlocal status_code, response_size
            message_type = message["type"]
            if message_type in ("http.response.start", "websocket.http.response.start"):
                status_code = message["status"]
            elif message_type in ("http.response.body", "websocket.http.response.body"):
                response_size += len(message.get("body", b""))
            elif message_type == "websocket.accept":
                status_code = 101
            elif message_type == "websocket.send":
                response_size += _frame_size(message)
            elif message_type == "websocket.close" and not status_code:
                status_code = 403
            await send(message)

        parent = self.instrumentation.extract(headers)
        tracer = self.instrumentation.tracer

        with tracer.start_as_current_span(
            f"{method}:{route}",
            context=parent,
            kind=SpanKind.SERVER,
            record_exception=False,
            set_status_on_exception=False,
        ) as span:
            request_context = get_request_context()
            if request_context is not None:
                request_context.trace_id, request_context.span_id = current_span_ids()
                span.set_attribute("http.request_id", request_context.request_id)

            try:
                await self.app(scope, receive_wrapper, send_wrapper)
            except Exception as exc:
                status_code = 500
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, str(exc)))
                raise
            finally:
                if not status_code:
                    status_code = 403
                duration = time.perf_counter() - start
                fields = self._request_fields(scope, headers, method, route, status_code, request_size, response_size, duration)

                span.set_attributes(
                    {
                        "http.request.method": method,
                        "http.route": route,
                        "http.response.status_code": status_code,
                        "http.request.body.size": request_size,
                        "http.response.body.size": response_size,
                        "url.scheme": fields["url_scheme"],
                        "url.full": fields["url_full"],
                        "user_agent.original": fields["user_agent_original"],
                        "client.address": fields["client_address"],
                        "server.address": fields["server_address"],
                    }
                )
                if status_code >= 500:
                    span.set_status(Status(StatusCode.ERROR, f"HTTP {status_code}"))

                self.instrumentation.record_http(status_code, method, route, duration, request_size, response_size)

                if status_code >= 500:
                    logger.error("Request completed.", extra=fields)
                else:
                    logger.info("Request completed.", extra=fields)

    @staticmethod
    def _request_fields(
        scope: Scope,
        headers: Headers,
        method: str,
        route: str,
        status_code: int,
        request_size: int,
        response_size: int,
        duration: float,
    ) -> dict:
        scheme = scope.get("scheme", "http")
        host = headers.get("host", "")
        server_address, server_port = split_host_port(host)

        client = scope.get("client") or ("", 0)
        client_address, client_port = client[0], client[1]

        request_uri = request_target(scope)

        user_agent = headers.get("user-agent", "").replace("\n", "").replace("\r", "")

        return {
            "http_response_status_code": status_code,
            "http_request_method": method,
            "http_route": route,
            "url_scheme": scheme,
            "url_path": scope["path"],
            "url_full": f"{scheme}://{host}{request_uri}",
            "user_agent_original": user_agent,
            "network_protocol_name": "http",
            "network_protocol_version": scope.get("http_version", "1.1"),
            "server_address": server_address,
            "server_port": server_port,
            "client_address": client_address,
            "client_port": client_port,
            "http_request_body_size": request_size,
            "http_response_body_size": response_size,
            "http_request_duration": format_duration(duration),
        }
