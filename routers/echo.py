"""
Echo and simulation router.

Diagnostic endpoints used to exercise clients, proxies and monitoring:

- /            dump of the received request
- /health      liveness probe, always "OK"
- /panic       raises a Fault, answered with 500 by the recovery middleware
- /status      answers with a chosen or weighted-random status code
- /timeout     answers after sleeping for the given duration
- /headersize  answers with an X-Header-Size header of the given length
- /fibonacci   computes F(n) to generate CPU load
- /metrics     Prometheus exposition of the instrumentation registry

Every handler except /metrics opens its own child span under the server span
and accepts any request method. Client input errors are answered with a
plain-text 400 carrying the parse error, never raised.
"""

import asyncio
import logging
import re
from http import HTTPStatus

from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse, Response
from opentelemetry.trace import Span, Status, StatusCode
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from prometheus_client.openmetrics.exposition import CONTENT_TYPE_LATEST as OPENMETRICS_CONTENT_TYPE
from prometheus_client.openmetrics.exposition import generate_latest as generate_openmetrics

from middleware.recoverer import Fault
from services.duration import DurationError, parse_duration
from services.fibonacci import fibonacci, parse_index
from services.outcome import random_http_status
from services.request_dump import dump_request, request_target
from utils.cancellation import CLIENT_CLOSED_REQUEST, ClientDisconnected, run_until_disconnected

logger = logging.getLogger(__name__)

router = APIRouter()

ANY_METHOD = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "TRACE"]

_INTEGER = re.compile(r"[+-]?[0-9]+")


def parse_int(value: str) -> int:
    """Parse a decimal integer the way strconv.Atoi does (optional sign, ASCII digits only)."""
    if not _INTEGER.fullmatch(value):
        raise ValueError(f'strconv.Atoi: parsing "{value}": invalid syntax')
    return int(value)


def reason_phrase(status_code: int) -> str:
    """Standard reason phrase for `status_code`, empty for unknown codes."""
    try:
        return HTTPStatus(status_code).phrase
    except ValueError:
        return ""


def plain_text(body: str, status_code: int = 200) -> PlainTextResponse:
    # No body is allowed for 204 and 304 responses
    if status_code in (204, 304):
        body = ""
    return PlainTextResponse(body, status_code=status_code)


def reject(span: Span, message: str, error: Exception, status_code: int = 400) -> PlainTextResponse:
    """Record a client input error on the span and the log, and answer with it."""
    logger.error(message, extra={"error": str(error)})
    span.record_exception(error)
    span.set_status(Status(StatusCode.ERROR, str(error)))
    return PlainTextResponse(
        f"{error}\n",
        status_code=status_code,
        headers={"X-Content-Type-Options": "nosniff"},
    )


def tracer_for(request: Request):
    return request.app.state.instrumentation.tracer


@router.api_route("/", methods=ANY_METHOD)
async def echo(request: Request):
    """
    Dump the received request: request line, headers and body.

    Returns:
        200 with the dump as text/plain
    """
    with tracer_for(request).start_as_current_span("echoHandler"):
        body = await request.body()

        dump = dump_request(
            method=request.method,
            target=request_target(request.scope),
            http_version=request.scope.get("http_version", "1.1"),
            host=request.headers.get("host", ""),
            headers=request.headers.items(),
            body=body,
        )
        return Response(dump, status_code=200, media_type="text/plain")


@router.api_route("/health", methods=ANY_METHOD)
async def health(request: Request):
    with tracer_for(request).start_as_current_span("healthHandler"):
        return PlainTextResponse("OK")


@router.api_route("/panic", methods=ANY_METHOD)
async def panic(request: Request):
    """Always raises; the recovery middleware turns the fault into a 500."""
    with tracer_for(request).start_as_current_span("panicHandler"):
        raise Fault("panic test")


@router.api_route("/status", methods=ANY_METHOD)
async def status(request: Request):
    """
    Answer with the requested status code and its reason phrase.

    Query parameters:
        status: Integer status code (100-999), or empty/"random" for a
            weighted draw from 200x5, 400, 500, 502, 503. 1xx codes are
            answered with 200 and the 1xx reason phrase
    """
    value = request.query_params.get("status", "")

    with tracer_for(request).start_as_current_span("statusHandler") as span:
        span.set_attribute("http.parameter.status", value)

        if value in ("", "random"):
            status_code = random_http_status()
            return plain_text(reason_phrase(status_code), status_code)

        try:
            status_code = parse_int(value)
        except ValueError as e:
            return reject(span, "Failed to parse 'status' parameter.", e)

        if not 100 <= status_code <= 999:
            return reject(span, "Invalid 'status' parameter.", ValueError(f"invalid status code {status_code}"))

        # 1xx is informational only, the final response is a 200
        if status_code < 200:
            span.set_attribute("http.informational_status", status_code)
            return plain_text(reason_phrase(status_code), 200)

        return plain_text(reason_phrase(status_code), status_code)


@router.api_route("/timeout", methods=ANY_METHOD)
async def timeout(request: Request):
    """
    Answer "OK" after sleeping for `timeout` (a duration such as "1s" or "1m30s").

    The sleep is abandoned when the client disconnects, recorded as 499.
    """
    value = request.query_params.get("timeout", "")

    with tracer_for(request).start_as_current_span("timeoutHandler") as span:
        span.set_attribute("http.parameter.timeout", value)

        if value == "":
            return reject(span, "Parameter 'timeout' is missing.", ValueError("timeout parameter is missing"))

        try:
            seconds = parse_duration(value)
        except DurationError as e:
            return reject(span, "Failed to parse 'timeout' parameter.", e)

        try:
            await run_until_disconnected(request, asyncio.sleep(max(seconds, 0.0)))
        except ClientDisconnected:
            span.add_event("client.disconnected")
            return PlainTextResponse("", status_code=CLIENT_CLOSED_REQUEST)

        return PlainTextResponse(reason_phrase(200))


@router.api_route("/headersize", methods=ANY_METHOD)
async def header_size(request: Request):
    """
    Answer with an X-Header-Size header made of `size` "0" characters.

    No upper bound is applied to `size`; the caller controls the allocation.
    """
    value = request.query_params.get("size", "")

    with tracer_for(request).start_as_current_span("headerSizeHandler") as span:
        span.set_attribute("http.parameter.size", value)

        if value == "":
            return reject(span, "Parameter 'size' is missing.", ValueError("size parameter is missing"))

        try:
            size = parse_int(value)
        except ValueError as e:
            return reject(span, "Failed to parse 'size' parameter.", e)

        if size < 0:
            return reject(span, "Invalid 'size' parameter.", ValueError(f"size must not be negative: {size}"))

        return PlainTextResponse(reason_phrase(200), headers={"X-Header-Size": "0" * size})


@router.api_route("/fibonacci", methods=ANY_METHOD)
def fibonacci_number(request: Request):
    """
    Compute the n-th Fibonacci number, 0 <= n < 2**64.

    Declared sync so the computation runs in the threadpool and only blocks
    its own worker.
    """
    value = request.query_params.get("n", "")

    with tracer_for(request).start_as_current_span("fibonacciHandler") as span:
        span.set_attribute("http.parameter.n", value)

        if value == "":
            return reject(span, "Parameter 'n' is missing.", ValueError("n parameter is missing"))

        try:
            n = parse_index(value)
        except ValueError as e:
            return reject(span, "Failed to parse 'n' parameter.", e)

        span.add_event("fibonacci.start")
        result = fibonacci(n)
        span.add_event("fibonacci.done")

        return PlainTextResponse(str(result))


@router.get("/metrics")
async def metrics(request: Request):
    """Prometheus text exposition, or OpenMetrics when the client asks for it."""
    registry = request.app.state.instrumentation.registry

    if "application/openmetrics-text" in request.headers.get("accept", ""):
        return Response(generate_openmetrics(registry), media_type=OPENMETRICS_CONTENT_TYPE)
    return Response(generate_latest(registry), media_type=CONTENT_TYPE_LATEST)
