"""
HTTP Relay Client

Performs the outbound call described by a RelayRequest and hands back the
target's raw status and body. Used by POST /request.

Outbound headers are merged in this order, earlier sources winning on a
case-insensitive name clash:
1. Headers supplied by the caller in the relay request
2. x-request-id of the current RequestContext
3. W3C trace context of the outbound client span

Redirects are followed (up to MAX_REDIRECTS), so the caller sees the final
target's answer.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional

import httpx
from opentelemetry.trace import SpanKind, Status, StatusCode

from models.relay import RelayRequest
from services.instrumentation import Instrumentation
from utils.context_utils import REQUEST_ID_HEADER, get_request_id

logger = logging.getLogger(__name__)

# Redirects followed before the last response is handed back as is
MAX_REDIRECTS = 10


class RelayError(Exception):
    """Raised when the relayed call could not be performed."""


@dataclass
class RelayResponse:
    status_code: int
    body: bytes


def merge_headers(caller: Dict[str, str], *fallbacks: Dict[str, str]) -> Dict[str, str]:
    """Merge header dicts; a name already present (any case) is never overwritten."""
    merged = dict(caller)
    seen = {name.lower() for name in merged}
    for source in fallbacks:
        for name, value in source.items():
            if name.lower() in seen:
                continue
            merged[name] = value
            seen.add(name.lower())
    return merged


class RelayClient:
    """
    Outbound HTTP client for the relay endpoint.

    Args:
        instrumentation: Tracer and propagator for the client span
        timeout: Upper bound in seconds for the whole outbound call
        transport: Optional httpx transport (tests use httpx.MockTransport)
    """

    def __init__(
        self,
        instrumentation: Instrumentation,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.instrumentation = instrumentation
        self.timeout = timeout
        self.transport = transport

    def outbound_headers(self, request: RelayRequest) -> Dict[str, str]:
        propagated: Dict[str, str] = {}
        request_id = get_request_id()
        if request_id:
            propagated[REQUEST_ID_HEADER] = request_id

        trace_headers: Dict[str, str] = {}
        self.instrumentation.inject(trace_headers)

        return merge_headers(request.headers, propagated, trace_headers)

    async def send(self, request: RelayRequest) -> RelayResponse:
        """
        Perform the outbound call.

        Raises:
            RelayError: Invalid URL, unreachable target, timeout or any other
                transport failure; carries the underlying error text
        """
        with self.instrumentation.tracer.start_as_current_span(
            f"HTTP {request.method}",
            kind=SpanKind.CLIENT,
            record_exception=False,
            set_status_on_exception=False,
        ) as span:
            span.set_attribute("http.request.method", request.method)
            span.set_attribute("url.full", request.url)

            headers = self.outbound_headers(request)
            logger.debug(f"Relaying request: method={request.method}, url={request.url}")

            try:
                async with httpx.AsyncClient(
                    timeout=self.timeout,
                    transport=self.transport,
                    follow_redirects=True,
                    max_redirects=MAX_REDIRECTS,
                ) as client:
                    response = await client.request(
                        request.method,
                        request.url,
                        content=request.body.encode("utf-8"),
                        headers=headers,
                    )
            except (httpx.HTTPError, httpx.InvalidURL, ValueError) as e:
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                raise RelayError(str(e) or type(e).__name__) from e

            span.set_attribute("http.response.status_code", response.status_code)
            if response.status_code >= 500:
                span.set_status(Status(StatusCode.ERROR, f"HTTP {response.status_code}"))

            return RelayResponse(status_code=response.status_code, body=response.content)
