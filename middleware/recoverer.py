"""
Panic Recovery Middleware

Converts any exception escaping a handler into a 500 response whose body is
the repr() of the exception, so callers always receive a well-formed response
and the server keeps serving. Deliberate faults (the /panic endpoint) raise
Fault and go through exactly the same path as accidental ones.

If the handler already sent the response start, the status can no longer be
changed; the fault is only logged.
"""

import logging

from fastapi.responses import PlainTextResponse
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from starlette.types import ASGIApp, Message, Receive, Scope, Send

logger = logging.getLogger(__name__)


class Fault(Exception):
    """
    Explicit fault raised by a handler to request the 500 recovery path.

    Attributes:
        payload: Value describing the fault, rendered with repr() in the body
    """
    def __init__(self, payload: object = "panic test"):
        self.payload = payload
        super().__init__(payload)


def render_fault(exc: BaseException) -> str:
    """Machine-inspectable rendering of a fault for the 500 body."""
    return repr(exc)


class RecoveryMiddleware:
    """Pure ASGI middleware catching handler faults exactly once."""

    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        response_started = False

        async def send_wrapper(message: Message) -> None:
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        except Exception as exc:
            body = render_fault(exc)

            span = trace.get_current_span()
            span.record_exception(exc, attributes={"kind": "panic"})
            span.set_status(Status(StatusCode.ERROR, str(exc)))

            logger.error("Recover panic.", exc_info=exc, extra={"error": body})

            if response_started:
                logger.warning("Response already started, fault can only be logged")
                return

            response = PlainTextResponse(body, status_code=500)
            await response(scope, receive, send)
