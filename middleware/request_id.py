"""
Request ID Middleware

Assigns every HTTP request and websocket session a request id before anything
else runs. The caller's x-request-id header is reused when present, otherwise
a process-unique id is generated. The id is bound to the current
RequestContext (and therefore to every log line of the request) and echoed
back in the X-Request-Id response header.
"""

import logging

from starlette.datastructures import MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from models.request_context import RequestContext
from utils.context_utils import bind_request_context, reset_request_context, resolve_request_id

logger = logging.getLogger(__name__)

RESPONSE_HEADER = "X-Request-Id"


class RequestIDMiddleware:
    """Pure ASGI middleware binding a RequestContext per call."""

    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] not in ("http", "websocket"):
            await self.app(scope, receive, send)
            return

        request_id = resolve_request_id(scope.get("headers", []))
        context = RequestContext(request_id=request_id)
        token = bind_request_context(context)

        async def send_with_request_id(message: Message) -> None:
            if message["type"] == "http.response.start":
                headers = MutableHeaders(scope=message)
                if RESPONSE_HEADER not in headers:
                    headers.append(RESPONSE_HEADER, request_id)
            await send(message)

        try:
            if scope["type"] == "http":
                await self.app(scope, receive, send_with_request_id)
            else:
                await self.app(scope, receive, send)
        finally:
            reset_request_context(token)
