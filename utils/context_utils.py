"""
Request Context Utilities

This module owns the context variable holding the current RequestContext and
the request id scheme shared by the HTTP middleware and the gRPC interceptor.

Request ids follow a two-step priority chain:
1. The caller's x-request-id header / metadata value, reused verbatim
2. A generated "<hostname>/<random10>-<counter>" id, where the random prefix
   is fixed per process and the counter increments per generated id
"""

import base64
import itertools
import logging
import os
import socket
from contextvars import ContextVar, Token
from typing import Any, Iterable, Optional, Tuple

from models.request_context import RequestContext

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "x-request-id"

request_context_var: ContextVar[Optional[RequestContext]] = ContextVar("request_context", default=None)


def _make_prefix() -> str:
    hostname = socket.gethostname() or "localhost"
    random_part = ""
    while len(random_part) < 10:
        encoded = base64.b64encode(os.urandom(12)).decode("ascii")
        random_part = encoded.replace("+", "").replace("/", "")
    return f"{hostname}/{random_part[:10]}"


_prefix = _make_prefix()
_counter = itertools.count(1)


def new_request_id() -> str:
    """Generate a process-unique request id."""
    return f"{_prefix}-{next(_counter):06d}"


def resolve_request_id(candidates: Iterable[Tuple[Any, Any]]) -> str:
    """
    Pick the request id for an inbound call.

    Args:
        candidates: (name, value) pairs, e.g. ASGI headers or gRPC metadata.
            Names and values may be str or bytes.

    Returns:
        The first non-empty x-request-id value, or a freshly generated id
    """
    for name, value in candidates:
        if isinstance(name, bytes):
            name = name.decode("latin-1")
        if name.lower() != REQUEST_ID_HEADER:
            continue
        if isinstance(value, bytes):
            value = value.decode("latin-1")
        if value:
            return value
    return new_request_id()


def get_request_context() -> Optional[RequestContext]:
    """Return the RequestContext of the call being served, if any."""
    return request_context_var.get()


def get_request_id() -> str:
    """Return the current request id, or an empty string outside a call."""
    context = request_context_var.get()
    return context.request_id if context else ""


def bind_request_context(context: RequestContext) -> Token:
    """Make `context` current; pass the returned token to reset_request_context."""
    return request_context_var.set(context)


def reset_request_context(token: Token) -> None:
    request_context_var.reset(token)


def append_log_fields(**fields: Any) -> None:
    """Attach key/value pairs to every later log line of the current call."""
    context = request_context_var.get()
    if context is None:
        logger.debug(f"No request context bound, dropping log fields: {sorted(fields)}")
        return
    context.append_fields(**fields)
