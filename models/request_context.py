"""
Request Context Data Model

This module defines the RequestContext dataclass that carries the identity of
a single inbound call (request id, trace and span ids) and the log fields
accumulated while it is being served.
"""

from dataclasses import dataclass, field
from typing import Any, List, Tuple


@dataclass
class RequestContext:
    """
    Per-call identifiers threaded through middleware and handlers.

    Created by the request id middleware (HTTP) or interceptor (gRPC) and
    discarded once the response has been logged.

    Attributes:
        request_id: Value of the x-request-id header, or a generated id
        trace_id: Hex trace id of the server span, empty until a span starts
        span_id: Hex span id of the server span, empty until a span starts
        log_fields: Ordered (key, value) pairs appended to every log line
    """
    request_id: str
    trace_id: str = ""
    span_id: str = ""
    log_fields: List[Tuple[str, Any]] = field(default_factory=list)

    def __setattr__(self, name: str, value: Any) -> None:
        if name == "request_id" and "request_id" in self.__dict__:
            raise AttributeError("request_id cannot be changed once assigned")
        super().__setattr__(name, value)

    def append_fields(self, **fields: Any) -> None:
        """Attach key/value pairs to every later log line of this call."""
        self.log_fields.extend(fields.items())
