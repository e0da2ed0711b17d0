"""Data models for the echoserver."""
from .relay import RelayRequest
from .request_context import RequestContext

__all__ = [
    "RelayRequest",
    "RequestContext",
]
