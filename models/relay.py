"""
Relay Request Model

Body of POST /request: a description of one outbound HTTP call that the
server performs on the caller's behalf.
"""

from typing import Dict

from pydantic import BaseModel, Field, field_validator


class RelayRequest(BaseModel):
    """
    Outbound call description.

    Attributes:
        method: HTTP method of the outbound call (empty means GET)
        url: Absolute target URL
        body: Raw request body sent to the target
        headers: Extra request headers; these win over propagated ones
    """
    method: str = Field(
        default="",
        validate_default=True,
        description="HTTP method of the outbound call"
    )
    url: str = Field(
        default="",
        description="Absolute target URL"
    )
    body: str = Field(
        default="",
        description="Raw request body"
    )
    headers: Dict[str, str] = Field(
        default_factory=dict,
        description="Extra request headers"
    )

    @field_validator('method')
    @classmethod
    def normalize_method(cls, v: str) -> str:
        """Empty method means GET, as with a bare curl call."""
        return v or "GET"
