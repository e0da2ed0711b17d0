"""
Random Outcome Generation

Weighted random draws for the status simulation endpoints. Each table lists
every outcome once per unit of weight, so a uniform pick over the table is the
weighted distribution: five successes against four distinct failures gives a
5/9 success rate.
"""

import secrets
from typing import Sequence, TypeVar

import grpc

T = TypeVar("T")

HTTP_STATUS_TABLE = (200, 200, 200, 200, 200, 400, 500, 502, 503)

GRPC_STATUS_TABLE = (
    grpc.StatusCode.OK,
    grpc.StatusCode.OK,
    grpc.StatusCode.OK,
    grpc.StatusCode.OK,
    grpc.StatusCode.OK,
    grpc.StatusCode.INVALID_ARGUMENT,
    grpc.StatusCode.NOT_FOUND,
    grpc.StatusCode.INTERNAL,
    grpc.StatusCode.UNAVAILABLE,
)


def draw(table: Sequence[T]) -> T:
    """Pick one entry of `table` uniformly at random."""
    if not table:
        raise ValueError("cannot draw from an empty outcome table")
    return table[secrets.randbelow(len(table))]


def random_http_status() -> int:
    """Draw an HTTP status code from the weighted status table."""
    return draw(HTTP_STATUS_TABLE)


def random_grpc_status() -> grpc.StatusCode:
    """Draw a gRPC status code from the weighted status table."""
    return draw(GRPC_STATUS_TABLE)
