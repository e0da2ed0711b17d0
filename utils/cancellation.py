"""
Client Disconnect Handling

Long-running handlers (the timeout simulation and the relay) race their work
against the ASGI "http.disconnect" message so that the work is abandoned as
soon as the caller goes away instead of running to completion.
"""

import asyncio
import logging
from typing import Awaitable, TypeVar

from fastapi import Request

logger = logging.getLogger(__name__)

T = TypeVar("T")

# nginx's "Client Closed Request"
CLIENT_CLOSED_REQUEST = 499


class ClientDisconnected(Exception):
    """Raised when the caller disconnected before the work finished."""


async def _wait_for_disconnect(request: Request) -> None:
    while True:
        message = await request.receive()
        if message["type"] == "http.disconnect":
            return


async def run_until_disconnected(request: Request, work: Awaitable[T]) -> T:
    """
    Await `work` unless the client disconnects first.

    The request body must already have been read (or be irrelevant), because
    the disconnect watcher consumes the remaining receive channel.

    Args:
        request: The inbound request
        work: Awaitable performing the handler's blocking step

    Returns:
        The result of `work`

    Raises:
        ClientDisconnected: If the client went away first; `work` is cancelled
    """
    work_task = asyncio.ensure_future(work)
    watcher = asyncio.ensure_future(_wait_for_disconnect(request))

    try:
        done, _ = await asyncio.wait({work_task, watcher}, return_when=asyncio.FIRST_COMPLETED)
    except BaseException:
        work_task.cancel()
        watcher.cancel()
        raise

    watcher.cancel()
    if work_task in done:
        return work_task.result()

    work_task.cancel()
    logger.info("Client disconnected, abandoning request")
    raise ClientDisconnected("client disconnected before the response was ready")
