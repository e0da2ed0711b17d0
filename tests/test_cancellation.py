"""
Tests for client disconnect handling
"""

import asyncio
from unittest.mock import MagicMock

import pytest

from utils.cancellation import ClientDisconnected, run_until_disconnected


def fake_request(*messages, then_block=True):
    """Request whose receive() yields `messages`, then blocks forever."""
    queue = list(messages)

    async def receive():
        if queue:
            return queue.pop(0)
        if then_block:
            await asyncio.Event().wait()
        return {"type": "http.disconnect"}

    request = MagicMock()
    request.receive = receive
    return request


async def test_returns_result_when_client_stays():
    request = fake_request({"type": "http.request", "body": b"", "more_body": False})

    async def work():
        await asyncio.sleep(0.01)
        return "done"

    assert await run_until_disconnected(request, work()) == "done"


async def test_cancels_work_when_client_disconnects():
    request = fake_request({"type": "http.request", "body": b""}, {"type": "http.disconnect"})
    cancelled = asyncio.Event()

    async def work():
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            cancelled.set()
            raise

    with pytest.raises(ClientDisconnected):
        await run_until_disconnected(request, work())

    await asyncio.wait_for(cancelled.wait(), timeout=1)


async def test_work_errors_propagate():
    request = fake_request()

    async def work():
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError, match="boom"):
        await run_until_disconnected(request, work())
