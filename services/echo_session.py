"""
Duplex Echo Session

One websocket session of the /websocket endpoint. Two tasks run side by side
for the lifetime of the session:

- the read loop receives frames and writes each one straight back with the
  same frame type (text stays text, binary stays binary); every inbound frame
  pushes the read deadline forward
- the watchdog sleeps until the read deadline and closes the session once it
  passes without any inbound frame

Both run in one anyio task group; whichever finishes first cancels the
group, so no task outlives its connection. Every write to the socket,
including the final close frame, goes through one lock.

Protocol level ping/pong frames are not visible to ASGI applications; they
are sent and checked by the server (uvicorn's ws_ping_interval and
ws_ping_timeout), which drops peers that stop answering. Pongs therefore
cannot renew the read deadline here: a client that answers pings but sends
no frames of its own is closed once read_timeout passes, where a server
seeing the pongs would keep it open.
"""

import logging
from typing import Awaitable, Callable, Optional

import anyio
from anyio import CancelScope
from fastapi import WebSocket
from opentelemetry.trace import Span, Status, StatusCode

logger = logging.getLogger(__name__)

# Close codes that end a session without being treated as an error
EXPECTED_CLOSE_CODES = frozenset((1000, 1001, 1005))

IDLE_CLOSE_CODE = 1000
IDLE_CLOSE_REASON = "read deadline exceeded"


class DuplexEchoSession:
    """
    Echo every inbound frame back until the peer leaves or goes idle.

    Args:
        websocket: Accepted websocket connection
        read_timeout: Seconds without an inbound frame before the session is closed
        span: Span receiving per-message events and errors
    """

    def __init__(self, websocket: WebSocket, read_timeout: float = 30.0, span: Optional[Span] = None):
        self.websocket = websocket
        self.read_timeout = read_timeout
        self.span = span

        self._write_lock = anyio.Lock()
        self._deadline = anyio.current_time() + read_timeout
        self._peer_closed = False
        self._closed = False

    def extend_deadline(self) -> None:
        """Move the read deadline to read_timeout seconds from now."""
        self._deadline = anyio.current_time() + self.read_timeout

    async def run(self) -> None:
        async with anyio.create_task_group() as tg:
            tg.start_soon(self._first_to_finish, self._read_loop, tg.cancel_scope)
            tg.start_soon(self._first_to_finish, self._watchdog, tg.cancel_scope)

        if self._peer_closed:
            return
        if self._expired():
            await self.close(IDLE_CLOSE_CODE, IDLE_CLOSE_REASON)
        else:
            await self.close(1011)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        """Send a close frame once; later calls do nothing."""
        async with self._write_lock:
            if self._closed or self._peer_closed:
                return
            self._closed = True
            try:
                await self.websocket.close(code=code, reason=reason)
            except (RuntimeError, OSError) as e:
                logger.debug(f"Close frame not sent: {type(e).__name__}: {e}")

    def _expired(self) -> bool:
        return anyio.current_time() >= self._deadline

    async def _first_to_finish(self, step: Callable[[], Awaitable[None]], scope: CancelScope) -> None:
        try:
            await step()
        except Exception as e:
            self._record_error("Websocket session failed.", e)
        finally:
            scope.cancel()

    async def _read_loop(self) -> None:
        while True:
            message = await self.websocket.receive()

            if message["type"] == "websocket.disconnect":
                self._peer_closed = True
                code = message.get("code", 1000)
                if code not in EXPECTED_CLOSE_CODES:
                    self._record_error("Failed to read message.", ConnectionError(f"unexpected close code {code}"))
                else:
                    logger.debug(f"Peer closed websocket: code={code}")
                return

            self.extend_deadline()

            text = message.get("text")
            data = message.get("bytes")

            logger.debug("Received message.", extra={"payload": text if text is not None else repr(data)})
            if self.span is not None:
                self.span.add_event(f"Received message: {text if text is not None else repr(data)}")

            async with self._write_lock:
                if text is not None:
                    await self.websocket.send_text(text)
                else:
                    await self.websocket.send_bytes(data or b"")

    async def _watchdog(self) -> None:
        while True:
            remaining = self._deadline - anyio.current_time()
            if remaining <= 0:
                logger.info(f"Closing idle websocket: no frame received for {self.read_timeout}s")
                if self.span is not None:
                    self.span.add_event("Read deadline exceeded.")
                return
            await anyio.sleep(remaining)

    def _record_error(self, message: str, error: BaseException) -> None:
        logger.error(message, extra={"error": repr(error)})
        if self.span is not None:
            self.span.record_exception(error)
            self.span.set_status(Status(StatusCode.ERROR, str(error)))
