"""
Websocket router.

/websocket upgrades the connection and echoes every frame back to the sender
until the peer closes the connection or stays silent past the read timeout.
The session runs under the server span opened by the instrumentation
middleware.
"""

import logging

from fastapi import APIRouter, WebSocket
from opentelemetry.trace import Status, StatusCode

from services.echo_session import DuplexEchoSession
from utils.context_utils import get_request_id

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/websocket")
async def websocket_echo(websocket: WebSocket):
    instrumentation = websocket.app.state.instrumentation
    settings = websocket.app.state.settings

    with instrumentation.tracer.start_as_current_span("websocketHandler") as span:
        span.set_attribute("http.request_id", get_request_id())

        try:
            await websocket.accept()
        except (RuntimeError, OSError) as e:
            logger.error("Failed to upgrade connection.", extra={"error": str(e)})
            span.record_exception(e)
            span.set_status(Status(StatusCode.ERROR, str(e)))
            return

        logger.info("WebSocket connection established")

        session = DuplexEchoSession(websocket, read_timeout=settings.websocket_read_timeout, span=span)
        await session.run()

        logger.info("WebSocket connection closed")
