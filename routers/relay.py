"""
Relay router.

POST /request performs the outbound HTTP call described in the JSON body and
answers with the target's status code and raw body:

    {"method": "GET", "url": "http://example.com", "body": "", "headers": {}}

The current request id and trace context travel with the outbound call.
Malformed bodies and transport failures are answered with 400; a client that
disconnects while the call is in flight cancels it.
"""

import logging

from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse, Response
from pydantic import ValidationError

from models.relay import RelayRequest
from routers.echo import reject
from services.relay_client import RelayClient, RelayError
from utils.cancellation import CLIENT_CLOSED_REQUEST, ClientDisconnected, run_until_disconnected
from utils.context_utils import append_log_fields

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/request")
async def relay(request: Request):
    """
    Relay one HTTP call.

    Returns:
        The target's status and body (text/plain), 400 on malformed input or
        transport failure
    """
    tracer = request.app.state.instrumentation.tracer
    relay_client: RelayClient = request.app.state.relay_client

    with tracer.start_as_current_span("requestHandler") as span:
        raw = await request.body()

        try:
            relay_request = RelayRequest.model_validate_json(raw or b"null")
        except ValidationError as e:
            return reject(span, "Failed to decode request body.", e)

        span.set_attribute("http.relay.method", relay_request.method)
        span.set_attribute("http.relay.url", relay_request.url)
        append_log_fields(relay_method=relay_request.method, relay_url=relay_request.url)

        try:
            relayed = await run_until_disconnected(request, relay_client.send(relay_request))
        except RelayError as e:
            return reject(span, "Failed to do http request.", e)
        except ClientDisconnected:
            span.add_event("client.disconnected")
            return PlainTextResponse("", status_code=CLIENT_CLOSED_REQUEST)

        logger.info(
            f"Relayed request: method={relay_request.method}, url={relay_request.url}, "
            f"status={relayed.status_code}, bytes={len(relayed.body)}"
        )
        return Response(relayed.body, status_code=relayed.status_code, media_type="text/plain")
