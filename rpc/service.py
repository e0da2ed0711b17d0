"""
Echoserver gRPC service.

Implements the three unary methods of echoserver.Echoserver:

- Echo: answers with the received message
- Status: fails with a named or weighted-random status code
- Request: relays a call to another gRPC server through its reflection service
"""

import logging
from typing import Dict, List, Tuple

import grpc
from opentelemetry.trace import SpanKind, Status, StatusCode

from rpc import proto
from rpc.relay import GrpcRelayError, relay
from services.instrumentation import Instrumentation
from services.outcome import random_grpc_status
from utils.context_utils import REQUEST_ID_HEADER, get_request_id

logger = logging.getLogger(__name__)

# The canonical status names a client may ask for
STATUS_BY_NAME: Dict[str, grpc.StatusCode] = {code.name: code for code in grpc.StatusCode}


def relay_metadata(headers: Dict[str, str], request_id: str, trace_headers: Dict[str, str]) -> List[Tuple[str, str]]:
    """
    Outbound metadata for a relayed call.

    Caller-supplied headers win; the request id and trace context are only
    added under keys the caller did not set. Keys are lower-cased as gRPC
    requires.
    """
    metadata: List[Tuple[str, str]] = []
    seen = set()
    for key, value in headers.items():
        metadata.append((key.lower(), value))
        seen.add(key.lower())

    propagated = dict(trace_headers)
    if request_id:
        propagated[REQUEST_ID_HEADER] = request_id

    for key, value in propagated.items():
        if key.lower() not in seen:
            metadata.append((key.lower(), value))
            seen.add(key.lower())
    return metadata


class EchoserverService:
    """
    Handlers of the echoserver.Echoserver service.

    Args:
        instrumentation: Tracer and propagator for handler and client spans
        relay_timeout: Upper bound in seconds for one relayed call
    """

    def __init__(self, instrumentation: Instrumentation, relay_timeout: float = 30.0):
        self.instrumentation = instrumentation
        self.relay_timeout = relay_timeout

    def call_timeout(self, context: grpc.aio.ServicerContext) -> float:
        """relay_timeout, shortened to the caller's own deadline when it has one."""
        remaining = context.time_remaining()
        if remaining is None:
            return self.relay_timeout
        return max(min(self.relay_timeout, remaining), 0.0)

    async def Echo(self, request, context: grpc.aio.ServicerContext):
        with self.instrumentation.tracer.start_as_current_span("Echo") as span:
            span.set_attribute("message", request.message)
            return proto.EchoResponse(message=request.message)

    async def Status(self, request, context: grpc.aio.ServicerContext):
        """
        Fail with the requested status.

        An empty status or "random" draws from OK x5, INVALID_ARGUMENT,
        NOT_FOUND, INTERNAL and UNAVAILABLE. Unknown names fail with INTERNAL.
        """
        with self.instrumentation.tracer.start_as_current_span("Status") as span:
            span.set_attribute("status", request.status)

            if request.status in ("", "random"):
                code = random_grpc_status()
            elif request.status in STATUS_BY_NAME:
                code = STATUS_BY_NAME[request.status]
            else:
                await context.abort(grpc.StatusCode.INTERNAL, "Unknown status parameter")

            if code is not grpc.StatusCode.OK:
                await context.abort(code, code.name)
            return proto.StatusResponse()

    async def Request(self, request, context: grpc.aio.ServicerContext):
        """Relay a unary call to request.uri / request.method with request.message as JSON."""
        tracer = self.instrumentation.tracer
        with tracer.start_as_current_span("Request") as span:
            span.set_attribute("uri", request.uri)
            span.set_attribute("method", request.method)
            span.set_attribute("message", request.message)

            with tracer.start_as_current_span(request.method or "relay", kind=SpanKind.CLIENT) as client_span:
                trace_headers: Dict[str, str] = {}
                self.instrumentation.inject(trace_headers)
                metadata = relay_metadata(dict(request.headers), get_request_id(), trace_headers)

                try:
                    result = await relay(request.uri, request.method, request.message, metadata, self.call_timeout(context))
                except GrpcRelayError as e:
                    logger.error("Invoke failed.", extra={"error": e.details})
                    client_span.record_exception(e)
                    client_span.set_status(Status(StatusCode.ERROR, e.details))
                    await context.abort(e.code, e.details)

                client_span.set_attribute("rpc.grpc.status_code", result.code.value[0])

            if result.code is not grpc.StatusCode.OK:
                await context.abort(result.code, result.details)
            return proto.RequestResponse(message=result.message)


def method_handlers(service: EchoserverService) -> grpc.GenericRpcHandler:
    """Generic handler routing /echoserver.Echoserver/<Method> to `service`."""
    handlers = {}
    for method, (request_type, response_type) in proto.METHODS.items():
        request_class = proto.message_class(request_type)
        response_class = proto.message_class(response_type)
        handlers[method] = grpc.unary_unary_rpc_method_handler(
            getattr(service, method),
            request_deserializer=request_class.FromString,
            response_serializer=response_class.SerializeToString,
        )
    return grpc.method_handlers_generic_handler(proto.SERVICE_NAME, handlers)
