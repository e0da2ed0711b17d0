"""
gRPC server interceptors.

The gRPC counterparts of the HTTP middleware, applied outermost first:

1. RequestIDInterceptor binds a RequestContext whose request id is taken from
   the x-request-id metadata or generated
2. InstrumentationInterceptor starts a server span continuing any incoming
   trace, turns unexpected exceptions into INTERNAL, records the gRPC metrics
   and logs one "Call completed." line per call

Only unary-unary handlers are wrapped; streaming handlers (reflection, health
watch) pass through untouched.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import grpc
from opentelemetry.trace import SpanKind, Status, StatusCode

from models.request_context import RequestContext
from services.duration import format_duration
from services.instrumentation import Instrumentation, current_span_ids
from utils.context_utils import bind_request_context, get_request_context, reset_request_context, resolve_request_id

logger = logging.getLogger(__name__)

UnaryBehavior = Callable[[Any, grpc.aio.ServicerContext], Awaitable[Any]]

_STATUS_BY_VALUE = {code.value[0]: code for code in grpc.StatusCode}


def split_full_method(full_method: str) -> Tuple[str, str]:
    """'/pkg.Service/Method' -> ('pkg.Service', 'Method')."""
    service, _, method = full_method.lstrip("/").rpartition("/")
    return service or "unknown", method or "unknown"


def status_code_of(context: grpc.aio.ServicerContext) -> grpc.StatusCode:
    """
    Status the handler set on `context`, OK when none was set.

    Depending on the grpcio build the context reports either a StatusCode or
    its integer value.
    """
    code = context.code()
    if isinstance(code, grpc.StatusCode):
        return code
    if isinstance(code, int):
        return _STATUS_BY_VALUE.get(code, grpc.StatusCode.UNKNOWN)
    return grpc.StatusCode.OK


def _wrap_unary(
    handler: grpc.RpcMethodHandler,
    wrapper: Callable[[UnaryBehavior], UnaryBehavior],
) -> grpc.RpcMethodHandler:
    return grpc.unary_unary_rpc_method_handler(
        wrapper(handler.unary_unary),
        request_deserializer=handler.request_deserializer,
        response_serializer=handler.response_serializer,
    )


def _metadata_dict(handler_call_details: grpc.HandlerCallDetails) -> Dict[str, str]:
    carrier: Dict[str, str] = {}
    for key, value in handler_call_details.invocation_metadata or ():
        if isinstance(value, str):
            carrier[key.lower()] = value
    return carrier


class RequestIDInterceptor(grpc.aio.ServerInterceptor):
    """Binds a RequestContext for the duration of each unary call."""

    async def intercept_service(
        self,
        continuation: Callable[[grpc.HandlerCallDetails], Awaitable[Optional[grpc.RpcMethodHandler]]],
        handler_call_details: grpc.HandlerCallDetails,
    ) -> Optional[grpc.RpcMethodHandler]:
        handler = await continuation(handler_call_details)
        if handler is None or handler.unary_unary is None:
            return handler

        metadata = tuple(handler_call_details.invocation_metadata or ())

        def wrapper(behavior: UnaryBehavior) -> UnaryBehavior:
            async def with_request_id(request, context):
                request_id = resolve_request_id(metadata)
                token = bind_request_context(RequestContext(request_id=request_id))
                try:
                    return await behavior(request, context)
                finally:
                    reset_request_context(token)

            return with_request_id

        return _wrap_unary(handler, wrapper)


class InstrumentationInterceptor(grpc.aio.ServerInterceptor):
    """
    Traces, metrics, logs and fault recovery for unary calls.

    Args:
        instrumentation: Injected metric registry / tracer bundle
    """

    def __init__(self, instrumentation: Instrumentation):
        self.instrumentation = instrumentation

    async def intercept_service(
        self,
        continuation: Callable[[grpc.HandlerCallDetails], Awaitable[Optional[grpc.RpcMethodHandler]]],
        handler_call_details: grpc.HandlerCallDetails,
    ) -> Optional[grpc.RpcMethodHandler]:
        handler = await continuation(handler_call_details)
        if handler is None or handler.unary_unary is None:
            return handler

        service, method = split_full_method(handler_call_details.method)
        carrier = _metadata_dict(handler_call_details)
        instrumentation = self.instrumentation

        def wrapper(behavior: UnaryBehavior) -> UnaryBehavior:
            async def instrumented(request, context):
                start = time.perf_counter()
                code = grpc.StatusCode.OK
                error: Optional[BaseException] = None

                with instrumentation.tracer.start_as_current_span(
                    f"{service}/{method}",
                    context=instrumentation.extract(carrier),
                    kind=SpanKind.SERVER,
                    record_exception=False,
                    set_status_on_exception=False,
                ) as span:
                    span.set_attributes({"rpc.system": "grpc", "rpc.service": service, "rpc.method": method})
                    request_context = get_request_context()
                    if request_context is not None:
                        request_context.trace_id, request_context.span_id = current_span_ids()
                        span.set_attribute("rpc.request_id", request_context.request_id)

                    try:
                        response = await behavior(request, context)
                        code = status_code_of(context)
                        return response
                    except grpc.aio.AbortError as e:
                        code = status_code_of(context)
                        error = e
                        raise
                    except asyncio.CancelledError as e:
                        code = grpc.StatusCode.CANCELLED
                        error = e
                        raise
                    except Exception as e:
                        code = grpc.StatusCode.INTERNAL
                        error = e
                        span.record_exception(e, attributes={"kind": "panic"})
                        logger.error("Recover panic.", exc_info=e, extra={"error": repr(e)})
                        await context.abort(grpc.StatusCode.INTERNAL, repr(e))
                    finally:
                        span.set_attribute("rpc.grpc.status_code", code.value[0])
                        if code is not grpc.StatusCode.OK:
                            span.set_status(Status(StatusCode.ERROR, code.name))

                        duration = time.perf_counter() - start
                        instrumentation.record_grpc(code.name, service, method, duration)

                        fields = {
                            "rpc_grpc_status_code": code.name,
                            "rpc_method": method,
                            "rpc_service": service,
                            "rpc_system": "grpc",
                            "network_peer_address": context.peer(),
                            "duration": format_duration(duration),
                        }
                        if error is not None and not isinstance(error, grpc.aio.AbortError):
                            fields["error"] = repr(error)
                        elif code is not grpc.StatusCode.OK:
                            fields["error"] = context.details() or code.name
                        logger.info("Call completed.", extra=fields)

            return instrumented

        return _wrap_unary(handler, wrapper)
