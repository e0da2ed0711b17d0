"""
gRPC Relay

Invokes a unary method on another gRPC server without knowing its schema in
advance, the way grpcurl does:

1. Open an insecure channel to the target and ask its reflection service for
   the file describing the requested service
2. Build the request and response message classes from that descriptor
3. Parse the caller's JSON message into the request type and invoke the
   method with the supplied metadata
4. Render the response as JSON, default-valued fields included

The blocking reflection client runs in a worker thread; the relayed call
itself goes through grpc.aio.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Sequence, Tuple

import grpc
from google.protobuf import descriptor_pool, json_format, message_factory
from grpc_reflection.v1alpha.proto_reflection_descriptor_database import ProtoReflectionDescriptorDatabase

logger = logging.getLogger(__name__)


class GrpcRelayError(Exception):
    """Relay could not be performed; `code` is the status to answer with."""

    def __init__(self, code: grpc.StatusCode, details: str):
        self.code = code
        self.details = details
        super().__init__(details)


@dataclass
class RelayResult:
    code: grpc.StatusCode
    details: str = ""
    message: str = ""


def split_method(method: str) -> Tuple[str, str]:
    """
    Split a fully-qualified method name into (service, method).

    Accepts "pkg.Service/Method", "/pkg.Service/Method" and "pkg.Service.Method".
    """
    name = method.strip().lstrip("/")
    if "/" in name:
        service, _, method_name = name.rpartition("/")
    else:
        service, _, method_name = name.rpartition(".")
    if not service or not method_name:
        raise GrpcRelayError(grpc.StatusCode.INVALID_ARGUMENT, f'given method name "{method}" is not in expected format')
    return service, method_name


def resolve_method(channel: grpc.Channel, service_name: str, method_name: str) -> Tuple[type, type]:
    """
    Blocking reflection lookup of a unary method.

    Returns:
        (request class, response class) built from the target's descriptors

    Raises:
        GrpcRelayError: Reflection failure, unknown service or method, or a
            streaming method
    """
    try:
        pool = descriptor_pool.DescriptorPool(ProtoReflectionDescriptorDatabase(channel))
        service = pool.FindServiceByName(service_name)
    except grpc.RpcError as e:
        raise GrpcRelayError(grpc.StatusCode.INTERNAL, f"failed to query reflection service: {e.details()}") from e
    except KeyError as e:
        raise GrpcRelayError(grpc.StatusCode.INTERNAL, f'target server does not expose service "{service_name}"') from e

    method_descriptor = service.methods_by_name.get(method_name)
    if method_descriptor is None:
        raise GrpcRelayError(
            grpc.StatusCode.INTERNAL,
            f'service "{service_name}" does not include a method named "{method_name}"',
        )
    if method_descriptor.client_streaming or method_descriptor.server_streaming:
        raise GrpcRelayError(
            grpc.StatusCode.UNIMPLEMENTED,
            f'streaming method "{service_name}/{method_name}" cannot be relayed',
        )

    return (
        message_factory.GetMessageClass(method_descriptor.input_type),
        message_factory.GetMessageClass(method_descriptor.output_type),
    )


async def relay(
    uri: str,
    method: str,
    message: str,
    metadata: Sequence[Tuple[str, str]],
    timeout: float,
) -> RelayResult:
    """
    Relay one unary call.

    The reflection lookup runs in a worker thread on a blocking channel that
    is closed on the way out, which also aborts a lookup still in flight when
    the caller is cancelled. The call itself runs on a grpc.aio channel, so
    cancelling the caller cancels it too. `timeout` bounds each of the two
    steps.

    Returns:
        RelayResult with the target's status; `message` holds the JSON
        response when the status is OK

    Raises:
        GrpcRelayError: Reflection, schema or transport failure before the
            target method answered
    """
    service_name, method_name = split_method(method)

    reflection_channel = grpc.insecure_channel(uri)
    try:
        request_class, response_class = await asyncio.wait_for(
            asyncio.to_thread(resolve_method, reflection_channel, service_name, method_name),
            timeout,
        )
    except asyncio.TimeoutError as e:
        raise GrpcRelayError(grpc.StatusCode.INTERNAL, f"reflection lookup timed out after {timeout}s") from e
    finally:
        reflection_channel.close()

    try:
        request = json_format.Parse(message or "{}", request_class())
    except json_format.ParseError as e:
        raise GrpcRelayError(grpc.StatusCode.INTERNAL, f"error getting request data: {e}") from e

    async with grpc.aio.insecure_channel(uri) as channel:
        stub = channel.unary_unary(
            f"/{service_name}/{method_name}",
            request_serializer=request_class.SerializeToString,
            response_deserializer=response_class.FromString,
        )
        try:
            response = await stub(request, metadata=tuple(metadata), timeout=timeout)
        except grpc.aio.AioRpcError as e:
            logger.info(f"Relayed call failed: method={service_name}/{method_name}, code={e.code().name}")
            return RelayResult(code=e.code(), details=e.details() or "")

    return RelayResult(
        code=grpc.StatusCode.OK,
        message=json_format.MessageToJson(response, always_print_fields_with_no_presence=True),
    )
