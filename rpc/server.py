"""
gRPC Server

Hosts the echoserver.Echoserver service on grpc.aio next to the HTTP server,
together with server reflection and the standard health service. Started and
stopped by the FastAPI lifespan in main.py.
"""

import logging
from typing import Optional

import grpc
from grpc_health.v1 import health, health_pb2, health_pb2_grpc
from grpc_reflection.v1alpha import reflection

from rpc import proto
from rpc.interceptors import InstrumentationInterceptor, RequestIDInterceptor
from rpc.service import EchoserverService, method_handlers
from services.instrumentation import Instrumentation

logger = logging.getLogger(__name__)

SHUTDOWN_GRACE_SECONDS = 10.0


class GrpcServer:
    """
    grpc.aio server for the echoserver service.

    Args:
        address: Listen address, e.g. ":8081" or "127.0.0.1:0"
        instrumentation: Injected metric registry / tracer bundle
        relay_timeout: Upper bound in seconds for one relayed call
    """

    def __init__(self, address: str, instrumentation: Instrumentation, relay_timeout: float = 30.0):
        self.address = address if not address.startswith(":") else f"[::]{address}"
        self.instrumentation = instrumentation
        self.relay_timeout = relay_timeout
        self.port: Optional[int] = None

        self._server: Optional[grpc.aio.Server] = None
        self._health: Optional[health.aio.HealthServicer] = None

    def build(self) -> grpc.aio.Server:
        server = grpc.aio.server(
            interceptors=[
                RequestIDInterceptor(),
                InstrumentationInterceptor(self.instrumentation),
            ]
        )

        service = EchoserverService(self.instrumentation, relay_timeout=self.relay_timeout)
        server.add_generic_rpc_handlers((method_handlers(service),))

        self._health = health.aio.HealthServicer()
        health_pb2_grpc.add_HealthServicer_to_server(self._health, server)

        reflection.enable_server_reflection(
            (
                proto.SERVICE_NAME,
                health_pb2.DESCRIPTOR.services_by_name["Health"].full_name,
                reflection.SERVICE_NAME,
            ),
            server,
        )
        return server

    async def start(self) -> None:
        """Bind the listen address and start serving."""
        self._server = self.build()
        self.port = self._server.add_insecure_port(self.address)
        if not self.port:
            raise RuntimeError(f"Failed to bind gRPC server to {self.address}")

        await self._server.start()
        await self._health.set("", health_pb2.HealthCheckResponse.SERVING)
        await self._health.set(proto.SERVICE_NAME, health_pb2.HealthCheckResponse.SERVING)
        logger.info(f"Start server...: address={self.address}, port={self.port}")

    async def stop(self, grace: float = SHUTDOWN_GRACE_SECONDS) -> None:
        """Stop accepting calls and wait up to `grace` seconds for running ones."""
        if self._server is None:
            return
        if self._health is not None:
            await self._health.enter_graceful_shutdown()
        logger.info("Stopping gRPC server")
        await self._server.stop(grace)
        self._server = None
