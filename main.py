from contextlib import asynccontextmanager
from typing import Optional
from fastapi import FastAPI
from dotenv import load_dotenv
import logging
import sys
import uvicorn
from middleware.instrument import InstrumentationMiddleware
from middleware.recoverer import RecoveryMiddleware
from middleware.request_id import RequestIDMiddleware
from routers import echo, relay, websocket
from rpc.server import GrpcServer
from services.instrumentation import Instrumentation
from services.relay_client import RelayClient
from utils.logging import configure_logging
from utils.settings import Settings, SettingsError, split_address

logger = logging.getLogger(__name__)

ROUTERS = (echo.router, relay.router, websocket.router)

# Static route table, known before any request is dispatched
ROUTE_PATHS = frozenset(route.path for router in ROUTERS for route in router.routes)

# F(n) for large n has far more digits than the default str() conversion limit
sys.set_int_max_str_digits(0)


def create_app(
    settings: Optional[Settings] = None,
    instrumentation: Optional[Instrumentation] = None,
    relay_client: Optional[RelayClient] = None,
) -> FastAPI:
    """
    Build the echoserver application.

    Args:
        settings: Process settings, defaults when omitted
        instrumentation: Metric registry / tracer bundle, a private one when omitted
        relay_client: Outbound client for /request, built from settings when omitted

    Returns:
        The FastAPI application; its lifespan runs the gRPC server when
        settings.grpc_address is set
    """
    settings = settings or Settings()
    instrumentation = instrumentation or Instrumentation(service_name=settings.tracer_service)
    relay_client = relay_client or RelayClient(instrumentation, timeout=settings.relay_timeout)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        grpc_server = None
        if settings.grpc_address:
            grpc_server = GrpcServer(settings.grpc_address, instrumentation, relay_timeout=settings.relay_timeout)
            await grpc_server.start()
        else:
            logger.info("gRPC server disabled")

        try:
            yield
        finally:
            if grpc_server is not None:
                await grpc_server.stop()
            instrumentation.shutdown()
            logger.info("Shutdown complete")

    app = FastAPI(title="echoserver", lifespan=lifespan, redirect_slashes=False, docs_url=None, redoc_url=None, openapi_url=None)

    app.state.settings = settings
    app.state.instrumentation = instrumentation
    app.state.relay_client = relay_client

    # Include routers
    for router in ROUTERS:
        app.include_router(router)

    # Added innermost first: Recovery <- Instrumentation <- RequestID
    app.add_middleware(RecoveryMiddleware)
    app.add_middleware(InstrumentationMiddleware, instrumentation=instrumentation, routes=ROUTE_PATHS)
    app.add_middleware(RequestIDMiddleware)

    return app


def load_settings() -> Settings:
    """Load .env and the environment; exit with status 1 on invalid settings."""
    load_dotenv()
    try:
        return Settings.from_env()
    except SettingsError as e:
        logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)


def main() -> None:
    settings = load_settings()
    instrumentation = Instrumentation.from_settings(settings)
    configure_logging(settings.log_level, settings.log_format, log_counter=instrumentation.log_count)

    if settings.tracer_enabled:
        logger.info(f"Tracing enabled: service={settings.tracer_service}, address={settings.tracer_address}")
    else:
        logger.info("Tracing disabled, spans are not exported")

    host, port = split_address(settings.http_address)
    logger.info(f"Start server...: address={settings.http_address}")

    uvicorn.run(
        create_app(settings, instrumentation),
        host=host,
        port=port,
        log_config=None,
        access_log=False,
        ws_ping_interval=settings.websocket_ping_interval,
        ws_ping_timeout=settings.websocket_read_timeout,
    )


if __name__ == "__main__":
    main()
