"""
Shared fixtures.

Every test app gets its own Instrumentation with a private prometheus
registry and an in-memory span exporter, so metric values and spans never
leak between tests. The gRPC server is disabled for HTTP tests.
"""

from typing import Optional

import httpx
import pytest
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from prometheus_client import CollectorRegistry

from main import create_app
from services.instrumentation import Instrumentation
from services.relay_client import RelayClient
from utils.settings import Settings


def make_instrumentation() -> Instrumentation:
    return Instrumentation(registry=CollectorRegistry(), span_exporter=InMemorySpanExporter())


def make_client(
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> TestClient:
    """Build a TestClient around a fresh app (gRPC disabled unless asked for)."""
    settings = settings or Settings(grpc_address="")
    instrumentation = make_instrumentation()
    relay_client = RelayClient(instrumentation, timeout=settings.relay_timeout, transport=transport)
    app = create_app(settings, instrumentation, relay_client)
    return TestClient(app, raise_server_exceptions=False)


@pytest.fixture
def client():
    """Test client for a fresh app."""
    return make_client()


@pytest.fixture
def instrumentation(client):
    """Instrumentation of the `client` fixture's app."""
    return client.app.state.instrumentation


@pytest.fixture
def spans(instrumentation):
    """In-memory span exporter of the `client` fixture's app."""
    return instrumentation.span_exporter
