"""
Instrumentation Context

Bundles the metric registry, tracer and propagator used by the middleware,
handlers and gRPC interceptors. It is constructed once at startup and passed
to whatever needs it, instead of living in module-level globals, so tests can
build an isolated instance with a private registry and an in-memory span
exporter.

Metrics (prometheus_client):
- echoserver_http_requests_total{response_code,request_method,request_path}
- echoserver_http_request_duration_seconds (histogram, same labels)
- echoserver_http_request_size_bytes (histogram, same labels)
- echoserver_http_response_size_bytes (histogram, same labels)
- echoserver_grpc_requests_total{grpc_code,grpc_service,grpc_method}
- echoserver_grpc_request_duration_seconds (histogram, same labels)
- echoserver_logs_total{level}

Tracing (OpenTelemetry SDK):
- spans are exported over OTLP/gRPC when tracing is enabled, to an injected
  exporter in tests, and nowhere otherwise (ids are still generated so logs
  carry trace_id/span_id)
- W3C TraceContext + Baggage for extraction and outbound injection
"""

import logging
from typing import Mapping, MutableMapping, Optional, Tuple

from opentelemetry import context as otel_context
from opentelemetry import trace
from opentelemetry.baggage.propagation import W3CBaggagePropagator
from opentelemetry.propagators.composite import CompositePropagator
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SimpleSpanProcessor, SpanExporter
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator
from prometheus_client import CollectorRegistry, Counter, Histogram

from utils.settings import Settings

logger = logging.getLogger(__name__)

NAMESPACE = "echoserver"

HTTP_LABELS = ("response_code", "request_method", "request_path")
GRPC_LABELS = ("grpc_code", "grpc_service", "grpc_method")

DURATION_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.075, 0.1, 0.25, 0.5, 0.75, 1, 2.5, 5, 7.5, 10)
SIZE_BUCKETS = (0, 64, 256, 1024, 4096, 16384, 65536, 262144, 1048576, 4194304, 16777216)

SHUTDOWN_TIMEOUT_MILLIS = 3000


class Instrumentation:
    """
    Metric registry, tracer and propagator for one server process.

    Args:
        service_name: service.name resource attribute for spans
        registry: Prometheus registry, a fresh one when omitted
        span_exporter: Exporter receiving finished spans, None to drop them
        batch: Batch spans before export (production) instead of exporting
            each span synchronously (tests)
    """

    def __init__(
        self,
        service_name: str = "echoserver",
        registry: Optional[CollectorRegistry] = None,
        span_exporter: Optional[SpanExporter] = None,
        batch: bool = False,
    ):
        self.registry = registry if registry is not None else CollectorRegistry()

        self.http_requests = Counter(
            "http_requests_total",
            "Number of HTTP requests processed, partitioned by status code, method and path.",
            HTTP_LABELS,
            namespace=NAMESPACE,
            registry=self.registry,
        )
        self.http_request_duration = Histogram(
            "http_request_duration_seconds",
            "Latency of HTTP requests processed, partitioned by status code, method and path.",
            HTTP_LABELS,
            namespace=NAMESPACE,
            buckets=DURATION_BUCKETS,
            registry=self.registry,
        )
        self.http_request_size = Histogram(
            "http_request_size_bytes",
            "Size of HTTP request bodies, partitioned by status code, method and path.",
            HTTP_LABELS,
            namespace=NAMESPACE,
            buckets=SIZE_BUCKETS,
            registry=self.registry,
        )
        self.http_response_size = Histogram(
            "http_response_size_bytes",
            "Size of HTTP responses, partitioned by status code, method and path.",
            HTTP_LABELS,
            namespace=NAMESPACE,
            buckets=SIZE_BUCKETS,
            registry=self.registry,
        )
        self.grpc_requests = Counter(
            "grpc_requests_total",
            "Number of gRPC calls processed, partitioned by status code, service and method.",
            GRPC_LABELS,
            namespace=NAMESPACE,
            registry=self.registry,
        )
        self.grpc_request_duration = Histogram(
            "grpc_request_duration_seconds",
            "Latency of gRPC calls processed, partitioned by status code, service and method.",
            GRPC_LABELS,
            namespace=NAMESPACE,
            buckets=DURATION_BUCKETS,
            registry=self.registry,
        )
        self.log_count = Counter(
            "logs_total",
            "Number of logs, partitioned by log level.",
            ("level",),
            namespace=NAMESPACE,
            registry=self.registry,
        )

        self.span_exporter = span_exporter
        self.tracer_provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
        if span_exporter is not None:
            processor = BatchSpanProcessor(span_exporter) if batch else SimpleSpanProcessor(span_exporter)
            self.tracer_provider.add_span_processor(processor)
        self.tracer = self.tracer_provider.get_tracer("echoserver")

        self.propagator = CompositePropagator([TraceContextTextMapPropagator(), W3CBaggagePropagator()])

    @classmethod
    def from_settings(cls, settings: Settings) -> "Instrumentation":
        """Build the production instrumentation for `settings`."""
        exporter = None
        if settings.tracer_enabled:
            from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter

            exporter = OTLPSpanExporter(endpoint=settings.tracer_address, insecure=True)

        return cls(service_name=settings.tracer_service, span_exporter=exporter, batch=True)

    def extract(self, carrier: Mapping[str, str]) -> otel_context.Context:
        """Continue a remote trace described by incoming headers/metadata."""
        return self.propagator.extract(carrier)

    def inject(self, carrier: MutableMapping[str, str]) -> None:
        """Write the current trace context into outgoing headers/metadata."""
        self.propagator.inject(carrier)

    def record_http(
        self,
        status: int,
        method: str,
        route: str,
        duration: float,
        request_size: int,
        response_size: int,
    ) -> None:
        """Record one HTTP request. Never raises."""
        labels = {"response_code": str(status), "request_method": method, "request_path": route}
        try:
            self.http_requests.labels(**labels).inc()
            self.http_request_duration.labels(**labels).observe(duration)
            self.http_request_size.labels(**labels).observe(request_size)
            self.http_response_size.labels(**labels).observe(response_size)
        except Exception as e:
            logger.warning(f"Failed to record HTTP metrics: {type(e).__name__}: {e}")

    def record_grpc(self, code: str, service: str, method: str, duration: float) -> None:
        """Record one gRPC call. Never raises."""
        labels = {"grpc_code": code, "grpc_service": service, "grpc_method": method}
        try:
            self.grpc_requests.labels(**labels).inc()
            self.grpc_request_duration.labels(**labels).observe(duration)
        except Exception as e:
            logger.warning(f"Failed to record gRPC metrics: {type(e).__name__}: {e}")

    def shutdown(self) -> None:
        """Flush and stop the tracer provider."""
        try:
            self.tracer_provider.force_flush(SHUTDOWN_TIMEOUT_MILLIS)
            self.tracer_provider.shutdown()
        except Exception as e:
            logger.error(f"Graceful shutdown of the tracer provider failed: {e}")


def current_span_ids() -> Tuple[str, str]:
    """Return (trace_id, span_id) hex strings of the active span, or ("", "")."""
    span_context = trace.get_current_span().get_span_context()
    if not span_context.is_valid:
        return "", ""
    return trace.format_trace_id(span_context.trace_id), trace.format_span_id(span_context.span_id)
