"""OpenTelemetry setup helpers used by the gift and delivery services."""

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from giftflow.common.config import settings


def setup_tracing(service_name: str) -> None:
    """Register a tracer provider exporting over OTLP HTTP, unless tracing is off."""

    if not settings.tracing_enabled:
        return
    resource = Resource.create({"service.name": service_name})
    provider = TracerProvider(resource=resource)
    exporter = OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint)
    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)


def instrument_app(app: FastAPI) -> None:
    """Attach FastAPI auto-instrumentation for request spans."""

    if settings.tracing_enabled:
        FastAPIInstrumentor.instrument_app(app)


def get_tracer(name: str) -> trace.Tracer:
    # Falls back to the no-op provider when tracing was never set up.
    return trace.get_tracer(name)
