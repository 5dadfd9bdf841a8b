"""
Distributed Tracing with OpenTelemetry.

Traces HTTP requests, local store queries and outbound provider calls.
"""

from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Span, Tracer

from tokengate.config import settings


def setup_tracing() -> None:
    """
    Configure OpenTelemetry tracing with OTLP export.

    No-op unless TOKENGATE_TRACING_ENABLED is set.
    """
    if not settings.tracing_enabled:
        return

    resource = Resource.create(
        {
            "service.name": settings.service_name,
            "service.version": settings.api_version,
        }
    )
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(
        BatchSpanProcessor(
            OTLPSpanExporter(
                endpoint=settings.otlp_endpoint,
                insecure=settings.otlp_insecure,
            )
        )
    )
    trace.set_tracer_provider(provider)


def instrument_fastapi(app: Any) -> None:
    """Instrument the FastAPI application. Must be called after app creation."""
    if not settings.tracing_enabled:
        return

    FastAPIInstrumentor.instrument_app(app)


def instrument_sqlalchemy(engine: Any) -> None:
    """Instrument the async engine backing the local store."""
    if not settings.tracing_enabled:
        return

    SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)


def get_tracer(name: str) -> Tracer:
    """Get a tracer instance for manual span creation."""
    return trace.get_tracer(name)


def add_span_attributes(span: Span, **attributes: Any) -> None:
    """
    Add attributes to a span, skipping None values.

    Usage:
        add_span_attributes(span, provider="gemini", path="shared")
    """
    for key, value in attributes.items():
        if value is None:
            continue
        if isinstance(value, (str, int, float, bool)):
            span.set_attribute(key, value)
        else:
            span.set_attribute(key, str(value))


class trace_operation:
    """
    Context manager for creating traced operations.

    Usage:
        with trace_operation("provider_call", provider="gemini") as span:
            span.set_attribute("tokens_used", 120)
    """

    def __init__(self, operation_name: str, **attributes: Any) -> None:
        self.operation_name = operation_name
        self.attributes = attributes
        self.tracer = get_tracer("tokengate.operations")
        self._manager: Any = None

    def __enter__(self) -> Span:
        """Start span and make it current."""
        self._manager = self.tracer.start_as_current_span(self.operation_name)
        span: Span = self._manager.__enter__()
        add_span_attributes(span, **self.attributes)
        return span

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """End span; an escaping exception is recorded and marks the span as error."""
        self._manager.__exit__(exc_type, exc_val, exc_tb)
