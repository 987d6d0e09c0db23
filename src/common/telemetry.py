"""OpenTelemetry helpers."""

from __future__ import annotations

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor


def setup_otel(
    app: FastAPI, service_name: str = "app", endpoint: str | None = None
) -> TracerProvider:
    """Configure OpenTelemetry tracing for a FastAPI app.

    Spans are only exported when ``endpoint`` is given; without it the
    provider still hands out trace ids so logs can be correlated.
    """

    resource = Resource.create({SERVICE_NAME: service_name})
    tracer_provider = TracerProvider(resource=resource)
    if endpoint:
        span_exporter = OTLPSpanExporter(endpoint=endpoint)
        tracer_provider.add_span_processor(BatchSpanProcessor(span_exporter))
    trace.set_tracer_provider(tracer_provider)

    FastAPIInstrumentor().instrument_app(app, tracer_provider=tracer_provider)
    return tracer_provider
