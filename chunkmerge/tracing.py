from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from chunkmerge.config import Settings

_tracer_provider: TracerProvider | None = None


def setup_tracing(app, app_settings: Settings) -> None:
    global _tracer_provider
    if not app_settings.tracing_enabled:
        return

    if _tracer_provider is None:
        resource = Resource.create({SERVICE_NAME: app_settings.tracing_service_name})
        provider = TracerProvider(resource=resource)
        exporter = OTLPSpanExporter(endpoint=app_settings.otlp_endpoint, insecure=app_settings.otlp_insecure)
        provider.add_span_processor(BatchSpanProcessor(exporter))
        trace.set_tracer_provider(provider)
        _tracer_provider = provider

    FastAPIInstrumentor.instrument_app(app, tracer_provider=_tracer_provider)
