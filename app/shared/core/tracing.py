from typing import Any, Optional

import structlog
from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter

from app.shared.core.config import get_settings

logger = structlog.get_logger()

_configured = False


def setup_tracing(app: Any = None) -> None:
    """
    Sets up OpenTelemetry tracing for the application.
    Exports over OTLP when an endpoint is configured, otherwise to the console
    (skipped entirely under TESTING).
    """
    global _configured
    settings = get_settings()
    if _configured or settings.TESTING:
        return

    resource = Resource(
        attributes={"service.name": settings.APP_NAME, "env": settings.ENVIRONMENT}
    )
    provider = TracerProvider(resource=resource)
    trace.set_tracer_provider(provider)

    if settings.OTEL_EXPORTER_OTLP_ENDPOINT:
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
            OTLPSpanExporter,
        )

        logger.info("setup_tracing_otlp", endpoint=settings.OTEL_EXPORTER_OTLP_ENDPOINT)
        otlp_exporter = OTLPSpanExporter(
            endpoint=settings.OTEL_EXPORTER_OTLP_ENDPOINT,
            insecure=settings.OTEL_EXPORTER_OTLP_INSECURE,
        )
        provider.add_span_processor(BatchSpanProcessor(otlp_exporter))
    else:
        logger.info("setup_tracing_console")
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    if app is not None:
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

        FastAPIInstrumentor.instrument_app(app)
        logger.info("fastapi_instrumented")

    _configured = True


def get_tracer(name: str) -> trace.Tracer:
    """Returns a tracer instance for manual instrumentation."""
    return trace.get_tracer(name)


def get_current_trace_id() -> Optional[str]:
    span = trace.get_current_span()
    context = span.get_span_context()
    if not context or not context.is_valid:
        return None
    return format(context.trace_id, "032x")
