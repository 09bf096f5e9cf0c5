"""
OpenTelemetry tracing setup.

Components open spans through ``get_tracer()``. Until ``setup_tracing`` runs
the global provider is the API's no-op one, so spans cost nothing.
"""

import logging
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace import Tracer

from jobrelay import __version__
from jobrelay.config import Settings, get_settings

logger = logging.getLogger(__name__)

TRACER_NAME = "jobrelay"


def setup_tracing(settings: Settings | None = None, console: bool = False) -> TracerProvider:
    """
    Install a tracer provider exporting over OTLP.

    Args:
        settings: Application settings. Defaults to the cached settings.
        console: Also print finished spans, for local debugging.

    Returns:
        The installed provider; call ``shutdown()`` on it to flush spans.
    """
    settings = settings or get_settings()
    provider = TracerProvider(
        resource=Resource.create(
            {"service.name": settings.otel_service_name, "service.version": __version__}
        )
    )
    try:
        exporter = OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint, insecure=True)
    except Exception as e:
        logger.warning(f"OTLP exporter unavailable, spans will not be exported: {e}")
    else:
        provider.add_span_processor(BatchSpanProcessor(exporter))
    if console:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(provider)
    logger.info(
        "Tracing enabled",
        extra={"endpoint": settings.otel_exporter_otlp_endpoint, "service": settings.otel_service_name},
    )
    return provider


def instrument_sqlalchemy(engine: Any) -> None:
    """Trace the statements of a SQLAlchemy engine (``AsyncEngine.sync_engine``)."""
    SQLAlchemyInstrumentor().instrument(engine=engine)


def get_tracer() -> Tracer:
    return trace.get_tracer(TRACER_NAME, __version__)
