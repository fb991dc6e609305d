"""Optional OpenTelemetry tracing, enabled with OTEL_ENABLED."""
import logging
import os

from creditledger.config import _env_bool

logger = logging.getLogger(__name__)


def setup_otel(app) -> bool:
    """Instrument FastAPI, SQLAlchemy, Celery and outbound Stripe calls.

    Returns whether tracing was switched on.
    """
    if not _env_bool("OTEL_ENABLED"):
        return False
    try:
        from opentelemetry import trace
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import (
            OTLPSpanExporter,
        )
        from opentelemetry.instrumentation.celery import CeleryInstrumentor
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
        from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
        from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor

        from creditledger.db import engine
    except ImportError:
        logger.exception("OpenTelemetry dependencies not available; install the otel extra.")
        return False

    resource = Resource.create(
        {
            "service.name": os.getenv("OTEL_SERVICE_NAME", "credit_ledger"),
            "deployment.environment": os.getenv("ENVIRONMENT", "dev"),
        }
    )
    provider = TracerProvider(resource=resource)
    trace.set_tracer_provider(provider)

    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    exporter = OTLPSpanExporter(endpoint=endpoint) if endpoint else OTLPSpanExporter()
    provider.add_span_processor(BatchSpanProcessor(exporter))

    FastAPIInstrumentor.instrument_app(app, excluded_urls="/health,/health/ready,/metrics")
    SQLAlchemyInstrumentor().instrument(engine=engine)
    CeleryInstrumentor().instrument()
    HTTPXClientInstrumentor().instrument()
    logger.info("OpenTelemetry tracing enabled")
    return True
