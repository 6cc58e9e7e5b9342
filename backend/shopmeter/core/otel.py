"""OpenTelemetry tracing for the billing engine.

Tracing is off unless OTEL_EXPORTER_OTLP_ENDPOINT is set. Without a configured
provider the API hands out no-op tracers, so ``billing_span`` is always safe
to call.
"""
import logging
from contextlib import contextmanager

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from shopmeter.core.config import settings

logger = logging.getLogger(__name__)

TRACER_NAME = "shopmeter.billing"
ATTRIBUTE_PREFIX = "shopmeter."

# Scrapes and probes would drown out the billing traffic
UNTRACED_URLS = "health,metrics"


def initialize_otel():
    """Install an OTLP trace provider. Returns False when tracing stays off."""
    endpoint = settings.OTEL_EXPORTER_OTLP_ENDPOINT
    if not endpoint:
        return False

    try:
        provider = TracerProvider(resource=Resource.create({
            "service.name": settings.OTEL_SERVICE_NAME,
            "service.namespace": "shopmeter",
            "deployment.environment": settings.OTEL_ENVIRONMENT,
        }))
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, insecure=True)))
        trace.set_tracer_provider(provider)
    except Exception as e:
        logger.warning(f"Failed to initialize OpenTelemetry: {e}")
        return False
    return True


def get_tracer():
    return trace.get_tracer(TRACER_NAME)


@contextmanager
def billing_span(name: str, **attributes):
    """Open a span named ``name`` with ``shopmeter.*`` attributes.

    None values are skipped. Exceptions are recorded on the span and re-raised.
    """
    with get_tracer().start_as_current_span(name) as span:
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(ATTRIBUTE_PREFIX + key, value)
        yield span


def instrument_fastapi(app):
    FastAPIInstrumentor.instrument_app(app, excluded_urls=UNTRACED_URLS)


def instrument_sqlalchemy(engine):
    """Trace statements issued through ``engine``"""
    try:
        SQLAlchemyInstrumentor().instrument(engine=engine)
    except Exception as e:
        logger.warning(f"Failed to instrument SQLAlchemy: {e}")
        return
    logger.info("SQLAlchemy instrumentation enabled")
