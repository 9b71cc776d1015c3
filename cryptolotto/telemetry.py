"""Tracing for the ledger service.

Spans go to the OTLP collector. Outbound provider calls (httpx) and event
publishing (redis) are instrumented, and log records carry the active trace
and span ids so the JSON logs can be joined to traces.
"""
import logging
from typing import Optional

from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource, SERVICE_NAME, SERVICE_VERSION, DEPLOYMENT_ENVIRONMENT
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.instrumentation.redis import RedisInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor

from .config import Settings

logger = logging.getLogger(__name__)

# Probes and scrapes would drown out the request traces
UNTRACED_URLS = "health/live,health/ready,metrics"


def setup_telemetry(settings: Settings, service_version: str = "1.0.0") -> Optional[TracerProvider]:
    resource = Resource.create({
        SERVICE_NAME: settings.service_name,
        SERVICE_VERSION: service_version,
        DEPLOYMENT_ENVIRONMENT: settings.deployment_env,
        "service.namespace": "cryptolotto",
    })
    provider = TracerProvider(resource=resource)

    try:
        exporter = OTLPSpanExporter(endpoint=settings.otlp_endpoint, insecure=True)
    except Exception as e:
        logger.warning(f"Failed to initialize OpenTelemetry: {e}")
        return None

    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)

    HTTPXClientInstrumentor().instrument()
    RedisInstrumentor().instrument()
    # Adds otelTraceID / otelSpanID to records; JSONFormatter renders them.
    LoggingInstrumentor().instrument(set_logging_format=False)

    logger.info(f"OpenTelemetry initialized for {settings.service_name}, exporting to {settings.otlp_endpoint}")
    return provider


def instrument_fastapi(app, provider: Optional[TracerProvider] = None):
    try:
        FastAPIInstrumentor.instrument_app(app, tracer_provider=provider, excluded_urls=UNTRACED_URLS)
    except Exception as e:
        logger.warning(f"Failed to instrument FastAPI: {e}")


def shutdown_telemetry(provider: Optional[TracerProvider]):
    """Flush buffered spans on shutdown."""
    if provider is not None:
        provider.shutdown()


def get_tracer(name: str):
    return trace.get_tracer(name)
