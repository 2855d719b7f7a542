"""OpenTelemetry setup and the spans billing work runs under.

Without OTEL_EXPORTER_OTLP_ENDPOINT nothing is exported; `billing_span` still works against the
no-op tracer provider, so callers never check whether tracing is on.
"""
import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from opentelemetry import metrics, trace
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Span, Status, StatusCode

from subpirate.core.config import settings

logger = logging.getLogger(__name__)

TRACER_NAME = "subpirate.billing"


def _billing_resource() -> Resource:
    return Resource.create({
        "service.name": settings.OTEL_SERVICE_NAME,
        "service.version": "1.0.0",
        "deployment.environment": settings.OTEL_ENVIRONMENT,
        "billing.stripe_mode": "live" if settings.stripe_live_mode else "test",
    })


def initialize_otel(endpoint: Optional[str] = None) -> bool:
    """Install OTLP trace and metric providers. Returns False when no collector is configured."""
    endpoint = endpoint if endpoint is not None else settings.OTEL_EXPORTER_OTLP_ENDPOINT
    if not endpoint:
        return False

    try:
        resource = _billing_resource()

        trace_provider = TracerProvider(resource=resource)
        trace_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, insecure=True)))
        trace.set_tracer_provider(trace_provider)

        metric_reader = PeriodicExportingMetricReader(
            OTLPMetricExporter(endpoint=endpoint, insecure=True),
            export_interval_millis=5000,
            export_timeout_millis=30000
        )
        metrics.set_meter_provider(MeterProvider(resource=resource, metric_readers=[metric_reader]))
        return True
    except Exception as e:
        logger.warning(f"Failed to initialize OpenTelemetry: {e}")
        return False


def setup_otel_logging(endpoint: Optional[str] = None) -> bool:
    """Ship webhook and catalog sync logs to the collector alongside their spans"""
    endpoint = endpoint if endpoint is not None else settings.OTEL_EXPORTER_OTLP_ENDPOINT
    if not endpoint:
        return False

    try:
        from opentelemetry._logs import set_logger_provider
        from opentelemetry.exporter.otlp.proto.grpc._log_exporter import OTLPLogExporter
        from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
        from opentelemetry.sdk._logs.export import BatchLogRecordProcessor

        logger_provider = LoggerProvider(resource=_billing_resource())
        logger_provider.add_log_record_processor(
            BatchLogRecordProcessor(OTLPLogExporter(endpoint=endpoint, insecure=True))
        )
        set_logger_provider(logger_provider)
        logging.getLogger().addHandler(LoggingHandler(level=logging.NOTSET, logger_provider=logger_provider))
        return True
    except Exception as e:
        logger.warning(f"Failed to setup OTEL logging: {e}")
        return False


def instrument_app(app, engine) -> None:
    """Trace incoming requests and the billing database's queries"""
    FastAPIInstrumentor.instrument_app(app)
    try:
        SQLAlchemyInstrumentor().instrument(engine=engine)
    except Exception as e:
        logger.warning(f"Failed to instrument SQLAlchemy: {e}")


@contextmanager
def billing_span(name: str, **attributes) -> Iterator[Span]:
    """Span for one unit of billing work, e.g. a webhook dispatch or a catalog sync run.

    Attributes are prefixed with `billing.`; None values are dropped.
    """
    tracer = trace.get_tracer(TRACER_NAME)
    with tracer.start_as_current_span(name) as span:
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(f"billing.{key}", value)
        yield span


def mark_span_failed(span: Span, outcome: str, error: Optional[str] = None) -> None:
    span.set_attribute("billing.outcome", outcome)
    span.set_status(Status(StatusCode.ERROR, error or outcome))
