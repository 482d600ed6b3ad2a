"""
Structured logging and tracing setup.

Loggers come from structlog; every log line carries the current OpenTelemetry
trace and span ids when a span is active. Spans are exported over OTLP only
when OTEL_EXPORTER_OTLP_ENDPOINT is set.
"""

import sys
import logging
import os

import structlog
from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource


def add_otel_trace_info(logger, method_name, event_dict):
    """structlog processor: stamp the active span's ids onto the event."""
    ctx = trace.get_current_span().get_span_context()
    if ctx.is_valid:
        event_dict["trace_id"] = trace.format_trace_id(ctx.trace_id)
        event_dict["span_id"] = trace.format_span_id(ctx.span_id)
    return event_dict


def configure_logging(level="INFO"):
    """
    Configures structured logging with OpenTelemetry integration.

    Console rendering on a TTY, JSON lines otherwise. Everything goes to
    stderr.
    """
    otel_endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")
    if otel_endpoint:
        resource = Resource(attributes={"service.name": "jupytercon"})
        provider = TracerProvider(resource=resource)
        processor = BatchSpanProcessor(OTLPSpanExporter(endpoint=otel_endpoint))
        provider.add_span_processor(processor)
        trace.set_tracer_provider(provider)

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        add_otel_trace_info,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if sys.stderr.isatty():
        processors = shared_processors + [structlog.dev.ConsoleRenderer()]
    else:
        processors = shared_processors + [structlog.processors.JSONRenderer()]

    numeric_level = logging.getLevelName(str(level).upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    # Route stdlib logging (httpx, websockets) to the same stream
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=numeric_level)

    if otel_endpoint:
        structlog.get_logger(__name__).info(
            f"[OTEL] Tracing enabled. Exporting to {otel_endpoint}"
        )

    return structlog.get_logger()


def get_logger(name=None):
    return structlog.get_logger(name)


def get_tracer(name=None):
    """Returns an OpenTelemetry tracer instance."""
    return trace.get_tracer(name if name else __name__)
