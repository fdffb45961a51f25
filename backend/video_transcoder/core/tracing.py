"""OpenTelemetry tracing for the transcoder.

Each request gets a server span from ``RequestObservabilityMiddleware``; a
transcode job runs inside a ``transcode.job`` span with one child span per
pipeline stage (download, probe, encode, upload). Spans opened in the job's
worker thread still nest under the request span because the thread runs in a
copy of the request's context.
"""

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from opentelemetry import trace
from opentelemetry.propagate import set_global_textmap
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator

logger = logging.getLogger(__name__)

TRACER_NAME = "video_transcoder"

_provider: Optional[TracerProvider] = None


def setup_tracing(
    service_name: str,
    service_version: str,
    environment: str = "development",
    otlp_endpoint: Optional[str] = None,
    enable_console_export: bool = False,
) -> None:
    """Install the global tracer provider.

    Args:
        service_name: Reported ``service.name``
        service_version: Reported ``service.version``
        environment: Reported ``deployment.environment``
        otlp_endpoint: Collector endpoint; spans are only kept in-process when unset
        enable_console_export: Also print finished spans to stdout
    """
    global _provider

    provider = TracerProvider(resource=Resource.create({
        SERVICE_NAME: service_name,
        SERVICE_VERSION: service_version,
        "deployment.environment": environment,
    }))

    if otlp_endpoint:
        # Shipped by the optional ``otlp`` extra
        try:
            from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
        except ImportError:
            logger.warning(f"OTLP endpoint {otlp_endpoint} configured but the exporter is not installed")
        else:
            provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint)))
            logger.info(f"Exporting spans to {otlp_endpoint}")

    if enable_console_export:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(provider)
    set_global_textmap(TraceContextTextMapPropagator())
    _provider = provider


def current_trace_ids() -> tuple[Optional[str], Optional[str]]:
    """Hex trace and span ids of the active span, or ``(None, None)`` outside one."""
    context = trace.get_current_span().get_span_context()
    if not context.is_valid:
        return None, None
    return format(context.trace_id, "032x"), format(context.span_id, "016x")


@contextmanager
def create_span(
    name: str,
    attributes: Optional[dict] = None,
    kind: trace.SpanKind = trace.SpanKind.INTERNAL,
) -> Iterator[trace.Span]:
    """Run the block inside a new child span.

    An exception leaving the block is recorded on the span and marks it failed.
    """
    tracer = trace.get_tracer(TRACER_NAME)
    with tracer.start_as_current_span(name, kind=kind, attributes=attributes or {}) as span:
        yield span


def shutdown_tracing() -> None:
    """Flush buffered spans and stop the exporters."""
    global _provider
    if _provider is not None:
        _provider.shutdown()
        _provider = None
