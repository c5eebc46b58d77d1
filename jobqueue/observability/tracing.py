"""
OpenTelemetry tracing setup.

Workers and the sweeper open one span per queue operation, named by the
SPAN_* constants (claim_job, execute_job, ack_job, fail_job, prune_jobs)
and tagged with job_id, kind, attempt or worker_id. SQL issued inside a
span shows up as child spans once the engine is instrumented.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace import Span, Tracer
from sqlalchemy.ext.asyncio import AsyncEngine

from jobqueue import __version__
from jobqueue.config import get_settings

# Set by setup_tracing() in worker and sweeper processes
_tracer: Tracer | None = None


def setup_tracing(enable_console_export: bool = False) -> Tracer:
    """
    Install the process-wide tracer provider.

    Without otel_exporter_otlp_endpoint the provider records spans but
    exports nothing, which keeps a worker on a laptop quiet.

    Args:
        enable_console_export: Also print finished spans, for debugging.

    Returns:
        Tracer: The queue tracer.
    """
    global _tracer

    settings = get_settings()
    provider = TracerProvider(
        resource=Resource.create(
            {
                "service.name": settings.otel_service_name,
                "service.version": __version__,
            }
        )
    )

    if settings.otel_exporter_otlp_endpoint:
        provider.add_span_processor(
            BatchSpanProcessor(
                OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint, insecure=True)
            )
        )
    if enable_console_export:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(provider)
    _tracer = trace.get_tracer(settings.otel_service_name)
    return _tracer


def instrument_sqlalchemy(engine: AsyncEngine) -> None:
    """
    Trace the statements the store runs (claim selects, guarded updates).

    The instrumentor hooks the synchronous engine that the async engine
    wraps.
    """
    SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)


def get_tracer() -> Tracer:
    """
    Get the queue tracer.

    Before setup_tracing() this is the API tracer, a no-op until a provider
    is installed, so store and worker code can open spans unconditionally.
    """
    if _tracer is None:
        return trace.get_tracer(get_settings().otel_service_name)
    return _tracer


@contextmanager
def job_span(name: str, **attributes: Any) -> Iterator[Span]:
    """
    Open a span for one queue operation.

    Args:
        name: One of the SPAN_* constants.
        **attributes: Span attributes such as job_id or worker_id; None
            values are skipped.

    Yields:
        Span: The current span, for attributes only known afterwards.
    """
    with get_tracer().start_as_current_span(name) as span:
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(key, value)
        yield span
