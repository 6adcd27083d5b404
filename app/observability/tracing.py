"""
Distributed Tracing with OpenTelemetry.

Spans cover refresh rotation, account deletion finalize jobs and every SQL
statement. The active trace id is also the correlation id stored on audit
rows, so an audit entry can be followed back to the trace that wrote it.
"""

from typing import Any
from uuid import uuid4

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased
from opentelemetry.trace import Span, Status, StatusCode

from app.config import settings

TRACER_NAME = "app.identity"


def setup_tracing() -> None:
    """
    Install the global tracer provider.

    No-op when TRACING_ENABLED is false; spans are then non-recording and
    current_trace_id() returns None.
    """
    if not settings.tracing_enabled:
        return

    provider = TracerProvider(
        resource=Resource.create(
            {
                "service.name": settings.service_name,
                "service.version": settings.service_version,
            }
        ),
        sampler=TraceIdRatioBased(settings.trace_sample_rate),
    )
    provider.add_span_processor(
        BatchSpanProcessor(
            OTLPSpanExporter(endpoint=settings.otlp_endpoint, insecure=settings.otlp_insecure)
        )
    )
    trace.set_tracer_provider(provider)


def instrument_sqlalchemy(engine: Any) -> None:
    """Trace every statement issued through an AsyncEngine."""
    if not settings.tracing_enabled:
        return

    SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)


def current_trace_id() -> str | None:
    """Trace id of the active span as 32 hex chars, or None outside a trace."""
    context = trace.get_current_span().get_span_context()
    if not context.is_valid:
        return None
    return format(context.trace_id, "032x")


def audit_trace_id(explicit: str | None = None) -> str:
    """Correlation id for an audit row: caller's, else the active trace, else fresh."""
    return explicit or current_trace_id() or uuid4().hex


def _set_attributes(span: Span, attributes: dict[str, Any]) -> None:
    for key, value in attributes.items():
        if value is None:
            continue
        if isinstance(value, (str, int, float, bool)):
            span.set_attribute(key, value)
        else:
            span.set_attribute(key, str(value))


class trace_operation:
    """
    Run a block inside a span that becomes the current span.

    Usage:
        with trace_operation("refresh_session", session_id=session_id) as span:
            ...
            span.set_attribute("outcome", "ok")

    An exception leaving the block marks the span as failed and is re-raised.
    """

    def __init__(self, operation_name: str, **attributes: Any) -> None:
        self.operation_name = operation_name
        self.attributes = attributes
        self._span_cm: Any = None

    def __enter__(self) -> Span:
        self._span_cm = trace.get_tracer(TRACER_NAME).start_as_current_span(
            self.operation_name, record_exception=False, set_status_on_exception=False
        )
        span: Span = self._span_cm.__enter__()
        _set_attributes(span, self.attributes)
        return span

    def __exit__(self, exc_type: Any, exc_val: BaseException | None, exc_tb: Any) -> None:
        if exc_val is not None:
            span = trace.get_current_span()
            span.set_status(Status(StatusCode.ERROR, str(exc_val)))
            span.record_exception(exc_val)
        self._span_cm.__exit__(exc_type, exc_val, exc_tb)
