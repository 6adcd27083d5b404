"""
Observability module - Logging, Metrics, and Tracing.
"""

from app.observability.logging import log_context, setup_logging
from app.observability.metrics import metrics
from app.observability.tracing import audit_trace_id, setup_tracing, trace_operation

__all__ = [
    "log_context",
    "setup_logging",
    "metrics",
    "audit_trace_id",
    "setup_tracing",
    "trace_operation",
]
