"""
Structured Logging with Structlog.

Provides JSON-formatted logs with correlation IDs and context.
Raw credentials never reach a log line: values under sensitive keys are
masked by the redact_secrets processor.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from app.config import settings

REDACTED = "[REDACTED]"

SENSITIVE_KEYS: frozenset[str] = frozenset(
    {
        "password",
        "current_password",
        "new_password",
        "refresh_token",
        "access_token",
        "id_token",
        "token",
        "authorization",
        "push_token",
    }
)


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Add application-level context to all log entries."""
    event_dict["service"] = settings.service_name
    event_dict["version"] = settings.service_version
    return event_dict


def redact_secrets(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask values logged under sensitive keys, including one level of nesting."""
    for key, value in event_dict.items():
        if key.lower() in SENSITIVE_KEYS and value is not None:
            event_dict[key] = REDACTED
        elif isinstance(value, dict):
            event_dict[key] = {
                k: (REDACTED if str(k).lower() in SENSITIVE_KEYS and v is not None else v)
                for k, v in value.items()
            }
    return event_dict


def setup_logging() -> None:
    """
    Configure structured logging with structlog.

    Logs are formatted as JSON for machine parsing with the following structure:
    {
        "event": "refresh_token_rotated",
        "level": "info",
        "timestamp": "2026-01-08T12:00:00.123456Z",
        "logger": "app.services.sessions",
        "service": "identity-core",
        "version": "0.1.0",
        "trace_id": "4bf92f3577b34da6a3ce929d0e0e4736",
        ...additional context
    }
    """
    level = settings.log_level.upper()
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=getattr(logging, level))

    # redact before anything renders the event
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        redact_secrets,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_app_context,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        _renderer(settings.log_format),
    ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _renderer(log_format: str) -> Processor:
    if log_format == "console":
        return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    return structlog.processors.JSONRenderer()


class log_context:
    """
    Context manager for adding structured logging context.

    Usage:
        with log_context(job_id="job-123", user_id="user-456"):
            logger.info("finalizing_account_deletion")
            # All logs within this context will include job_id and user_id
    """

    def __init__(self, **kwargs: Any) -> None:
        self.context = kwargs

    def __enter__(self) -> None:
        """Enter context - bind context variables."""
        structlog.contextvars.bind_contextvars(**self.context)

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Exit context - clear context variables."""
        structlog.contextvars.unbind_contextvars(*self.context.keys())
