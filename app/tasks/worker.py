"""
ARQ worker configuration and job definitions.

Run worker with: arq app.tasks.worker.WorkerSettings
"""

from typing import Any

from arq.connections import RedisSettings
from arq.worker import func
from prometheus_client import start_http_server
from structlog import get_logger

from app.config import settings
from app.container import build_identity_services
from app.db.migration_runner import run_migrations
from app.observability.logging import setup_logging
from app.observability.tracing import setup_tracing
from app.tasks.account_deletion_jobs import finalize_account_deletion

logger = get_logger(__name__)


async def startup(ctx: dict[str, Any]) -> None:
    """Worker startup - wire services shared by all jobs."""
    setup_logging()
    setup_tracing()
    if settings.metrics_enabled:
        start_http_server(settings.metrics_port)
    if settings.run_migrations_on_startup and not settings.use_memory_store:
        await run_migrations()

    ctx["services"] = build_identity_services(settings)
    logger.info("arq_worker_starting", service=settings.service_name)


async def shutdown(ctx: dict[str, Any]) -> None:
    """Worker shutdown - cleanup resources."""
    services = ctx.get("services")
    if services is not None:
        await services.close()
    logger.info("arq_worker_shutdown")


class WorkerSettings:
    """ARQ worker configuration."""

    redis_settings = RedisSettings.from_dsn(settings.redis_url)

    # Worker behavior
    max_jobs = 10
    job_timeout = 300  # 5 minutes max per job

    # Lifecycle hooks
    on_startup = startup
    on_shutdown = shutdown

    # keep_result=0 frees the stable job id as soon as a run completes
    functions = [
        func(finalize_account_deletion, max_tries=5, keep_result=0),
    ]
