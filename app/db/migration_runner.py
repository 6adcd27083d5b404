"""
Migration Runner - Runs Alembic migrations at worker startup.

alembic/env.py drives its own event loop, so the upgrade runs in a worker
thread when called from async code.
"""

import asyncio
from pathlib import Path

from sqlalchemy.engine import Connection
from structlog import get_logger

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from app.db.session import get_engine

logger = get_logger(__name__)

# Path to alembic.ini relative to project root
ALEMBIC_INI_PATH = Path(__file__).parent.parent.parent / "alembic.ini"


def _current_revision(connection: Connection) -> str | None:
    return MigrationContext.configure(connection).get_current_revision()


def _head_revision(alembic_cfg: Config) -> str | None:
    return ScriptDirectory.from_config(alembic_cfg).get_current_head()


async def run_migrations() -> None:
    """
    Upgrade the schema to head when migrations are pending.

    Raises:
        RuntimeError: migration failed; the worker must not start
    """
    if not ALEMBIC_INI_PATH.exists():
        logger.warning("alembic_config_missing", path=str(ALEMBIC_INI_PATH))
        return

    alembic_cfg = Config(str(ALEMBIC_INI_PATH))
    try:
        async with get_engine().connect() as conn:
            current = await conn.run_sync(_current_revision)
        head = _head_revision(alembic_cfg)

        if current == head:
            logger.info("database_schema_up_to_date", revision=current)
            return

        logger.info("database_migration_started", current=current, head=head)
        await asyncio.to_thread(command.upgrade, alembic_cfg, "head")
        logger.info("database_migration_complete", revision=head)
    except Exception as e:
        logger.error("database_migration_failed", error=str(e))
        raise RuntimeError(f"Database migration failed: {e}") from e
