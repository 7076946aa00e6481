"""CLI common boilerplate: logging setup, startup checks, shutdown reporting.

Import this module BEFORE any other project imports in main_*.py files.
Module-level code puts the project root on sys.path.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING

# Ensure project root is on sys.path for imports
sys.path.insert(0, str(Path(__file__).parent))

import config
from observability.log_handler import SqlServerLogHandler

if TYPE_CHECKING:
    from connections import Transactor

logger = logging.getLogger(__name__)


def setup_logging(run_id: str | None = None, path: str | None = None) -> SqlServerLogHandler | None:
    """Configure logging: StreamHandler, plus SqlServerLogHandler when LOG_DB is set.

    Args:
        run_id: Push run id for log context.
        path: Destination path for log context.

    Returns:
        The SqlServerLogHandler instance (for flush/context updates), or None
        when database logging is disabled.
    """
    level = getattr(logging, config.LOG_LEVEL.upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(level)

    # Console handler
    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)
    console.setFormatter(
        logging.Formatter("%(asctime)s [%(levelname)s] %(name)s - %(message)s")
    )
    root.addHandler(console)

    if not config.LOG_DB:
        return None

    # SQL Server log handler
    sql_handler = SqlServerLogHandler(level=max(level, logging.INFO))
    if run_id is not None:
        sql_handler.set_context(run_id=run_id, path=path)
    root.addHandler(sql_handler)

    return sql_handler


def startup_checks(xa: Transactor, cleanup_staging: bool = False) -> None:
    """Optionally sweep stale staging tables left by crashed runs."""
    if not cleanup_staging:
        return
    from schema.staging_cleanup import cleanup_orphaned_staging_tables
    cleanup_orphaned_staging_tables(xa)


def log_connection_overhead() -> None:
    """Log cumulative connection overhead at push end."""
    from connections import get_connection_overhead
    total_ms, count = get_connection_overhead()
    if count > 0:
        logger.info(
            "Connection overhead: %.1f ms total across %d connections (%.1f ms avg)",
            total_ms, count, total_ms / count,
        )
