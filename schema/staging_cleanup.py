"""Orphaned staging table cleanup.

Every push creates ``<schema>.precog_temp_<destination>`` and drops it on exit.
If the process is killed between CREATE and the final DROP, the staging table
persists until the next push to the same destination recreates it. This module
sweeps such leftovers across the database.

Pushes to other destinations may be running, so only staging tables older than
STAGING_ORPHAN_MIN_AGE_HOURS are considered orphans. The CLI runs the sweep
only when asked (--cleanup-staging).
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import config
from connections import quote_table

if TYPE_CHECKING:
    import pyodbc

    from connections import Transactor

logger = logging.getLogger(__name__)


def staging_like_pattern(prefix: str) -> str:
    """LIKE pattern matching tables that start with ``prefix``.

    '_', '%' and '[' are LIKE wildcards in T-SQL and are escaped with brackets.
    """
    escaped = prefix.replace("[", "[[]").replace("%", "[%]").replace("_", "[_]")
    return escaped + "%"


def _find_staging_tables(cur: pyodbc.Cursor, min_age_hours: int) -> list[tuple[str, str]]:
    cur.execute(
        "SELECT s.name, t.name "
        "FROM sys.tables t "
        "INNER JOIN sys.schemas s ON s.schema_id = t.schema_id "
        "WHERE t.name LIKE ? "
        "AND t.create_date <= DATEADD(HOUR, -?, GETDATE())",
        staging_like_pattern(config.STAGING_PREFIX),
        min_age_hours,
    )
    return [(schema, name) for schema, name in cur.fetchall()]


def cleanup_orphaned_staging_tables(xa: Transactor, min_age_hours: int | None = None) -> int:
    """Drop leftover staging tables older than ``min_age_hours``.

    Each table is dropped in its own transaction; a failure on one table is
    logged and the rest are still attempted.

    Args:
        xa: Transactor for the target database.
        min_age_hours: Minimum age of a staging table to count as orphaned
            (default STAGING_ORPHAN_MIN_AGE_HOURS).

    Returns:
        Number of staging tables dropped.
    """
    if min_age_hours is None:
        min_age_hours = config.STAGING_ORPHAN_MIN_AGE_HOURS
    if min_age_hours < 0:
        raise ValueError(f"min_age_hours must not be negative, got {min_age_hours}")

    staging_tables = xa.transact(lambda cur: _find_staging_tables(cur, min_age_hours))
    dropped = 0

    for schema, table_name in staging_tables:
        # Verify it matches our prefix
        if not table_name.startswith(config.STAGING_PREFIX):
            continue

        def drop(cur: pyodbc.Cursor, schema: str = schema, table_name: str = table_name) -> None:
            cur.execute(f"DROP TABLE IF EXISTS {quote_table(schema, table_name)}")
            cur.commit()

        try:
            xa.transact(drop)
            logger.info("Dropped orphaned staging table: %s.%s", schema, table_name)
            dropped += 1
        except Exception:
            logger.warning(
                "Failed to drop staging table: %s.%s", schema, table_name, exc_info=True,
            )

    if dropped > 0:
        logger.info("Cleaned up %d orphaned staging table(s)", dropped)
    else:
        logger.debug("No orphaned staging tables older than %d hour(s)", min_age_hours)

    return dropped
