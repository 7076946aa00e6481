"""DDL helpers for destination and staging tables.

Every helper runs on the caller's cursor inside the caller's transaction and
never commits. Existence checks use INFORMATION_SCHEMA.TABLES / sys.indexes so
that create/drop/truncate are conditional and safe to re-run after a retry.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Sequence

import config
from connections import quote_identifier, quote_table

if TYPE_CHECKING:
    import pyodbc

    from schema.vendor_types import Column

logger = logging.getLogger(__name__)

_MAX_INDEX_NAME_LENGTH = 128


def table_exists(cur: pyodbc.Cursor, schema: str, table: str) -> bool:
    """Catalog probe: True if schema.table exists (COUNT returns 0 or 1)."""
    cur.execute(
        "SELECT COUNT(*) FROM INFORMATION_SCHEMA.TABLES "
        "WHERE TABLE_SCHEMA = ? AND TABLE_NAME = ?",
        schema, table,
    )
    return cur.fetchone()[0] > 0


def column_specs(columns: Sequence[Column]) -> str:
    """Render the parenthesized column list for CREATE TABLE."""
    if not columns:
        raise ValueError("At least one column is required to create a table")
    return "(" + ", ".join(
        f"{quote_identifier(c.name)} {c.tpe.render()} NULL" for c in columns
    ) + ")"


def create_table(cur: pyodbc.Cursor, schema: str, table: str, columns: Sequence[Column]) -> None:
    cur.execute(f"CREATE TABLE {quote_table(schema, table)} {column_specs(columns)}")
    logger.info("Created table %s.%s (%d columns)", schema, table, len(columns))


def create_table_if_not_exists(
    cur: pyodbc.Cursor,
    schema: str,
    table: str,
    columns: Sequence[Column],
) -> bool:
    """Create schema.table unless it exists. Returns True if it was created."""
    if table_exists(cur, schema, table):
        logger.debug("Table %s.%s already exists", schema, table)
        return False
    create_table(cur, schema, table, columns)
    return True


def drop_table_if_exists(cur: pyodbc.Cursor, schema: str, table: str) -> None:
    cur.execute(f"DROP TABLE IF EXISTS {quote_table(schema, table)}")
    logger.debug("Dropped table %s.%s (if it existed)", schema, table)


def truncate_table(
    cur: pyodbc.Cursor,
    schema: str,
    table: str,
    columns: Sequence[Column],
) -> None:
    """Empty schema.table in place, creating it when missing.

    TRUNCATE keeps indexes, constraints and permissions of an existing
    destination, unlike drop-and-recreate.
    """
    if table_exists(cur, schema, table):
        cur.execute(f"TRUNCATE TABLE {quote_table(schema, table)}")
        logger.info("Truncated %s.%s", schema, table)
    else:
        create_table(cur, schema, table, columns)


def index_name(table: str) -> str:
    """Secondary index name for a destination/staging table."""
    return f"{config.INDEX_PREFIX}{table}"[:_MAX_INDEX_NAME_LENGTH]


def create_index(
    cur: pyodbc.Cursor,
    schema: str,
    table: str,
    name: str,
    column: str,
) -> bool:
    """Create a nonclustered index on one column unless it already exists.

    Returns:
        True if the index was created, False if it already existed.
    """
    q_table = quote_table(schema, table)
    cur.execute(
        "SELECT COUNT(*) FROM sys.indexes "
        "WHERE object_id = OBJECT_ID(?) AND name = ?",
        q_table, name,
    )
    if cur.fetchone()[0] > 0:
        logger.debug("Index %s already exists on %s.%s", name, schema, table)
        return False

    cur.execute(
        f"CREATE INDEX {quote_identifier(name)} ON {q_table} ({quote_identifier(column)})"
    )
    logger.info("Created index %s on %s.%s (%s)", name, schema, table, column)
    return True
