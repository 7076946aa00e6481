"""Write-mode reconciliation: staged rows -> destination table.

Two different enums live here and must not be conflated:

  WriteMode  the destination-table lifecycle the caller asked for
             (CREATE / REPLACE / TRUNCATE / APPEND).
  PushMode   the upsert cursor of a streaming session: REPLACE means the next
             commit is the session's first and runs the full WriteMode
             reconciliation; APPEND means later commits, which only merge.

Reconciliation for each WriteMode, run once staging holds everything to persist:

  CREATE    CREATE destination -> id index (if id column set and different from
            the filter column, before the load) -> INSERT SELECT -> TRUNCATE staging
  REPLACE   DROP destination IF EXISTS -> sp_rename staging to destination ->
            recreate an empty staging table for later batches
  TRUNCATE  TRUNCATE destination in place (create when missing) -> INSERT SELECT
            -> TRUNCATE staging
  APPEND    CREATE destination IF NOT EXISTS -> INSERT SELECT -> TRUNCATE staging

Every step either is conditional or is undone by the rollback that precedes a
retry, so a reconciliation unit can be re-run from scratch. The commit is
issued by the caller after reconcile() returns.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import TYPE_CHECKING, Callable, Sequence

from orchestration.destination import AccessDeniedError
from schema.table_creator import (
    create_index,
    create_table,
    create_table_if_not_exists,
    drop_table_if_exists,
    index_name,
    table_exists,
    truncate_table,
)

if TYPE_CHECKING:
    import pyodbc

    from connections import Transactor
    from data_load.temp_table import StagingTable
    from orchestration.destination import Destination
    from schema.vendor_types import Column

logger = logging.getLogger(__name__)


class WriteMode(Enum):
    CREATE = "create"
    REPLACE = "replace"
    TRUNCATE = "truncate"
    APPEND = "append"


class PushMode(Enum):
    REPLACE = "replace"
    APPEND = "append"


def check_write_mode(xa: Transactor, mode: WriteMode, destination: Destination) -> None:
    """Reject a CREATE push when the destination already exists.

    Runs once at session start, before any DDL/DML, and is never retried.

    Raises:
        AccessDeniedError: mode is CREATE and the destination exists.
    """
    if mode is not WriteMode.CREATE:
        return
    exists = xa.transact(lambda cur: table_exists(cur, destination.schema, destination.table))
    if exists:
        raise AccessDeniedError(
            destination.path, "Create mode is set but the table exists already",
        )


def _create_id_index(cur: pyodbc.Cursor, staging: StagingTable) -> None:
    # The filter column is already indexed on staging; skip a duplicate index.
    if staging.id_column is None or staging.id_column == staging.filter_column:
        return
    create_index(
        cur, staging.schema, staging.destination,
        index_name(staging.destination), staging.id_column,
    )


def _reconcile_create(cur: pyodbc.Cursor, staging: StagingTable) -> None:
    create_table(cur, staging.schema, staging.destination, staging.columns)
    _create_id_index(cur, staging)
    staging.insert_into(cur)
    staging.truncate(cur)


def _reconcile_replace(cur: pyodbc.Cursor, staging: StagingTable) -> None:
    drop_table_if_exists(cur, staging.schema, staging.destination)
    staging.rename_to_destination(cur)
    staging.create(cur)


def _reconcile_truncate(cur: pyodbc.Cursor, staging: StagingTable) -> None:
    truncate_table(cur, staging.schema, staging.destination, staging.columns)
    staging.insert_into(cur)
    staging.truncate(cur)


def _reconcile_append(cur: pyodbc.Cursor, staging: StagingTable) -> None:
    create_table_if_not_exists(cur, staging.schema, staging.destination, staging.columns)
    staging.insert_into(cur)
    staging.truncate(cur)


_RECONCILERS: dict[WriteMode, Callable[[pyodbc.Cursor, StagingTable], None]] = {
    WriteMode.CREATE: _reconcile_create,
    WriteMode.REPLACE: _reconcile_replace,
    WriteMode.TRUNCATE: _reconcile_truncate,
    WriteMode.APPEND: _reconcile_append,
}


def reconcile(mode: WriteMode, cur: pyodbc.Cursor, staging: StagingTable) -> None:
    """Persist everything staged into the destination according to ``mode``."""
    logger.info(
        "Reconciling %s.%s into %s.%s (mode=%s)",
        staging.schema, staging.name, staging.schema, staging.destination, mode.value,
    )
    _RECONCILERS[mode](cur, staging)


def apply_increment(cur: pyodbc.Cursor, staging: StagingTable, key_column: str | None) -> None:
    """Merge staged rows into an already-reconciled destination.

    Rows whose key appears in staging are replaced, the rest are inserted.
    Without a key column this is a plain append.
    """
    if key_column is not None:
        staging.delete_matching_keys(cur, key_column)
    staging.insert_into(cur)
    staging.truncate(cur)


def _prepare_create(cur: pyodbc.Cursor, schema: str, table: str, columns: Sequence[Column]) -> None:
    create_table(cur, schema, table, columns)


def _prepare_replace(cur: pyodbc.Cursor, schema: str, table: str, columns: Sequence[Column]) -> None:
    drop_table_if_exists(cur, schema, table)
    create_table(cur, schema, table, columns)


def _prepare_append(cur: pyodbc.Cursor, schema: str, table: str, columns: Sequence[Column]) -> None:
    create_table_if_not_exists(cur, schema, table, columns)


_PREPARERS: dict[WriteMode, Callable[[pyodbc.Cursor, str, str, Sequence[Column]], None]] = {
    WriteMode.CREATE: _prepare_create,
    WriteMode.REPLACE: _prepare_replace,
    WriteMode.TRUNCATE: truncate_table,
    WriteMode.APPEND: _prepare_append,
}


def prepare_destination(
    mode: WriteMode,
    cur: pyodbc.Cursor,
    destination: Destination,
    columns: Sequence[Column],
) -> None:
    """Get the destination ready to receive rows directly (no staging table)."""
    logger.info(
        "Preparing %s.%s for direct load (mode=%s)",
        destination.schema, destination.table, mode.value,
    )
    _PREPARERS[mode](cur, destination.schema, destination.table, columns)
