"""Staging table lifecycle and DML for staged pushes.

A push lands row batches in ``<schema>.precog_temp_<destination>`` and then
reconciles them into the destination (see orchestration/write_modes.py).

All methods run on the caller's cursor inside the caller's transaction and
never commit. DDL is guarded by existence checks so every step can be re-run
after a rolled-back retry attempt:
  - drop()     only emits DROP TABLE when the staging table exists
  - create()   only emits CREATE TABLE when it does not
  - truncate() only emits TRUNCATE TABLE when it exists

Identifiers always go through quote_identifier()/quote_table(). The raw
destination name is only ever passed as a bound parameter (sp_rename).

Concurrent pushes to the same destination share a staging name and are not
supported; serializing them is the caller's job.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Sequence

import config
from connections import quote_identifier, quote_table
from schema.table_creator import column_specs, create_index, index_name, table_exists

if TYPE_CHECKING:
    import pyodbc

    from schema.vendor_types import Column

logger = logging.getLogger(__name__)


def insert_rows(
    cur: pyodbc.Cursor,
    schema: str,
    table: str,
    columns: Sequence[Column],
    rows: Sequence[tuple],
) -> int:
    """Parameterized bulk INSERT of pre-rendered rows (see data_load/render.py)."""
    if not rows:
        return 0
    column_list = ", ".join(quote_identifier(c.name) for c in columns)
    placeholders = ", ".join("?" for _ in columns)
    cur.fast_executemany = True
    cur.executemany(
        f"INSERT INTO {quote_table(schema, table)} ({column_list}) VALUES ({placeholders})",
        list(rows),
    )
    return len(rows)


@dataclass(frozen=True)
class StagingTable:
    """Staging table for one destination table.

    Attributes:
        schema: Raw schema name shared with the destination.
        destination: Raw destination table name.
        columns: Destination columns, in INSERT order.
        id_column: Upsert key column, if any.
        filter_column: Column indexed on the staging table and used by the
            temp-table flow's append() to replace matching destination rows.
    """

    schema: str
    destination: str
    columns: tuple[Column, ...]
    id_column: str | None = None
    filter_column: str | None = None

    @property
    def name(self) -> str:
        return f"{config.STAGING_PREFIX}{self.destination}"

    @property
    def qualified_name(self) -> str:
        return quote_table(self.schema, self.name)

    @property
    def destination_name(self) -> str:
        return quote_table(self.schema, self.destination)

    @property
    def column_list(self) -> str:
        return ", ".join(quote_identifier(c.name) for c in self.columns)

    def exists(self, cur: pyodbc.Cursor) -> bool:
        return table_exists(cur, self.schema, self.name)

    def drop(self, cur: pyodbc.Cursor) -> None:
        if self.exists(cur):
            cur.execute(f"DROP TABLE {self.qualified_name}")
            logger.debug("Dropped staging table %s.%s", self.schema, self.name)

    def create(self, cur: pyodbc.Cursor) -> None:
        if not self.exists(cur):
            cur.execute(f"CREATE TABLE {self.qualified_name} {column_specs(self.columns)}")
            logger.debug("Created staging table %s.%s", self.schema, self.name)
        if self.filter_column is not None:
            create_index(
                cur, self.schema, self.name,
                index_name(self.destination), self.filter_column,
            )

    def truncate(self, cur: pyodbc.Cursor) -> None:
        if self.exists(cur):
            cur.execute(f"TRUNCATE TABLE {self.qualified_name}")

    def ingest(self, cur: pyodbc.Cursor, rows: Sequence[tuple]) -> int:
        staged = insert_rows(cur, self.schema, self.name, self.columns, rows)
        logger.debug("Staged %d rows into %s.%s", staged, self.schema, self.name)
        return staged

    def insert_into(self, cur: pyodbc.Cursor) -> int:
        """INSERT every staged row into the destination."""
        cur.execute(
            f"INSERT INTO {self.destination_name} ({self.column_list}) "
            f"SELECT {self.column_list} FROM {self.qualified_name}"
        )
        inserted = cur.rowcount
        logger.info("Inserted %d rows into %s.%s", inserted, self.schema, self.destination)
        return inserted

    def rename_to_destination(self, cur: pyodbc.Cursor) -> None:
        """Rename the staging table in place so it becomes the destination.

        The caller must have dropped the old destination in the same transaction.
        """
        cur.execute("EXEC sp_rename ?, ?", self.qualified_name, self.destination)
        logger.info(
            "Renamed %s.%s to %s.%s", self.schema, self.name, self.schema, self.destination,
        )

    def delete_matching_keys(self, cur: pyodbc.Cursor, key_column: str) -> int:
        """Delete destination rows whose key also appears in the staging table."""
        q_key = quote_identifier(key_column)
        cur.execute(
            f"DELETE target FROM {self.destination_name} target "
            f"INNER JOIN {self.qualified_name} temp "
            f"ON target.{q_key} = temp.{q_key}"
        )
        deleted = cur.rowcount
        logger.debug(
            "Deleted %d rows from %s.%s matching staged %s values",
            deleted, self.schema, self.destination, key_column,
        )
        return deleted

    def delete_keys(self, cur: pyodbc.Cursor, key_column: str, keys: Sequence[object]) -> int:
        """Delete destination rows for explicitly deleted keys."""
        if not keys:
            return 0
        cur.fast_executemany = True
        cur.executemany(
            f"DELETE FROM {self.destination_name} WHERE {quote_identifier(key_column)} = ?",
            [(k,) for k in keys],
        )
        logger.debug(
            "Deleted up to %d keys from %s.%s", len(keys), self.schema, self.destination,
        )
        return len(keys)
