"""Resumable incremental reads from a SQL Server table.

The query selects the requested columns and, when an offset is given, filters
with the offset predicate so a read resumes at the last acknowledged key.
Results come back through ConnectorX as one polars DataFrame and are handed to
the caller in RESULT_CHUNK_SIZE-row slices.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Iterator, Sequence

import config
from connections import connectorx_uri, quote_identifier, quote_table
from extract import cx_read_sql_safe
from extract.offsets import offset_fragment
from orchestration.destination import resolve_destination

if TYPE_CHECKING:
    import polars as pl

    from extract.offsets import Offset

logger = logging.getLogger(__name__)


def build_incremental_query(
    schema: str,
    table: str,
    columns: Sequence[str] = (),
    offset: Offset | None = None,
) -> str:
    """Build ``SELECT ... FROM [schema].[table] [WHERE <offset predicate>]``.

    An empty column list selects every column.

    Raises:
        UnsupportedOffsetError: The offset cannot be expressed as a predicate.
    """
    select_list = ", ".join(quote_identifier(c) for c in columns) if columns else "*"
    query = f"SELECT {select_list} FROM {quote_table(schema, table)}"
    if offset is not None:
        query += f" WHERE {offset_fragment(offset)}"
    return query


def read_incremental(
    path: str | Sequence[str],
    columns: Sequence[str] = (),
    offset: Offset | None = None,
    *,
    schema: str | None = None,
    database: str | None = None,
    chunk_size: int | None = None,
) -> Iterator[pl.DataFrame]:
    """Read a table (from ``offset`` on, when given) in DataFrame chunks.

    The query is built, and the offset validated, before anything is sent to
    the server.

    Args:
        path: ``table`` or ``schema/table``.
        columns: Columns to read; empty reads all of them.
        offset: Resume point, or None for a full read.
        schema: Schema for single-segment paths (config.DEFAULT_SCHEMA).
        database: Source database (config.TARGET_DB).
        chunk_size: Rows per yielded chunk (config.RESULT_CHUNK_SIZE).
    """
    source = resolve_destination(path, schema)
    query = build_incremental_query(source.schema, source.table, columns, offset)
    size = chunk_size or config.RESULT_CHUNK_SIZE
    return _read_chunks(query, source.path, database, size)


def _read_chunks(
    query: str,
    path: str,
    database: str | None,
    chunk_size: int,
) -> Iterator[pl.DataFrame]:
    logger.debug("Incremental read %s: %s", path, query)
    df = cx_read_sql_safe(
        conn=connectorx_uri(database),
        query=query,
        context=f"read {path}",
    )
    logger.info("Read %d rows from %s", df.height, path)
    yield from df.iter_slices(n_rows=chunk_size)
