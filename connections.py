"""SQL Server target database connections and transaction boundaries.

Provides pyodbc connections (for DDL/DML, autocommit disabled for pushes),
ConnectorX URIs (for incremental reads), the Transactor that runs a unit of
work inside one transaction, and identifier/literal quoting helpers for safe
dynamic SQL construction.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import TYPE_CHECKING, Callable, Iterator, TypeVar
from urllib.parse import quote_plus

import config

if TYPE_CHECKING:
    import pyodbc

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Cumulative time spent establishing pyodbc connections in this process.
# Query via get_connection_overhead() at the end of a push for observability.
# Not thread-safe; sessions run sequentially.
_connection_time_ms: float = 0.0
_connection_count: int = 0

# ---------------------------------------------------------------------------
# Identifier hygiene: bracket-escape with ]] doubling
# ---------------------------------------------------------------------------

_MAX_IDENTIFIER_LENGTH = 128  # SQL Server sysname limit (matches QUOTENAME())


def quote_identifier(name: str) -> str:
    """Bracket-escape a SQL Server identifier (column, table, schema, index name).

    Equivalent to T-SQL QUOTENAME(): wraps in brackets and doubles any embedded
    closing brackets. Rejects identifiers longer than 128 characters to match
    the sysname limit that QUOTENAME() enforces server-side.

    Args:
        name: Raw identifier as supplied by the platform (never pre-quoted).

    Returns:
        Bracket-escaped identifier (e.g. ``[my_column]``, ``[tricky]]name]``).

    Raises:
        ValueError: If name exceeds 128 characters or is empty.
    """
    if not name:
        raise ValueError("Identifier cannot be empty")
    if len(name) > _MAX_IDENTIFIER_LENGTH:
        raise ValueError(
            f"Identifier exceeds {_MAX_IDENTIFIER_LENGTH} characters "
            f"(len={len(name)}): {name[:50]}..."
        )
    return f"[{name.replace(']', ']]')}]"


def quote_table(*parts: str) -> str:
    """Bracket-escape a qualified table name given as separate parts.

    Parts are never split on '.', so raw names containing dots stay intact.

    Args:
        parts: ``(schema, table)`` or ``(db, schema, table)``.

    Returns:
        e.g. ``[dbo].[orders]``

    Raises:
        ValueError: If not 2 or 3 parts, or any part is invalid.
    """
    if len(parts) not in (2, 3):
        raise ValueError(
            f"Expected (schema, table) or (db, schema, table), got {len(parts)} parts: {parts}"
        )
    return ".".join(quote_identifier(p) for p in parts)


def string_literal(value: str) -> str:
    """Render a single-quoted T-SQL string literal, doubling embedded quotes."""
    return "'" + value.replace("'", "''") + "'"


def _pyodbc_connection_string(database: str) -> str:
    return (
        f"DRIVER={{{config.ODBC_DRIVER}}};"
        f"SERVER={config.SQL_SERVER_HOST},{config.SQL_SERVER_PORT};"
        f"DATABASE={database};"
        f"UID={config.SQL_SERVER_USER};"
        f"PWD={config.SQL_SERVER_PASSWORD};"
        "TrustServerCertificate=yes;"
    )


def connectorx_uri(database: str | None = None) -> str:
    usr = quote_plus(config.SQL_SERVER_USER)
    pwd = quote_plus(config.SQL_SERVER_PASSWORD)
    return (
        f"mssql://{usr}:{pwd}@{config.SQL_SERVER_HOST}:{config.SQL_SERVER_PORT}"
        f"/{database or config.TARGET_DB}?TrustServerCertificate=true"
    )


# --- pyodbc Connections ---

def get_connection(database: str, autocommit: bool = True) -> pyodbc.Connection:
    """Create a fresh pyodbc connection (not pooled).

    Push sessions pass autocommit=False so commits are issued explicitly by
    the pipeline, never by the driver.
    """
    import pyodbc

    global _connection_time_ms, _connection_count
    start = time.monotonic()
    conn = pyodbc.connect(_pyodbc_connection_string(database), autocommit=autocommit)
    elapsed = (time.monotonic() - start) * 1000
    _connection_time_ms += elapsed
    _connection_count += 1
    return conn


def get_connection_overhead() -> tuple[float, int]:
    """Return cumulative connection overhead (total_ms, connection_count)."""
    return _connection_time_ms, _connection_count


def reset_connection_overhead() -> None:
    global _connection_time_ms, _connection_count
    _connection_time_ms = 0.0
    _connection_count = 0


# --- Transactions ---

class Transactor:
    """Runs a unit of work on a fresh connection inside one transaction.

    The unit receives a cursor and is responsible for calling
    ``cursor.commit()`` at its commit points. On any exception the open
    transaction is rolled back and the error propagates. The connection is
    always closed; anything left uncommitted at that point is discarded.

    Usage::

        xa = Transactor("Warehouse")

        def work(cur):
            cur.execute("DELETE FROM [dbo].[t]")
            cur.commit()

        xa.transact(work)

    session() exposes the same boundaries as a context manager, for callers
    that interleave their own control flow between statements (the direct
    append sink commits once per commit marker across many batches).
    """

    def __init__(
        self,
        database: str | None = None,
        connect: Callable[[], pyodbc.Connection] | None = None,
    ) -> None:
        self.database = database or config.TARGET_DB
        self._connect = connect or (lambda: get_connection(self.database, autocommit=False))

    @contextmanager
    def session(self) -> Iterator[pyodbc.Cursor]:
        conn = self._connect()
        try:
            cursor = conn.cursor()
            try:
                yield cursor
            except BaseException:
                try:
                    conn.rollback()
                except Exception:
                    logger.warning(
                        "Rollback failed on %s, connection is likely gone",
                        self.database, exc_info=True,
                    )
                raise
            finally:
                try:
                    cursor.close()
                except Exception:
                    logger.debug("Cursor close failed on %s", self.database, exc_info=True)
        finally:
            conn.close()

    def transact(self, work: Callable[[pyodbc.Cursor], T]) -> T:
        with self.session() as cursor:
            return work(cursor)
