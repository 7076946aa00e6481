"""Scoped temp-table flow: ingest() / replace() / append() over one staging table.

Usage:
    with temp_table_flow(xa, WriteMode.REPLACE, "sales/orders", columns,
                         retry=RetryPolicy()) as flow:
        for chunk in chunks:
            flow.ingest(render_rows(chunk, columns))
        flow.replace()

Acquire (no retry): resolve destination, CREATE-mode precondition, drop and
recreate staging, commit. Release (no retry): drop staging, commit. Release
runs on every exit path; a failing release after a failed body is logged and
the body's error is the one that propagates.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import TYPE_CHECKING, Callable, Iterator, Sequence

from data_load.temp_table import StagingTable
from orchestration.destination import resolve_destination
from orchestration.retry import RetryPolicy, transact_with_retry
from orchestration.write_modes import WriteMode, check_write_mode, reconcile
from schema.table_creator import create_table_if_not_exists

if TYPE_CHECKING:
    import pyodbc

    from connections import Transactor
    from schema.vendor_types import Column

logger = logging.getLogger(__name__)


class TempTableFlow:
    """Three-operation surface over a live staging table. Each call is one
    retried transaction ending in a commit."""

    def __init__(
        self,
        xa: Transactor,
        staging: StagingTable,
        write_mode: WriteMode,
        retry: RetryPolicy,
        path: str,
    ) -> None:
        self._xa = xa
        self.staging = staging
        self.write_mode = write_mode
        self._retry = retry
        self._path = path

    def _run(self, label: str, unit: Callable[[pyodbc.Cursor], None]) -> None:
        transact_with_retry(self._xa, unit, self._retry, context=f"{label} {self._path}")

    def ingest(self, rows: Sequence[tuple]) -> None:
        logger.debug("Loading chunk with size: %d", len(rows))

        def unit(cur: pyodbc.Cursor) -> None:
            self.staging.ingest(cur, rows)
            cur.commit()

        self._run("ingest", unit)

    def replace(self) -> None:
        """Persist staged rows with the flow's WriteMode semantics."""

        def unit(cur: pyodbc.Cursor) -> None:
            reconcile(self.write_mode, cur, self.staging)
            cur.commit()

        self._run("replace", unit)

    def append(self) -> None:
        """Merge staged rows into the destination (created when missing),
        replacing rows that match on the filter column when one is configured."""

        def unit(cur: pyodbc.Cursor) -> None:
            staging = self.staging
            create_table_if_not_exists(cur, staging.schema, staging.destination, staging.columns)
            if staging.filter_column is not None:
                staging.delete_matching_keys(cur, staging.filter_column)
            staging.insert_into(cur)
            staging.truncate(cur)
            cur.commit()

        self._run("append", unit)


def prepare_staging(xa: Transactor, staging: StagingTable) -> None:
    """Drop and recreate the staging table in one committed transaction."""

    def unit(cur: pyodbc.Cursor) -> None:
        staging.drop(cur)
        staging.create(cur)
        cur.commit()

    xa.transact(unit)


def release_staging(xa: Transactor, staging: StagingTable, failed: bool) -> None:
    """Drop the staging table. After a failed body, cleanup errors are logged
    so they don't replace the original error."""

    def unit(cur: pyodbc.Cursor) -> None:
        staging.drop(cur)
        cur.commit()

    if not failed:
        xa.transact(unit)
        return
    try:
        xa.transact(unit)
    except Exception:
        logger.error(
            "Failed to drop staging table %s.%s after a failed push",
            staging.schema, staging.name, exc_info=True,
        )


@contextmanager
def temp_table_flow(
    xa: Transactor,
    write_mode: WriteMode,
    path: str | Sequence[str],
    columns: Sequence[Column],
    *,
    id_column: str | None = None,
    filter_column: str | None = None,
    retry: RetryPolicy | None = None,
    default_schema: str | None = None,
) -> Iterator[TempTableFlow]:
    destination = resolve_destination(path, default_schema)
    check_write_mode(xa, write_mode, destination)

    staging = StagingTable(
        schema=destination.schema,
        destination=destination.table,
        columns=tuple(columns),
        id_column=id_column,
        filter_column=filter_column,
    )
    prepare_staging(xa, staging)

    flow = TempTableFlow(xa, staging, write_mode, retry or RetryPolicy(), destination.path)
    try:
        yield flow
    except BaseException:
        release_staging(xa, staging, failed=True)
        raise
    release_staging(xa, staging, failed=False)
