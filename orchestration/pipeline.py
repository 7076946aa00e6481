"""Event-driven push pipelines.

The platform drives a push with an ordered stream of events:

  RowBatch(chunk)    a polars DataFrame of rows to load
  DeleteBatch(keys)  id values to delete from the destination (upsert only)
  Commit(offset)     persist everything received so far, then acknowledge

Both pipes are generators that consume the events strictly in order and
yield each Commit's offset only after the matching database commit, so the
yielded offsets are exactly the input commit markers, in input order.

upsert_pipe (staged):
  1. resolve destination, CREATE-mode precondition (eager, no retry)
  2. drop + create staging, commit (no retry)
  3. RowBatch   -> INSERT into staging, commit              (retried)
  4. DeleteBatch -> keys held until the next Commit
  5. Commit     -> pending deletes, then the phase's reconciliation, commit,
                   yield offset                              (retried)
  6. drop staging on every exit path (no retry)

  The phase starts at the caller's PushMode. REPLACE runs the full WriteMode
  reconciliation on the first commit and then flips to APPEND; APPEND merges
  by id column (apply_increment). A resumed session passes PushMode.APPEND so
  it never re-runs the destructive first-commit step.

direct_append_pipe (no staging):
  The destination is prepared once for the WriteMode, row batches are inserted
  straight into it in one open transaction, and each Commit commits. Rows after
  the last Commit are rolled back when the stream ends. Nothing is retried:
  a rollback discards the whole open commit window.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Iterable, Iterator, Sequence, Union

from data_load.render import render_rows
from data_load.temp_table import StagingTable, insert_rows
from orchestration.destination import resolve_destination
from orchestration.retry import RetryPolicy, transact_with_retry
from orchestration.temp_table_flow import prepare_staging, release_staging
from orchestration.write_modes import (
    PushMode,
    WriteMode,
    apply_increment,
    check_write_mode,
    prepare_destination,
    reconcile,
)
from schema.table_creator import table_exists

if TYPE_CHECKING:
    import polars as pl
    import pyodbc

    from connections import Transactor
    from orchestration.destination import Destination
    from schema.vendor_types import Column

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RowBatch:
    chunk: pl.DataFrame


@dataclass(frozen=True)
class DeleteBatch:
    keys: tuple


@dataclass(frozen=True)
class Commit:
    offset: Any


Event = Union[RowBatch, DeleteBatch, Commit]


# ---------------------------------------------------------------------------
# Staged upsert / append
# ---------------------------------------------------------------------------

def upsert_pipe(
    xa: Transactor,
    events: Iterable[Event],
    *,
    write_mode: WriteMode,
    path: str | Sequence[str],
    columns: Sequence[Column],
    push_mode: PushMode = PushMode.REPLACE,
    id_column: str | None = None,
    retry: RetryPolicy | None = None,
    default_schema: str | None = None,
) -> Iterator[Any]:
    """Consume push events through a staging table, yielding committed offsets.

    Path resolution and the CREATE-mode check run immediately, so a bad
    destination fails before the caller starts iterating.

    Args:
        xa: Transactor for the target database.
        events: Ordered RowBatch / DeleteBatch / Commit events.
        write_mode: Destination lifecycle applied on the first commit.
        path: ``table`` or ``schema/table``.
        columns: Destination columns in load order.
        push_mode: REPLACE for a fresh push, APPEND to resume one.
        id_column: Upsert key. Required when DeleteBatch events are sent.
        retry: Policy for ingest and commit units (default RetryPolicy()).
        default_schema: Schema for single-segment paths.

    Raises:
        InvalidPathError: path is not ``table`` or ``schema/table``.
        AccessDeniedError: CREATE mode and the destination exists.
    """
    destination = resolve_destination(path, default_schema)
    check_write_mode(xa, write_mode, destination)
    staging = StagingTable(
        schema=destination.schema,
        destination=destination.table,
        columns=tuple(columns),
        id_column=id_column,
    )
    return _upsert_events(
        xa, events, staging, destination, write_mode, push_mode, retry or RetryPolicy(),
    )


def _upsert_events(
    xa: Transactor,
    events: Iterable[Event],
    staging: StagingTable,
    destination: Destination,
    write_mode: WriteMode,
    push_mode: PushMode,
    retry: RetryPolicy,
) -> Iterator[Any]:
    logger.debug("Starting load")
    prepare_staging(xa, staging)

    phase = push_mode
    pending_deletes: list = []
    failed = True
    try:
        for event in events:
            if isinstance(event, RowBatch):
                rows = render_rows(event.chunk, staging.columns)
                logger.debug("Loading chunk with size: %d", len(rows))
                _ingest(xa, staging, rows, retry, destination.path)

            elif isinstance(event, DeleteBatch):
                logger.debug("Deleting %d records", len(event.keys))
                if staging.id_column is None:
                    raise ValueError(
                        f"{destination.path}: delete events require an id column"
                    )
                pending_deletes.extend(event.keys)

            elif isinstance(event, Commit):
                logger.debug("Commit")
                _commit(xa, staging, write_mode, phase, pending_deletes, retry, destination.path)
                phase = PushMode.APPEND
                pending_deletes = []
                yield event.offset

            else:
                raise TypeError(f"Unexpected push event: {type(event).__name__}")
        failed = False
    finally:
        release_staging(xa, staging, failed)

    logger.debug("Finished load")


def _ingest(
    xa: Transactor,
    staging: StagingTable,
    rows: Sequence[tuple],
    retry: RetryPolicy,
    path: str,
) -> None:
    def unit(cur: pyodbc.Cursor) -> None:
        staging.ingest(cur, rows)
        cur.commit()

    transact_with_retry(xa, unit, retry, context=f"ingest {path}")


def _commit(
    xa: Transactor,
    staging: StagingTable,
    write_mode: WriteMode,
    phase: PushMode,
    deletes: Sequence[object],
    retry: RetryPolicy,
    path: str,
) -> None:
    def unit(cur: pyodbc.Cursor) -> None:
        if deletes and table_exists(cur, staging.schema, staging.destination):
            staging.delete_keys(cur, staging.id_column, deletes)
        if phase is PushMode.REPLACE:
            reconcile(write_mode, cur, staging)
        else:
            apply_increment(cur, staging, staging.id_column)
        cur.commit()

    transact_with_retry(xa, unit, retry, context=f"commit {path}")


# ---------------------------------------------------------------------------
# Direct append (no staging)
# ---------------------------------------------------------------------------

def direct_append_pipe(
    xa: Transactor,
    events: Iterable[Event],
    *,
    write_mode: WriteMode,
    path: str | Sequence[str],
    columns: Sequence[Column],
    default_schema: str | None = None,
) -> Iterator[Any]:
    """Load row batches straight into the destination, yielding committed offsets.

    Raises:
        InvalidPathError: path is not ``table`` or ``schema/table``.
        AccessDeniedError: CREATE mode and the destination exists.
    """
    destination = resolve_destination(path, default_schema)
    check_write_mode(xa, write_mode, destination)
    return _direct_append_events(xa, events, destination, write_mode, tuple(columns))


def _direct_append_events(
    xa: Transactor,
    events: Iterable[Event],
    destination: Destination,
    write_mode: WriteMode,
    columns: tuple[Column, ...],
) -> Iterator[Any]:
    logger.debug("Starting load")
    with xa.session() as cur:
        prepare_destination(write_mode, cur, destination, columns)
        cur.commit()

        for event in events:
            if isinstance(event, RowBatch):
                rows = render_rows(event.chunk, columns)
                logger.debug("Loading chunk with size: %d", len(rows))
                insert_rows(cur, destination.schema, destination.table, columns, rows)

            elif isinstance(event, Commit):
                logger.debug("Commit")
                cur.commit()
                yield event.offset

            elif isinstance(event, DeleteBatch):
                raise TypeError(f"{destination.path}: append sink does not accept deletes")

            else:
                raise TypeError(f"Unexpected push event: {type(event).__name__}")

    logger.debug("Finished load")
