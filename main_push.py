"""CLI entry point: push a CSV or Parquet file into a SQL Server table.

Usage:
    python3 main_push.py --file orders.parquet --table sales/orders --mode replace
    python3 main_push.py --file orders.csv --table orders --mode append --filter-column order_date
    python3 main_push.py --file delta.parquet --table sales/orders --mode append \\
        --upsert --id-column order_id --batch-size 10000
"""

from __future__ import annotations

# cli_common sets sys.path; must be imported before any other project modules.
import cli_common

import argparse
import logging
import sys
import uuid
from pathlib import Path
from typing import Iterator, Sequence

import polars as pl

import config
from connections import Transactor
from data_load.render import render_rows
from orchestration.pipeline import Commit, RowBatch, upsert_pipe
from orchestration.retry import RetryPolicy
from orchestration.temp_table_flow import temp_table_flow
from orchestration.write_modes import WriteMode
from schema.vendor_types import Column, default_type_for

logger = logging.getLogger(__name__)


def read_input(path: Path) -> pl.DataFrame:
    """Read a CSV or Parquet file into a DataFrame."""
    suffix = path.suffix.lower()
    if suffix == ".csv":
        return pl.read_csv(path, try_parse_dates=True)
    if suffix in (".parquet", ".pq"):
        return pl.read_parquet(path)
    raise ValueError(f"Unsupported input file type: {path.name} (expected .csv or .parquet)")


def infer_columns(df: pl.DataFrame) -> list[Column]:
    """Default SQL Server column types for every DataFrame column."""
    return [
        Column(name, default_type_for(dtype))
        for name, dtype in zip(df.columns, df.dtypes)
    ]


def push_events(df: pl.DataFrame, batch_size: int) -> Iterator[RowBatch | Commit]:
    """One RowBatch + Commit per slice. The offset is the rows pushed so far.

    An empty frame still gets a single Commit(0), so the write mode is applied
    to the destination as it is on the staged path.
    """
    pushed = 0
    for chunk in df.iter_slices(n_rows=batch_size):
        yield RowBatch(chunk)
        pushed += chunk.height
        yield Commit(pushed)
    if df.height == 0:
        yield Commit(0)


def push_dataframe(
    xa: Transactor,
    df: pl.DataFrame,
    *,
    table: str,
    mode: WriteMode,
    columns: Sequence[Column],
    id_column: str | None = None,
    filter_column: str | None = None,
    upsert: bool = False,
    batch_size: int = config.INGEST_BATCH_SIZE,
    retry: RetryPolicy | None = None,
) -> int:
    """Push ``df`` to ``table``. Returns the number of rows pushed.

    With ``upsert`` the rows stream through upsert_pipe, committing per batch.
    Otherwise they are staged in full and persisted once: APPEND with a filter
    column merges on it, every other case applies the write mode.
    """
    if upsert:
        if filter_column is not None:
            raise ValueError("filter_column is not supported with upsert; use id_column")
        offsets = list(upsert_pipe(
            xa,
            push_events(df, batch_size),
            write_mode=mode,
            path=table,
            columns=columns,
            id_column=id_column,
            retry=retry,
        ))
        return offsets[-1]

    with temp_table_flow(
        xa, mode, table, columns,
        id_column=id_column,
        filter_column=filter_column,
        retry=retry,
    ) as flow:
        for chunk in df.iter_slices(n_rows=batch_size):
            flow.ingest(render_rows(chunk, columns))
        if mode is WriteMode.APPEND and filter_column is not None:
            flow.append()
        else:
            flow.replace()
    return df.height


def main() -> None:
    parser = argparse.ArgumentParser(description="Push a file into SQL Server")
    parser.add_argument("--file", type=Path, required=True, help="CSV or Parquet input file")
    parser.add_argument("--table", type=str, required=True, help="Destination: table or schema/table")
    parser.add_argument(
        "--mode", type=str, default=WriteMode.REPLACE.value,
        choices=[m.value for m in WriteMode],
        help="Destination write mode (default: replace)",
    )
    parser.add_argument("--id-column", type=str, help="Key column for upserts and the CREATE-mode index")
    parser.add_argument("--filter-column", type=str, help="Staging index column; APPEND merges on it")
    parser.add_argument("--upsert", action="store_true", help="Stream batches, committing after each")
    parser.add_argument(
        "--batch-size", type=int, default=config.INGEST_BATCH_SIZE,
        help=f"Rows per batch (default: {config.INGEST_BATCH_SIZE})",
    )
    parser.add_argument(
        "--cleanup-staging", action="store_true",
        help=(
            "Drop staging tables older than STAGING_ORPHAN_MIN_AGE_HOURS "
            f"(default: {config.STAGING_ORPHAN_MIN_AGE_HOURS}) before pushing"
        ),
    )
    args = parser.parse_args()

    if args.batch_size <= 0:
        parser.error("--batch-size must be positive")
    if args.upsert and args.filter_column:
        parser.error("--filter-column cannot be combined with --upsert (use --id-column)")

    run_id = uuid.uuid4().hex
    sql_handler = cli_common.setup_logging(run_id, args.table)

    xa = Transactor()
    cli_common.startup_checks(xa, cleanup_staging=args.cleanup_staging)

    success = False
    try:
        df = read_input(args.file)
        columns = infer_columns(df)
        logger.info(
            "Starting push: run_id=%s, file=%s, table=%s, mode=%s, rows=%d, columns=%d",
            run_id, args.file, args.table, args.mode, df.height, len(columns),
        )
        pushed = push_dataframe(
            xa, df,
            table=args.table,
            mode=WriteMode(args.mode),
            columns=columns,
            id_column=args.id_column,
            filter_column=args.filter_column,
            upsert=args.upsert,
            batch_size=args.batch_size,
        )
        logger.info("Push complete: run_id=%s, table=%s, rows=%d", run_id, args.table, pushed)
        success = True
    except Exception:
        logger.exception("Push failed: run_id=%s, table=%s", run_id, args.table)

    cli_common.log_connection_overhead()

    # Flush logs
    if sql_handler is not None:
        sql_handler.flush()

    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
