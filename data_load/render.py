"""Row-batch rendering: Polars DataFrame -> parameter rows for staging INSERTs.

Rows come out in destination column order (the order used for the hygienic
INSERT column list), so positional binding in executemany() matches.

Casting rules:
  - Boolean -> Int8 (0/1), the representation BIT columns expect.
  - UInt64 -> Decimal(20, 0); pyodbc cannot bind integers above 2**63 - 1.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Sequence

import polars as pl

if TYPE_CHECKING:
    from schema.vendor_types import Column

logger = logging.getLogger(__name__)


class ColumnOrderError(Exception):
    """Raised when a batch does not carry every destination column."""


def cast_bit_columns(df: pl.DataFrame) -> pl.DataFrame:
    """Cast Boolean columns to Int8 (0/1)."""
    bit_columns = [
        col for col, dtype in zip(df.columns, df.dtypes)
        if dtype == pl.Boolean
    ]
    if not bit_columns:
        return df
    return df.with_columns(pl.col(c).cast(pl.Int8) for c in bit_columns)


def widen_uint64(df: pl.DataFrame) -> pl.DataFrame:
    uint_columns = [
        col for col, dtype in zip(df.columns, df.dtypes)
        if dtype == pl.UInt64
    ]
    if not uint_columns:
        return df
    return df.with_columns(pl.col(c).cast(pl.Decimal(20, 0)) for c in uint_columns)


def reorder_columns(df: pl.DataFrame, columns: Sequence[Column]) -> pl.DataFrame:
    """Select destination columns in order, dropping extras.

    Raises:
        ColumnOrderError: If any destination column is missing from df.
    """
    names = [c.name for c in columns]
    missing = [n for n in names if n not in df.columns]
    if missing:
        raise ColumnOrderError(
            f"Batch is missing destination column(s) {missing}. "
            f"Batch columns: {df.columns}"
        )
    extra = [c for c in df.columns if c not in names]
    if extra:
        logger.debug("Dropping %d column(s) not in destination: %s", len(extra), extra)
    return df.select(names)


def render_rows(df: pl.DataFrame, columns: Sequence[Column]) -> list[tuple]:
    """Render a DataFrame batch as a list of parameter tuples in column order."""
    df = reorder_columns(df, columns)
    df = cast_bit_columns(df)
    df = widen_uint64(df)
    return df.rows()
