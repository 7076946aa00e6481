"""SQL Server column types accepted for destination tables.

Closed set of vendor types. Scalar types (INT, DATE, ...) carry no arguments;
parameterized types (VARCHAR(n), DECIMAL(p, s), ...) carry one or two integers
validated against inclusive bounds before any DDL is rendered.

Each TypeId has a stable ordinal used for persistence and equality. Values
are plain frozen dataclasses: construct them with construct() or the
per-variant helpers (varchar(255), decimal(18, 4), ...), never directly.

Reference: https://learn.microsoft.com/sql/t-sql/data-types/data-types-transact-sql
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import NamedTuple

import polars as pl


class TypeArgumentError(ValueError):
    """Raised when a type argument is missing, extra, or out of bounds."""


class Param(NamedTuple):
    label: str
    low: int
    high: int


def _length(high: int) -> Param:
    return Param("Length (characters)", 1, high)


def _datetime_precision(high: int) -> Param:
    return Param("Precision (decimal places)", 0, high)


_FLOAT_PRECISION = Param("Precision (bits)", 1, 53)
_DECIMAL_PARAMS = (Param("Precision", 1, 38), Param("Scale", 0, 38))


class TypeId(Enum):
    """Type identity: (ordinal, parameter specs)."""

    BIGINT = (0, ())
    BIT = (1, ())
    CHAR = (2, (_length(8000),))
    DATE = (3, ())
    DATETIME = (4, ())
    DATETIME2 = (5, (_datetime_precision(7),))
    DATETIMEOFFSET = (6, (_datetime_precision(7),))
    DECIMAL = (7, _DECIMAL_PARAMS)
    FLOAT = (8, (_FLOAT_PRECISION,))
    INT = (9, ())
    NCHAR = (10, (_length(4000),))
    NUMERIC = (11, _DECIMAL_PARAMS)
    NVARCHAR = (12, (_length(4000),))
    NTEXT = (13, ())
    REAL = (14, ())
    SMALLDATETIME = (15, ())
    SMALLINT = (16, ())
    TEXT = (17, ())
    TIME = (18, (_datetime_precision(7),))
    TINYINT = (19, ())
    VARCHAR = (20, (_length(8000),))

    @property
    def ordinal(self) -> int:
        return self.value[0]

    @property
    def params(self) -> tuple[Param, ...]:
        return self.value[1]

    @property
    def is_parameterized(self) -> bool:
        return bool(self.params)

    @classmethod
    def from_ordinal(cls, ordinal: int) -> TypeId:
        for type_id in cls:
            if type_id.ordinal == ordinal:
                return type_id
        raise TypeArgumentError(f"Unknown SQL Server type ordinal: {ordinal}")


@dataclass(frozen=True)
class SQLServerType:
    """A validated SQL Server column type. Build with construct()."""

    type_id: TypeId
    args: tuple[int, ...] = ()

    def render(self) -> str:
        if not self.args:
            return self.type_id.name
        return f"{self.type_id.name}({', '.join(str(a) for a in self.args)})"

    def __str__(self) -> str:
        return self.render()


@dataclass(frozen=True)
class Column:
    """A destination column. ``name`` is raw and must go through quote_identifier()."""

    name: str
    tpe: SQLServerType


def construct(type_id: TypeId, *args: int) -> SQLServerType:
    """Build a SQLServerType, validating arity and every argument bound.

    Raises:
        TypeArgumentError: Wrong number of arguments, a non-integer argument,
            or an argument outside its inclusive range.
    """
    params = type_id.params
    if len(args) != len(params):
        raise TypeArgumentError(
            f"{type_id.name} takes {len(params)} argument(s), got {len(args)}"
        )
    for param, arg in zip(params, args):
        if isinstance(arg, bool) or not isinstance(arg, int):
            raise TypeArgumentError(
                f"{type_id.name} {param.label} must be an integer, got {arg!r}"
            )
        if not param.low <= arg <= param.high:
            raise TypeArgumentError(
                f"{type_id.name} {param.label} must be in [{param.low}, {param.high}], got {arg}"
            )
    return SQLServerType(type_id, tuple(args))


_TYPE_PATTERN = re.compile(r"^\s*([A-Za-z0-9]+)\s*(?:\(\s*([^)]*?)\s*\))?\s*$")


def parse_type(text: str) -> SQLServerType:
    """Parse a canonical rendering (``DECIMAL(18, 4)``, ``INT``) back into a type."""
    m = _TYPE_PATTERN.match(text)
    if m is None:
        raise TypeArgumentError(f"Cannot parse SQL Server type: {text!r}")
    name, arg_text = m.group(1).upper(), m.group(2)
    try:
        type_id = TypeId[name]
    except KeyError:
        raise TypeArgumentError(f"Unsupported SQL Server type: {name}") from None
    args: list[int] = []
    if arg_text:
        for part in arg_text.split(","):
            try:
                args.append(int(part.strip()))
            except ValueError:
                raise TypeArgumentError(
                    f"Non-integer argument {part.strip()!r} in {text!r}"
                ) from None
    return construct(type_id, *args)


# --- Scalar types ---
BIGINT = construct(TypeId.BIGINT)
BIT = construct(TypeId.BIT)
DATE = construct(TypeId.DATE)
DATETIME = construct(TypeId.DATETIME)
INT = construct(TypeId.INT)
NTEXT = construct(TypeId.NTEXT)
REAL = construct(TypeId.REAL)
SMALLDATETIME = construct(TypeId.SMALLDATETIME)
SMALLINT = construct(TypeId.SMALLINT)
TEXT = construct(TypeId.TEXT)
TINYINT = construct(TypeId.TINYINT)


# --- Parameterized constructors ---

def char(length: int) -> SQLServerType:
    return construct(TypeId.CHAR, length)


def varchar(length: int) -> SQLServerType:
    return construct(TypeId.VARCHAR, length)


def nchar(length: int) -> SQLServerType:
    return construct(TypeId.NCHAR, length)


def nvarchar(length: int) -> SQLServerType:
    return construct(TypeId.NVARCHAR, length)


def datetime2(precision: int) -> SQLServerType:
    return construct(TypeId.DATETIME2, precision)


def datetimeoffset(precision: int) -> SQLServerType:
    return construct(TypeId.DATETIMEOFFSET, precision)


def time(precision: int) -> SQLServerType:
    return construct(TypeId.TIME, precision)


def float_(precision: int) -> SQLServerType:
    return construct(TypeId.FLOAT, precision)


def decimal(precision: int, scale: int) -> SQLServerType:
    return construct(TypeId.DECIMAL, precision, scale)


def numeric(precision: int, scale: int) -> SQLServerType:
    return construct(TypeId.NUMERIC, precision, scale)


# Polars dtype -> default SQL Server type, used when the caller supplies data
# without explicit column types (CLI pushes of CSV/Parquet files).
_DTYPE_MAP: dict[type, SQLServerType] = {
    pl.Int8: SMALLINT,
    pl.Int16: SMALLINT,
    pl.Int32: INT,
    pl.Int64: BIGINT,
    pl.UInt8: TINYINT,
    pl.UInt16: INT,
    pl.UInt32: BIGINT,
    pl.UInt64: decimal(20, 0),
    pl.Float32: REAL,
    pl.Float64: float_(53),
    pl.Boolean: BIT,
    pl.String: nvarchar(4000),
    pl.Date: DATE,
    pl.Datetime: datetime2(7),
    pl.Time: time(7),
}


def default_type_for(dtype: pl.DataType) -> SQLServerType:
    """Map a Polars dtype to a SQL Server column type (NVARCHAR(4000) fallback)."""
    if isinstance(dtype, pl.Datetime) and dtype.time_zone is not None:
        return datetimeoffset(7)
    if isinstance(dtype, pl.Decimal) and dtype.precision is not None:
        return decimal(min(dtype.precision, 38), min(dtype.scale or 0, 38))
    for pl_type, sql_type in _DTYPE_MAP.items():
        if isinstance(dtype, pl_type) or dtype == pl_type:
            return sql_type
    return nvarchar(4000)
