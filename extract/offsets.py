"""Resume offsets for incremental reads and their SQL predicate fragments.

An offset says "resume at key K of column C". Only offsets produced by the
platform itself (InternalOffset) over a single top-level field can be turned
into a predicate; everything else is rejected before a query is built.

    offset_fragment(InternalOffset(("id",), RealKey(42)))
        -> "[id] >= 42"
    offset_fragment(InternalOffset(("name",), StringKey("O'Brien")))
        -> "[name] >= 'O''Brien'"
    offset_fragment(InternalOffset(("ts",), DateTimeKey(DateTimeKind.LOCAL_DATETIME, ts)))
        -> "[ts] >= CAST('2024-01-01T10:00:00.123000' AS DATETIME2(7))"
"""

from __future__ import annotations

import datetime as dt
import math
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Union

from connections import quote_identifier, string_literal


class UnsupportedOffsetError(ValueError):
    """The offset cannot be expressed as a SQL Server predicate."""


class DateTimeKind(Enum):
    LOCAL_DATE = "local_date"
    LOCAL_DATETIME = "local_datetime"
    OFFSET_DATETIME = "offset_datetime"
    LOCAL_TIME = "local_time"
    # No SQL Server type maps to a date with a zone offset.
    OFFSET_DATE = "offset_date"


@dataclass(frozen=True)
class RealKey:
    value: Union[int, float, Decimal]


@dataclass(frozen=True)
class StringKey:
    value: str


@dataclass(frozen=True)
class DateTimeKey:
    kind: DateTimeKind
    value: Union[dt.date, dt.datetime, dt.time]


OffsetKey = Union[RealKey, StringKey, DateTimeKey]


@dataclass(frozen=True)
class ExternalOffset:
    """Offset minted by an external system; opaque to this connector."""

    value: bytes


@dataclass(frozen=True)
class InternalOffset:
    """Offset over a value path.

    ``path`` segments are field names (str) or array indexes (int).
    """

    path: tuple
    key: OffsetKey


Offset = Union[ExternalOffset, InternalOffset]


def offset_column(offset: Offset) -> str:
    """Return the raw column name an offset refers to.

    Raises:
        UnsupportedOffsetError: External offset, or a path that is not exactly
            one field name.
    """
    if isinstance(offset, ExternalOffset):
        raise UnsupportedOffsetError("External offsets are not supported by SQL Server")
    if not isinstance(offset, InternalOffset):
        raise UnsupportedOffsetError(f"Unknown offset type: {type(offset).__name__}")

    path = tuple(offset.path)
    if len(path) != 1 or not isinstance(path[0], str):
        raise UnsupportedOffsetError(
            f"Offset path must be a single field, got {list(path)!r}"
        )
    return path[0]


def _real_literal(value: object) -> str:
    if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
        raise UnsupportedOffsetError(f"Not a numeric offset value: {value!r}")
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if not math.isfinite(value):
            raise UnsupportedOffsetError(f"Non-finite numeric offset: {value!r}")
        return repr(value)
    if not value.is_finite():
        raise UnsupportedOffsetError(f"Non-finite numeric offset: {value!r}")
    return format(value, "f")


# Temporal literals are typed explicitly. An untyped string converts to the
# column's type, and DATETIME / SMALLDATETIME reject six fractional digits.
_TEMPORAL_CASTS = {
    DateTimeKind.LOCAL_DATE: "DATE",
    DateTimeKind.LOCAL_DATETIME: "DATETIME2(7)",
    DateTimeKind.OFFSET_DATETIME: "DATETIMEOFFSET(7)",
    DateTimeKind.LOCAL_TIME: "TIME(7)",
}


def _datetime_literal(key: DateTimeKey) -> str:
    kind, value = key.kind, key.value

    if kind is DateTimeKind.OFFSET_DATE:
        raise UnsupportedOffsetError("Offset dates are not supported by SQL Server")

    if kind is DateTimeKind.LOCAL_DATE:
        if isinstance(value, dt.datetime) or not isinstance(value, dt.date):
            raise UnsupportedOffsetError(f"Expected a date, got {value!r}")
    elif kind is DateTimeKind.LOCAL_DATETIME:
        if not isinstance(value, dt.datetime) or value.tzinfo is not None:
            raise UnsupportedOffsetError(f"Expected a naive datetime, got {value!r}")
    elif kind is DateTimeKind.OFFSET_DATETIME:
        if not isinstance(value, dt.datetime) or value.tzinfo is None:
            raise UnsupportedOffsetError(f"Expected an aware datetime, got {value!r}")
    elif kind is DateTimeKind.LOCAL_TIME:
        if not isinstance(value, dt.time) or value.tzinfo is not None:
            raise UnsupportedOffsetError(f"Expected a naive time, got {value!r}")

    return f"CAST({string_literal(value.isoformat())} AS {_TEMPORAL_CASTS[kind]})"


def key_literal(key: OffsetKey) -> str:
    """Render an offset key as a T-SQL literal.

    Numbers render bare; strings are single-quoted with embedded quotes doubled;
    temporal values are quoted the same way inside a CAST to their kind's type.
    """
    if isinstance(key, RealKey):
        return _real_literal(key.value)
    if isinstance(key, StringKey):
        return string_literal(key.value)
    if isinstance(key, DateTimeKey):
        return _datetime_literal(key)
    raise UnsupportedOffsetError(f"Unknown offset key type: {type(key).__name__}")


def offset_fragment(offset: Offset) -> str:
    """Build the ``<column> >= <literal>`` predicate for an offset.

    Raises:
        UnsupportedOffsetError: see offset_column() and key_literal().
    """
    column = offset_column(offset)
    return f"{quote_identifier(column)} >= {key_literal(offset.key)}"
