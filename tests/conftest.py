"""In-memory stand-in for the SQL Server statements the connector emits.

FakeSqlServer keeps committed table state. Each FakeConnection works on its
own copy: commit() publishes it, rollback() and close() throw it away, which
is enough to observe the transaction boundaries the pipelines rely on.

Only the statement shapes built by schema/, data_load/ and orchestration/
are understood; anything else fails the test loudly.
"""

from __future__ import annotations

import copy
import re
from dataclasses import dataclass, field

import pytest

from connections import Transactor
from orchestration.retry import RetryPolicy

_IDENT = r"\[(?:[^\]]|\]\])+\]"
_TABLE = rf"{_IDENT}(?:\.{_IDENT})*"

_CREATE_TABLE = re.compile(rf"^CREATE TABLE ({_TABLE}) \((.*)\)$")
_CREATE_INDEX = re.compile(rf"^CREATE INDEX ({_IDENT}) ON ({_TABLE}) \(({_IDENT})\)$")
_DROP_IF_EXISTS = re.compile(rf"^DROP TABLE IF EXISTS ({_TABLE})$")
_DROP = re.compile(rf"^DROP TABLE ({_TABLE})$")
_TRUNCATE = re.compile(rf"^TRUNCATE TABLE ({_TABLE})$")
_INSERT_VALUES = re.compile(rf"^INSERT INTO ({_TABLE}) \((.*?)\) VALUES \(")
_INSERT_SELECT = re.compile(rf"^INSERT INTO ({_TABLE}) \((.*?)\) SELECT (.*) FROM ({_TABLE})$")
_DELETE_JOIN = re.compile(
    rf"^DELETE target FROM ({_TABLE}) target INNER JOIN ({_TABLE}) temp "
    rf"ON target\.({_IDENT}) = temp\.({_IDENT})$"
)
_DELETE_WHERE = re.compile(rf"^DELETE FROM ({_TABLE}) WHERE ({_IDENT}) = \?$")
_COLUMN_SPEC = re.compile(rf"({_IDENT}) ([A-Z0-9]+(?:\([0-9, ]+\))?) NULL")


class FakeDbError(Exception):
    """Mimics pyodbc.Error: args = (sqlstate, message)."""


def transient_error() -> FakeDbError:
    return FakeDbError("08S01", "[08S01] Communication link failure")


def permanent_error() -> FakeDbError:
    return FakeDbError("42000", "[42000] Incorrect syntax near 'VALUES'")


def unquote_all(text: str) -> list[str]:
    return [p.replace("]]", "]") for p in re.findall(r"\[((?:[^\]]|\]\])+)\]", text)]


def table_key(text: str) -> tuple[str, str]:
    parts = unquote_all(text)
    return parts[-2], parts[-1]


def like_to_regex(pattern: str) -> re.Pattern:
    out = []
    i = 0
    while i < len(pattern):
        ch = pattern[i]
        if ch == "[":
            end = pattern.index("]", i + 2)
            out.append(re.escape(pattern[i + 1:end]))
            i = end + 1
            continue
        if ch == "%":
            out.append(".*")
        elif ch == "_":
            out.append(".")
        else:
            out.append(re.escape(ch))
        i += 1
    return re.compile("".join(out), re.DOTALL)


@dataclass
class FakeTable:
    columns: list[str]
    types: list[str] = field(default_factory=list)
    rows: list[tuple] = field(default_factory=list)
    indexes: dict[str, str] = field(default_factory=dict)
    age_hours: float = 0.0

    def position(self, column: str) -> int:
        try:
            return self.columns.index(column)
        except ValueError:
            raise FakeDbError("42S22", f"Invalid column name '{column}'") from None


class FakeSqlServer:
    def __init__(self) -> None:
        self.tables: dict[tuple[str, str], FakeTable] = {}
        self.statements: list[str] = []
        self.connections: list[FakeConnection] = []
        self._failures: list[list] = []

    def connect(self) -> FakeConnection:
        conn = FakeConnection(self)
        self.connections.append(conn)
        return conn

    def add_table(self, schema: str, name: str, columns, rows=(), age_hours: float = 0.0) -> None:
        self.tables[(schema, name)] = FakeTable(
            list(columns), rows=[tuple(r) for r in rows], age_hours=age_hours,
        )

    def has_table(self, schema: str, name: str) -> bool:
        return (schema, name) in self.tables

    def rows(self, schema: str, name: str) -> list[tuple]:
        return sorted(self.tables[(schema, name)].rows, key=repr)

    def table_names(self) -> list[tuple[str, str]]:
        return sorted(self.tables)

    def fail_on(
        self, fragment: str, error: Exception, times: int = 1, drop_link: bool = False,
    ) -> None:
        """Raise ``error`` for the next ``times`` statements containing ``fragment``.

        With ``drop_link`` the failing connection is dead afterwards, as a
        pyodbc connection is after a communication link failure.
        """
        self._failures.append([fragment, error, times, drop_link])

    def _maybe_fail(self, sql: str, conn: FakeConnection) -> None:
        for failure in self._failures:
            fragment, error, remaining, drop_link = failure
            if remaining > 0 and fragment in sql:
                failure[2] -= 1
                if drop_link:
                    conn.broken = True
                raise error


class FakeConnection:
    def __init__(self, server: FakeSqlServer) -> None:
        self.server = server
        self.tables = copy.deepcopy(server.tables)
        self.commits = 0
        self.rollbacks = 0
        self.closed = False
        self.broken = False

    def check_open(self) -> None:
        if self.broken:
            raise FakeDbError("08003", "[08003] Connection not open")

    def cursor(self) -> FakeCursor:
        self.check_open()
        return FakeCursor(self)

    def commit(self) -> None:
        self.check_open()
        self.server.tables = copy.deepcopy(self.tables)
        self.commits += 1

    def rollback(self) -> None:
        self.check_open()
        self.tables = copy.deepcopy(self.server.tables)
        self.rollbacks += 1

    def close(self) -> None:
        self.closed = True


class FakeCursor:
    def __init__(self, conn: FakeConnection) -> None:
        self.connection = conn
        self.rowcount = -1
        self.fast_executemany = False
        self._result: list[tuple] = []

    def execute(self, sql: str, *params):
        if len(params) == 1 and isinstance(params[0], (list, tuple)):
            params = tuple(params[0])
        server = self.connection.server
        server.statements.append(sql)
        self.connection.check_open()
        server._maybe_fail(sql, self.connection)
        self._result = []
        self.rowcount = -1
        self._dispatch(sql, params)
        return self

    def executemany(self, sql: str, seq_of_params) -> None:
        server = self.connection.server
        server.statements.append(sql)
        self.connection.check_open()
        server._maybe_fail(sql, self.connection)
        total = 0
        for params in seq_of_params:
            self._dispatch(sql, tuple(params))
            total += max(self.rowcount, 0)
        self.rowcount = total

    def fetchone(self):
        return self._result.pop(0) if self._result else None

    def fetchall(self):
        rows, self._result = self._result, []
        return rows

    def commit(self) -> None:
        self.connection.commit()

    def rollback(self) -> None:
        self.connection.rollback()

    def close(self) -> None:
        pass

    def _require(self, text: str) -> FakeTable:
        key = table_key(text)
        table = self.connection.tables.get(key)
        if table is None:
            raise FakeDbError("42S02", f"Invalid object name '{key[0]}.{key[1]}'")
        return table

    def _dispatch(self, sql: str, params: tuple) -> None:
        tables = self.connection.tables

        if sql.startswith("SELECT COUNT(*) FROM INFORMATION_SCHEMA.TABLES"):
            self._result = [(1 if (params[0], params[1]) in tables else 0,)]
            return
        if sql.startswith("SELECT COUNT(*) FROM sys.indexes"):
            table = tables.get(table_key(params[0]))
            self._result = [(1 if table is not None and params[1] in table.indexes else 0,)]
            return
        if sql.startswith("SELECT s.name, t.name FROM sys.tables"):
            rx = like_to_regex(params[0])
            self._result = [
                key for key in sorted(tables)
                if rx.fullmatch(key[1]) and tables[key].age_hours >= params[1]
            ]
            return

        m = _CREATE_TABLE.match(sql)
        if m:
            key = table_key(m.group(1))
            if key in tables:
                raise FakeDbError(
                    "42S01", f"There is already an object named '{key[1]}' in the database."
                )
            specs = _COLUMN_SPEC.findall(m.group(2))
            tables[key] = FakeTable(
                [unquote_all(name)[0] for name, _ in specs],
                [tpe for _, tpe in specs],
            )
            return

        m = _CREATE_INDEX.match(sql)
        if m:
            table = self._require(m.group(2))
            name = unquote_all(m.group(1))[0]
            if name in table.indexes:
                raise FakeDbError("42S11", f"The index '{name}' already exists.")
            column = unquote_all(m.group(3))[0]
            table.position(column)
            table.indexes[name] = column
            return

        m = _DROP_IF_EXISTS.match(sql)
        if m:
            tables.pop(table_key(m.group(1)), None)
            return

        m = _DROP.match(sql)
        if m:
            self._require(m.group(1))
            del tables[table_key(m.group(1))]
            return

        m = _TRUNCATE.match(sql)
        if m:
            self._require(m.group(1)).rows = []
            return

        m = _INSERT_SELECT.match(sql)
        if m:
            target = self._require(m.group(1))
            source = self._require(m.group(4))
            target_positions = [target.position(c) for c in unquote_all(m.group(2))]
            source_positions = [source.position(c) for c in unquote_all(m.group(3))]
            for row in source.rows:
                new_row = [None] * len(target.columns)
                for t, s in zip(target_positions, source_positions):
                    new_row[t] = row[s]
                target.rows.append(tuple(new_row))
            self.rowcount = len(source.rows)
            return

        m = _INSERT_VALUES.match(sql)
        if m:
            target = self._require(m.group(1))
            positions = [target.position(c) for c in unquote_all(m.group(2))]
            if len(params) != len(positions):
                raise FakeDbError("07002", "COUNT field incorrect or syntax error")
            new_row = [None] * len(target.columns)
            for position, value in zip(positions, params):
                new_row[position] = value
            target.rows.append(tuple(new_row))
            self.rowcount = 1
            return

        if sql == "EXEC sp_rename ?, ?":
            old_key = table_key(params[0])
            self._require(params[0])
            new_key = (old_key[0], params[1])
            if new_key in tables:
                raise FakeDbError(
                    "42000", f"There is already an object named '{params[1]}' in the database."
                )
            tables[new_key] = tables.pop(old_key)
            return

        m = _DELETE_JOIN.match(sql)
        if m:
            target = self._require(m.group(1))
            source = self._require(m.group(2))
            t_pos = target.position(unquote_all(m.group(3))[0])
            s_pos = source.position(unquote_all(m.group(4))[0])
            keys = {row[s_pos] for row in source.rows}
            before = len(target.rows)
            target.rows = [row for row in target.rows if row[t_pos] not in keys]
            self.rowcount = before - len(target.rows)
            return

        m = _DELETE_WHERE.match(sql)
        if m:
            target = self._require(m.group(1))
            pos = target.position(unquote_all(m.group(2))[0])
            before = len(target.rows)
            target.rows = [row for row in target.rows if row[pos] != params[0]]
            self.rowcount = before - len(target.rows)
            return

        raise AssertionError(f"Unexpected SQL: {sql}")


@pytest.fixture
def server() -> FakeSqlServer:
    return FakeSqlServer()


@pytest.fixture
def xa(server: FakeSqlServer) -> Transactor:
    return Transactor("TestDB", connect=server.connect)


@pytest.fixture
def fast_retry() -> RetryPolicy:
    return RetryPolicy(max_duration=60.0, base_delay=0.0, max_delay=0.0)
