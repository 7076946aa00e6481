"""Tests for incremental read query building and chunking."""

from __future__ import annotations

import polars as pl
import pytest
from conftest import FakeDbError

import extract
import extract.incremental as incremental
from extract.incremental import build_incremental_query, read_incremental
from extract.offsets import ExternalOffset, InternalOffset, RealKey, StringKey, UnsupportedOffsetError


class TestBuildQuery:
    def test_full_read(self):
        assert build_incremental_query("dbo", "orders") == "SELECT * FROM [dbo].[orders]"

    def test_columns_are_quoted(self):
        query = build_incremental_query("dbo", "orders", ["id", "we]ird"])
        assert query == "SELECT [id], [we]]ird] FROM [dbo].[orders]"

    def test_numeric_offset(self):
        query = build_incremental_query("dbo", "orders", ["id"], InternalOffset(("id",), RealKey(10)))
        assert query == "SELECT [id] FROM [dbo].[orders] WHERE [id] >= 10"

    def test_string_offset(self):
        offset = InternalOffset(("code",), StringKey("A'1"))
        query = build_incremental_query("sales", "orders", (), offset)
        assert query == "SELECT * FROM [sales].[orders] WHERE [code] >= 'A''1'"

    def test_unsupported_offset(self):
        with pytest.raises(UnsupportedOffsetError):
            build_incremental_query("dbo", "orders", (), ExternalOffset(b"x"))


class TestReadIncremental:
    @pytest.fixture
    def captured(self, monkeypatch):
        calls = []

        def fake_read(*, conn, query, context, **kwargs):
            calls.append(query)
            return pl.DataFrame({"id": list(range(10))})

        monkeypatch.setattr(incremental, "cx_read_sql_safe", fake_read)
        return calls

    def test_yields_chunks(self, captured):
        offset = InternalOffset(("id",), RealKey(0))
        chunks = list(read_incremental("sales/orders", ["id"], offset, chunk_size=4))
        assert [c.height for c in chunks] == [4, 4, 2]
        assert captured == ["SELECT [id] FROM [sales].[orders] WHERE [id] >= 0"]

    def test_default_chunk_size(self, captured):
        chunks = list(read_incremental("orders"))
        assert [c.height for c in chunks] == [10]
        assert captured == ["SELECT * FROM [dbo].[orders]"]

    def test_bad_offset_rejected_before_query(self, captured):
        with pytest.raises(UnsupportedOffsetError):
            read_incremental("orders", offset=InternalOffset(("a", "b"), RealKey(1)))
        assert captured == []


class TestCxReadSqlSafe:
    @pytest.fixture
    def cx(self, monkeypatch):
        return pytest.importorskip("connectorx")

    def test_retries_transient_errors(self, cx, monkeypatch):
        attempts = []

        def read_sql(**kwargs):
            attempts.append(kwargs)
            if len(attempts) < 3:
                raise RuntimeError("connection reset by peer")
            return pl.DataFrame({"id": [1]})

        monkeypatch.setattr(cx, "read_sql", read_sql)
        df = extract.cx_read_sql_safe(conn="mssql://x", query="SELECT 1", sleep=lambda s: None)
        assert df.height == 1
        assert len(attempts) == 3

    def test_permanent_error_not_retried(self, cx, monkeypatch):
        attempts = []

        def read_sql(**kwargs):
            attempts.append(kwargs)
            raise RuntimeError("Invalid object name 'dbo.nope'")

        monkeypatch.setattr(cx, "read_sql", read_sql)
        with pytest.raises(RuntimeError):
            extract.cx_read_sql_safe(conn="mssql://x", query="SELECT 1", sleep=lambda s: None)
        assert len(attempts) == 1


class PanicException(BaseException):
    """Shape of pyo3's panic type: not an Exception subclass."""


class TestCxErrorClassification:
    @pytest.mark.parametrize("exc", [
        RuntimeError("TCP Provider: connection reset by peer"),
        FakeDbError("08S01", "Communication link failure"),
        PanicException("called `Result::unwrap()` on an `Err` value"),
    ])
    def test_retryable(self, exc):
        assert not extract._is_non_retryable_error(exc)

    @pytest.mark.parametrize("exc", [
        RuntimeError("Incorrect syntax near 'FROM'"),
        FakeDbError("42S02", "Invalid object name 'dbo.nope'"),
        KeyboardInterrupt(),
    ])
    def test_non_retryable(self, exc):
        assert extract._is_non_retryable_error(exc)
