"""Tests for the retry wrapper (orchestration/retry.py)."""

from __future__ import annotations

import pytest
from conftest import FakeDbError, permanent_error, transient_error

from data_load.render import ColumnOrderError
from orchestration.destination import AccessDeniedError
from orchestration.retry import NO_RETRY, RetryPolicy, is_transient_error, transact_with_retry


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def flaky(failures: list[Exception], result="ok", drop_link: bool = False):
    calls = []

    def work(cur):
        calls.append(cur)
        if failures:
            if drop_link:
                cur.connection.broken = True
            raise failures.pop(0)
        return result

    return work, calls


def _run(xa, work, policy, clock):
    return transact_with_retry(xa, work, policy, context="test", sleep=clock.sleep, clock=clock)


class TestTransactWithRetry:
    def test_success_first_try(self, xa, server):
        clock = FakeClock()
        work, calls = flaky([])
        assert _run(xa, work, RetryPolicy(), clock) == "ok"
        assert len(calls) == 1
        assert len(server.connections) == 1
        assert server.connections[0].rollbacks == 0

    def test_transient_failures_rerun_on_fresh_connections(self, xa, server):
        clock = FakeClock()
        work, calls = flaky([transient_error(), transient_error()])
        assert _run(xa, work, RetryPolicy(base_delay=1.0, max_delay=30.0), clock) == "ok"
        assert len(calls) == 3
        assert len(server.connections) == 3
        assert [c.rollbacks for c in server.connections] == [1, 1, 0]
        assert all(c.closed for c in server.connections)
        assert clock.sleeps == [1.0, 2.0]

    def test_recovers_from_dropped_link(self, xa, server):
        clock = FakeClock()
        work, calls = flaky([transient_error()], drop_link=True)
        assert _run(xa, work, RetryPolicy(base_delay=0.0), clock) == "ok"
        assert len(calls) == 2
        first, second = server.connections
        assert first.broken and first.closed
        assert not second.broken

    def test_backoff_is_capped(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=5.0)
        assert [policy.delay_for(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_permanent_error_not_retried(self, xa, server):
        clock = FakeClock()
        work, calls = flaky([permanent_error()])
        with pytest.raises(FakeDbError):
            _run(xa, work, RetryPolicy(), clock)
        assert len(calls) == 1
        assert server.connections[0].rollbacks == 1
        assert server.connections[0].closed

    def test_duration_budget_exhausted(self, xa):
        clock = FakeClock()
        work, calls = flaky([transient_error() for _ in range(10)])
        policy = RetryPolicy(max_duration=10.0, base_delay=4.0, max_delay=4.0)
        with pytest.raises(FakeDbError):
            _run(xa, work, policy, clock)
        # attempts start at t=0, 4, 8; the next would start at 12 > 10
        assert len(calls) == 3

    def test_attempt_budget_exhausted(self, xa):
        clock = FakeClock()
        work, calls = flaky([transient_error() for _ in range(10)])
        policy = RetryPolicy(max_attempts=2, base_delay=0.0)
        with pytest.raises(FakeDbError):
            _run(xa, work, policy, clock)
        assert len(calls) == 2

    def test_no_retry_runs_once(self, xa):
        clock = FakeClock()
        work, calls = flaky([transient_error()])
        with pytest.raises(FakeDbError):
            _run(xa, work, NO_RETRY, clock)
        assert len(calls) == 1

    def test_original_error_survives_failed_rollback(self, xa):
        clock = FakeClock()
        original = transient_error()
        work, calls = flaky([original], drop_link=True)
        with pytest.raises(FakeDbError) as exc_info:
            _run(xa, work, NO_RETRY, clock)
        assert exc_info.value is original


class TestIsTransientError:
    @pytest.mark.parametrize("exc", [
        FakeDbError("08S01", "Communication link failure"),
        FakeDbError("40001", "Transaction was deadlocked on lock resources"),
        FakeDbError("HYT00", "Query timeout expired"),
        RuntimeError("TCP Provider: connection reset by peer"),
        RuntimeError("something unexpected"),
    ])
    def test_transient(self, exc):
        assert is_transient_error(exc)

    @pytest.mark.parametrize("exc", [
        FakeDbError("42000", "Incorrect syntax near 'FROM'"),
        FakeDbError("42S01", "There is already an object named 'orders' in the database."),
        FakeDbError("28000", "Login failed for user 'sa'"),
        ValueError("bad input"),
        AccessDeniedError("orders", "Create mode is set but the table exists already"),
        ColumnOrderError("missing column"),
        KeyboardInterrupt(),
    ])
    def test_permanent(self, exc):
        assert not is_transient_error(exc)
