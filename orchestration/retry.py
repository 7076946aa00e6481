"""Retry wrapper for transactional units of work.

transact_with_retry(xa, work, policy) runs a unit ``work(cursor) -> T`` in its
own transaction and re-runs it on transient database failures:

  - Each attempt opens a fresh connection through the Transactor. A failed
    attempt is rolled back and its connection closed, so a unit that failed
    halfway leaves nothing behind and a dead link is never reused. Units are
    written to be re-runnable from scratch (existence-guarded DDL, explicit
    commits at the end only).
  - Exponential backoff from base_delay, capped at max_delay.
  - Gives up when the next attempt would start after max_duration seconds
    (or after max_attempts, when set) and re-raises the last error.
  - Permanent errors (syntax, permissions, missing objects, validation
    errors raised by this package) are never retried.

Staging setup and teardown are never wrapped.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, TypeVar

import config
from data_load.render import ColumnOrderError
from orchestration.destination import ResourceError

if TYPE_CHECKING:
    import pyodbc

    from connections import Transactor

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget for one unit of work.

    Attributes:
        max_duration: Seconds after the first attempt during which new attempts
            may start.
        base_delay: Delay before the second attempt; doubles per attempt.
        max_delay: Upper bound for a single delay.
        max_attempts: Optional hard cap on attempts (None = duration only).
    """

    max_duration: float = config.RETRY_MAX_DURATION_SECONDS
    base_delay: float = config.RETRY_BASE_DELAY_SECONDS
    max_delay: float = config.RETRY_MAX_DELAY_SECONDS
    max_attempts: int | None = None

    def delay_for(self, attempt: int) -> float:
        """Delay after a failed ``attempt`` (1-based)."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)


# Runs the unit exactly once.
NO_RETRY = RetryPolicy(max_duration=0.0, max_attempts=1)


# Errors raised by this package for bad input. Retrying cannot fix them.
_PERMANENT_TYPES = (ValueError, TypeError, KeyError, ResourceError, ColumnOrderError)

# SQLSTATE classes/codes (first element of pyodbc error args) worth retrying.
_TRANSIENT_SQLSTATES = (
    "08",      # connection exception class (08S01 link failure, 08001 ...)
    "40001",   # serialization failure / deadlock victim
    "HYT00",   # timeout expired
    "HYT01",   # connection timeout expired
)

_TRANSIENT_PATTERNS = (
    "deadlock",
    "connection reset",
    "connection refused",
    "communication link failure",
    "timeout",
    "timed out",
    "broken pipe",
    "network",
    "server is not available",
    "transport-level error",
    "lock request time out",
)

_NON_RETRYABLE_PATTERNS = (
    "syntax",
    "permission",
    "does not exist",
    "invalid column",
    "invalid object",
    "login failed",
    "access denied",
    "there is already an object named",
    "cannot insert the value null",
    "conversion failed",
    "string or binary data would be truncated",
)


def is_transient_error(exc: BaseException) -> bool:
    """Classify a failure as transient (retry) or permanent (raise)."""
    if isinstance(exc, _PERMANENT_TYPES):
        return False
    if not isinstance(exc, Exception):
        # KeyboardInterrupt, SystemExit, GeneratorExit
        return False

    sqlstate = exc.args[0] if exc.args and isinstance(exc.args[0], str) else ""
    if any(sqlstate.startswith(s) for s in _TRANSIENT_SQLSTATES):
        return True

    error_str = str(exc).lower()
    # Transient patterns win over permanent ones ("timeout ... does not exist").
    for pattern in _TRANSIENT_PATTERNS:
        if pattern in error_str:
            return True
    for pattern in _NON_RETRYABLE_PATTERNS:
        if pattern in error_str:
            return False

    # Default: assume retryable
    return True


def transact_with_retry(
    xa: Transactor,
    work: Callable[[pyodbc.Cursor], T],
    policy: RetryPolicy,
    *,
    context: str = "",
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> T:
    """Run ``work`` in its own transaction, re-running it on transient failures.

    Every attempt goes through ``xa.transact``: a fresh connection, rolled back
    and closed when the attempt fails. A connection broken by a link failure
    is never reused.

    Args:
        xa: Transactor for the target database.
        work: Unit of work taking the session cursor.
        policy: Retry budget.
        context: Description for log messages (e.g. "ingest dbo/orders").
        sleep: Injected for tests.
        clock: Injected for tests.

    Returns:
        The result of the successful attempt.
    """
    started = clock()
    attempt = 0
    while True:
        attempt += 1
        try:
            return xa.transact(work)
        except Exception as e:
            error_type = type(e).__name__
            if not is_transient_error(e):
                if attempt > 1:
                    logger.error(
                        "%s failed after %d attempts (%s: %s) [non-retryable]",
                        context, attempt, error_type, e,
                    )
                raise

            delay = policy.delay_for(attempt)
            out_of_attempts = (
                policy.max_attempts is not None and attempt >= policy.max_attempts
            )
            out_of_time = clock() - started + delay > policy.max_duration
            if out_of_attempts or out_of_time:
                logger.error(
                    "%s failed after %d attempts (%s: %s), retry budget exhausted",
                    context, attempt, error_type, e,
                )
                raise

            logger.warning(
                "%s attempt %d failed (%s: %s). Retrying in %.1fs...",
                context, attempt, error_type, e, delay,
            )
            sleep(delay)
