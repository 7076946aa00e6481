"""Extract package: incremental reads from SQL Server.

cx_read_sql_safe() wraps ConnectorX with Rust panic recovery and retry.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING

from orchestration.retry import is_transient_error

if TYPE_CHECKING:
    import polars as pl

logger = logging.getLogger(__name__)

# Default retry configuration for ConnectorX calls.
_CX_MAX_RETRIES = 3
_CX_RETRY_BASE_DELAY = 2.0  # seconds, doubles each retry (exponential backoff)


def cx_read_sql_safe(
    *,
    conn: str,
    query: str,
    return_type: str = "polars",
    context: str = "",
    max_retries: int = _CX_MAX_RETRIES,
    sleep=time.sleep,
) -> pl.DataFrame:
    """Wrapper around cx.read_sql with Rust panic recovery and retry.

    ConnectorX errors manifest as Rust thread panics (PanicException) rather
    than standard Python exceptions. These may not inherit from Exception;
    they can inherit directly from BaseException. This wrapper catches
    BaseException to handle both regular errors and Rust panics.

    Retries with exponential backoff for transient failures (connection
    timeouts, SQL Server busy). Non-retryable errors (syntax errors,
    permission denied) fail immediately.

    Args:
        conn: ConnectorX connection URI.
        query: SQL query to execute.
        return_type: ConnectorX return type (default "polars").
        context: Description for log messages (e.g. "read dbo/orders").
        max_retries: Maximum attempts (default 3).
        sleep: Injected for tests.

    Returns:
        Polars DataFrame with the query result.

    Raises:
        BaseException: After all retries are exhausted, re-raises the last error.
    """
    import connectorx as cx

    last_error: BaseException | None = None

    for attempt in range(1, max_retries + 1):
        try:
            return cx.read_sql(conn=conn, query=query, return_type=return_type)
        except BaseException as e:
            last_error = e
            error_type = type(e).__name__
            non_retryable = _is_non_retryable_error(e)

            if non_retryable or attempt == max_retries:
                if attempt > 1:
                    logger.error(
                        "ConnectorX %s failed after %d attempts (%s: %s)%s",
                        context, attempt, error_type, e,
                        " [non-retryable]" if non_retryable else "",
                    )
                else:
                    logger.error(
                        "ConnectorX %s failed (%s: %s)%s",
                        context, error_type, e,
                        " [non-retryable]" if non_retryable else "",
                    )
                raise

            delay = _CX_RETRY_BASE_DELAY * (2 ** (attempt - 1))
            logger.warning(
                "ConnectorX %s attempt %d/%d failed (%s: %s). "
                "Retrying in %.1fs...",
                context, attempt, max_retries, error_type, e, delay,
            )
            sleep(delay)

    # Unreachable with max_retries >= 1
    raise last_error  # type: ignore[misc]


def _is_non_retryable_error(e: BaseException) -> bool:
    """Return True if a ConnectorX error should NOT be retried."""
    if isinstance(e, (KeyboardInterrupt, SystemExit, GeneratorExit)):
        return True
    if isinstance(e, Exception):
        return not is_transient_error(e)
    # Rust panics (pyo3 PanicException) derive from BaseException only
    return False
