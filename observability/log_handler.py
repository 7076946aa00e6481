"""SqlServerLogHandler: custom logging.Handler -> ops.PushLog.

Every module uses standard logger = logging.getLogger(__name__) calls.
The handler holds the push RunId and destination path in thread-local context
and only records log lines emitted while a push context is set.
"""

from __future__ import annotations

import logging
import sys
import threading
import traceback
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable

import config
import connections

if TYPE_CHECKING:
    import pyodbc


class SqlServerLogHandler(logging.Handler):
    """Logging handler that writes log records to ops.PushLog.

    Usage:
        handler = SqlServerLogHandler()
        handler.set_context(run_id="3f2c...", path="sales/orders")
        logging.getLogger().addHandler(handler)
    """

    def __init__(
        self,
        level: int = logging.INFO,
        connect: Callable[[], pyodbc.Connection] | None = None,
        buffer_size: int = 10,
    ) -> None:
        super().__init__(level)
        self._context = threading.local()
        self._buffer: list[tuple] = []
        self._buffer_lock = threading.Lock()
        self._buffer_size = buffer_size
        self._connect = connect or (
            lambda: connections.get_connection(config.LOG_DB, autocommit=False)
        )

    def set_context(self, run_id: str | None = None, path: str | None = None) -> None:
        if run_id is not None:
            self._context.run_id = run_id
        self._context.path = path

    def _get_context(self) -> tuple[str | None, str | None]:
        return (
            getattr(self._context, "run_id", None),
            getattr(self._context, "path", None),
        )

    def emit(self, record: logging.LogRecord) -> None:
        try:
            run_id, path = self._get_context()
            if run_id is None:
                return

            error_type = None
            stack_trace = None
            if record.exc_info and record.exc_info[1]:
                error_type = type(record.exc_info[1]).__name__
                stack_trace = "".join(
                    traceback.format_exception(*record.exc_info)
                )[:4000]

            row = (
                run_id,
                path,
                record.levelname,
                record.name,
                record.funcName,
                self.format(record)[:4000],
                error_type,
                stack_trace,
                datetime.now(timezone.utc),
            )

            with self._buffer_lock:
                self._buffer.append(row)
                # Flush immediately on WARNING+, the entries most worth keeping
                # if the process dies.
                if len(self._buffer) >= self._buffer_size or record.levelno >= logging.WARNING:
                    self._flush_buffer()
        except Exception:
            self.handleError(record)

    def _flush_buffer(self) -> None:
        if not self._buffer:
            return
        rows = self._buffer[:]
        self._buffer.clear()

        try:
            conn = self._connect()
            try:
                cursor = conn.cursor()
                cursor.executemany(
                    """
                    INSERT INTO ops.PushLog (
                        RunId, TablePath, LogLevel, Module, FunctionName,
                        Message, ErrorType, StackTrace, CreatedAt
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    rows,
                )
                cursor.close()
                conn.commit()
            finally:
                conn.close()
        except Exception as flush_err:
            # Logging from inside a handler would recurse; report on stderr.
            print(
                f"[SqlServerLogHandler] FLUSH FAILED ({len(rows)} entries lost): "
                f"{flush_err}",
                file=sys.stderr,
            )

    def flush(self) -> None:
        with self._buffer_lock:
            self._flush_buffer()

    def close(self) -> None:
        self.flush()
        super().close()
