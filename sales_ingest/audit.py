"""Run audit records in data_refresh_logs."""

from dataclasses import dataclass
from datetime import datetime, timezone

import duckdb
import structlog

log = structlog.get_logger()

STATUS_PROCESSING = "processing"
STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"

MAX_HISTORY_PAGE = 100


@dataclass
class RunLogEntry:
    """One row of data_refresh_logs."""
    id: int
    filename: str
    rows_processed: int
    status: str
    start_time: datetime
    end_time: datetime
    error_message: str | None


def _naive_utc(value: datetime) -> datetime:
    """TIMESTAMP columns hold UTC wall-clock time without an offset."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class RunLogWriter:
    """
    Writes the audit row for one run.

    The row is created in "processing" state when the run starts and
    finalized once. Writes are best effort: a failure is logged and never
    replaces the error the run itself is reporting.
    """

    def __init__(self, conn: duckdb.DuckDBPyConnection) -> None:
        self.conn = conn
        self.log_id: int | None = None

    def start(self, filename: str, started_at: datetime) -> int | None:
        """Insert the "processing" row; returns its id, or None if it could not be written."""
        try:
            row = self.conn.execute(
                """
                INSERT INTO data_refresh_logs
                    (filename, rows_processed, status, start_time, end_time)
                VALUES (?, 0, ?, ?, ?)
                RETURNING id
                """,
                [filename, STATUS_PROCESSING, _naive_utc(started_at), _naive_utc(started_at)],
            ).fetchone()
            self.log_id = row[0]
            log.info("run_log_created", log_id=self.log_id, filename=filename)
        except Exception as e:
            log.warning("run_log_create_failed", filename=filename, error=str(e))
            self.log_id = None
        return self.log_id

    def succeed(self, rows_processed: int, ended_at: datetime) -> None:
        self._finish(STATUS_SUCCESS, rows_processed, ended_at, None)

    def fail(self, rows_processed: int, ended_at: datetime, error: str) -> None:
        """Mark the run failed, recording the rows committed before the failure."""
        self._finish(STATUS_FAILED, rows_processed, ended_at, error or "unknown error")

    def _finish(
        self,
        status: str,
        rows_processed: int,
        ended_at: datetime,
        error: str | None,
    ) -> None:
        if self.log_id is None:
            log.warning("run_log_finalize_skipped", status=status, reason="no log row")
            return
        try:
            self.conn.execute(
                """
                UPDATE data_refresh_logs
                SET rows_processed = ?, status = ?, end_time = ?, error_message = ?
                WHERE id = ?
                """,
                [rows_processed, status, _naive_utc(ended_at), error, self.log_id],
            )
            log.info(
                "run_log_finalized",
                log_id=self.log_id,
                status=status,
                rows_processed=rows_processed,
            )
        except Exception as e:
            log.warning(
                "run_log_finalize_failed",
                log_id=self.log_id,
                status=status,
                error=str(e),
            )


def fetch_run_history(
    conn: duckdb.DuckDBPyConnection,
    limit: int = 20,
    offset: int = 0,
) -> list[RunLogEntry]:
    """
    Page through past runs, newest first.

    Args:
        conn: Open connection
        limit: Page size, 1..100
        offset: Rows to skip

    Raises:
        ValueError: If limit or offset is out of range
    """
    if not 1 <= limit <= MAX_HISTORY_PAGE:
        raise ValueError(f"limit must be between 1 and {MAX_HISTORY_PAGE}")
    if offset < 0:
        raise ValueError("offset must not be negative")

    rows = conn.execute(
        """
        SELECT id, filename, rows_processed, status, start_time, end_time, error_message
        FROM data_refresh_logs
        ORDER BY start_time DESC, id DESC
        LIMIT ? OFFSET ?
        """,
        [limit, offset],
    ).fetchall()
    return [RunLogEntry(*row) for row in rows]


def count_runs(conn: duckdb.DuckDBPyConnection) -> int:
    return conn.execute("SELECT count(*) FROM data_refresh_logs").fetchone()[0]
