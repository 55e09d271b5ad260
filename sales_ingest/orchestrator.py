"""
Refresh orchestration: one complete, audited pass over a source file.

A refresh:
1. Opens the run's connection
2. Verifies the schema, creating missing tables if provisioning is on
3. Inserts a "processing" row in data_refresh_logs
4. In overwrite mode, truncates every ingestion table in one transaction
5. Streams the file through the batcher, one transaction per window
6. Finalizes the log row as "success" or "failed" and closes the connection

Failures after step 3 are always written to the log row, with the number
of rows committed before the failing window, and then re-raised.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

import duckdb
import structlog

from sales_ingest.audit import RunLogWriter
from sales_ingest.batcher import StreamBatcher
from sales_ingest.config import Config, RefreshOptions
from sales_ingest.database import run_scope, transaction
from sales_ingest.errors import ConfigError, RefreshError, TruncateError
from sales_ingest.metrics import MetricsClient
from sales_ingest.schema import ensure_schema
from sales_ingest.writer import EntityBatchWriter, RunState

log = structlog.get_logger()

# Children before parents
TRUNCATE_ORDER = (
    "order_items",
    "orders",
    "products",
    "customers",
    "payment_methods",
    "categories",
    "regions",
)


@dataclass
class RunResult:
    """What a successful refresh reports back to its caller."""
    filename: str
    mode: str
    rows_processed: int
    windows: int
    started_at: datetime
    ended_at: datetime
    log_id: int | None

    @property
    def duration_seconds(self) -> float:
        return (self.ended_at - self.started_at).total_seconds()

    def as_dict(self) -> dict:
        return {
            "filename": self.filename,
            "mode": self.mode,
            "rows_processed": self.rows_processed,
            "windows": self.windows,
            "start_time": self.started_at.isoformat(),
            "end_time": self.ended_at.isoformat(),
            "duration_seconds": self.duration_seconds,
            "log_id": self.log_id,
        }


def truncate_all(conn: duckdb.DuckDBPyConnection) -> None:
    """
    Empty every ingestion table in dependency order, in one transaction.

    Raises:
        TruncateError: If any table fails; everything is rolled back
    """
    current = None
    try:
        with transaction(conn):
            for table in TRUNCATE_ORDER:
                current = table
                conn.execute(f"TRUNCATE {table}")
                log.info("table_truncated", table=table)
    except duckdb.Error as e:
        raise TruncateError(f"Truncate failed, existing data kept: {e}", current) from e


class RefreshOrchestrator:
    """Runs refreshes against the configured database."""

    def __init__(self, config: Config, metrics: MetricsClient | None = None) -> None:
        self.config = config
        self.metrics = metrics or MetricsClient(config)

    def refresh(self, file_path: str | Path, options: RefreshOptions | None = None) -> RunResult:
        """
        Load one file into the normalized tables.

        Args:
            file_path: CSV file to ingest
            options: Mode, window size and provisioning (default: from config)

        Returns:
            RunResult for the committed run

        Raises:
            ConfigError: If the file does not exist
            DBConnectionError: If the database cannot be opened
            SchemaError: If tables are missing and cannot be created
            TruncateError: If overwrite mode could not reset the tables
            DecodeError: If the source is malformed
            WriteError: If a window transaction failed
            RefreshError: For anything unexpected, after logging the run
        """
        options = options or self.config.refresh_options()
        path = Path(file_path)
        if not path.is_file():
            raise ConfigError("Source file not found", str(path))

        log.info(
            "refresh_started",
            filename=path.name,
            mode=options.mode,
            batch_size=options.batch_size,
            provision_schema=options.provision_schema,
        )

        try:
            result = self._run(path, options)
        except BaseException as e:
            self.metrics.record_failure(options.mode, e)
            raise
        else:
            self.metrics.record_run(result)
        finally:
            self.metrics.flush()

        log.info(
            "refresh_complete",
            filename=result.filename,
            rows=result.rows_processed,
            windows=result.windows,
            duration_seconds=result.duration_seconds,
            rows_per_second=round(result.rows_processed / result.duration_seconds)
            if result.duration_seconds > 0 else None,
        )
        return result

    def _run(self, path: Path, options: RefreshOptions) -> RunResult:
        with run_scope(self.config.db_path) as conn:
            ensure_schema(conn, options.provision_schema)

            started_at = datetime.now(timezone.utc)
            audit = RunLogWriter(conn)
            audit.start(path.name, started_at)
            state = RunState()

            try:
                if options.overwrite:
                    truncate_all(conn)

                batcher = StreamBatcher(EntityBatchWriter(conn), state, options.columns)
                summary = batcher.run(path, options.batch_size)

            except BaseException as e:
                ended_at = datetime.now(timezone.utc)
                audit.fail(state.rows_committed, ended_at, str(e))
                log.error(
                    "refresh_failed",
                    filename=path.name,
                    rows_committed=state.rows_committed,
                    windows_committed=state.windows_committed,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                if isinstance(e, RefreshError) or not isinstance(e, Exception):
                    raise
                raise RefreshError("Refresh failed unexpectedly", str(e)) from e

            ended_at = datetime.now(timezone.utc)
            audit.succeed(summary.rows_processed, ended_at)

        return RunResult(
            filename=path.name,
            mode=options.mode,
            rows_processed=summary.rows_processed,
            windows=summary.windows,
            started_at=started_at,
            ended_at=ended_at,
            log_id=audit.log_id,
        )
