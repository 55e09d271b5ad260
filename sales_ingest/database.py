"""
DuckDB connection scope for refresh runs.

A run opens one connection when it starts and closes it when it ends,
whether it was started from the CLI, the scheduler or a library call.
Nothing else writes to the ingestion tables while a run holds its
connection; DuckDB's file lock keeps other processes out, and within one
process that is an operational constraint rather than an enforced lock.
"""

from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

import duckdb
import structlog

from sales_ingest.errors import DBConnectionError

log = structlog.get_logger()


def connect(db_path: str) -> duckdb.DuckDBPyConnection:
    """
    Open a DuckDB connection.

    Args:
        db_path: Database file, or ":memory:"

    Raises:
        DBConnectionError: If the file cannot be opened (missing directory,
            locked by another process, not a DuckDB file)
    """
    if db_path != ":memory:" and not Path(db_path).parent.exists():
        raise DBConnectionError("Database directory does not exist", str(Path(db_path).parent))
    try:
        return duckdb.connect(db_path)
    except duckdb.Error as e:
        raise DBConnectionError("Could not open database", f"{db_path}: {e}") from e


@contextmanager
def run_scope(db_path: str) -> Iterator[duckdb.DuckDBPyConnection]:
    """Connection owned by a single run; always closed on exit."""
    conn = connect(db_path)
    log.debug("connection_opened", db_path=db_path)
    try:
        yield conn
    finally:
        conn.close()
        log.debug("connection_closed", db_path=db_path)


@contextmanager
def transaction(conn: duckdb.DuckDBPyConnection) -> Iterator[duckdb.DuckDBPyConnection]:
    """
    Run a block inside BEGIN/COMMIT.

    Any exception rolls the transaction back and propagates unchanged.
    """
    conn.begin()
    try:
        yield conn
    except BaseException:
        conn.rollback()
        raise
    conn.commit()


@contextmanager
def registered(conn: duckdb.DuckDBPyConnection, name: str, frame: Any) -> Iterator[str]:
    """
    Expose a polars DataFrame to SQL under the given view name.

    DuckDB reads the frame through Arrow without copying it.
    """
    conn.register(name, frame)
    try:
        yield name
    finally:
        conn.unregister(name)
