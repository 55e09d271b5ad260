"""
Command-line driver for Sales Ingest.

Runs one refresh, or keeps refreshing on an interval until SIGINT/SIGTERM:

    python -m sales_ingest --file sales.csv
    python -m sales_ingest --file sales.csv --mode overwrite --interval 1h
    python -m sales_ingest --history 10

Flags override the environment configuration (see Config.from_env).
"""

import argparse
import json
import logging
import signal
import sys
import threading
from dataclasses import replace
from pathlib import Path
from typing import Any

import structlog

from sales_ingest.audit import count_runs, fetch_run_history
from sales_ingest.config import MODE_OVERWRITE, MODES, Config, parse_interval
from sales_ingest.database import run_scope
from sales_ingest.errors import ConfigError, RefreshError
from sales_ingest.orchestrator import RefreshOrchestrator
from sales_ingest.scheduler import schedule
from sales_ingest.schema import missing_tables

log = structlog.get_logger()


def configure_logging(level: str = "INFO", pretty: bool = False) -> None:
    """Configure structlog for JSON output (or console output with pretty=True)."""
    renderer = structlog.dev.ConsoleRenderer() if pretty else structlog.processors.JSONRenderer()
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sales-ingest",
        description="Load a denormalized sales CSV into the normalized sales schema",
    )
    parser.add_argument("-f", "--file", help="Path to the CSV file")
    parser.add_argument("-b", "--batch-size", type=int, help="Rows per transaction window")
    parser.add_argument("--mode", choices=MODES, help="append (default) or overwrite")
    parser.add_argument(
        "--truncate",
        action="store_true",
        help="Truncate existing data before import (same as --mode overwrite)",
    )
    parser.add_argument(
        "--create-schema",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Create missing tables before loading",
    )
    parser.add_argument("--interval", help="Refresh period, e.g. 10s, 30min, 1h, 1d")
    parser.add_argument("--db-path", help="DuckDB database file")
    parser.add_argument("--columns", help="YAML file overriding CSV header names")
    parser.add_argument(
        "--history",
        type=int,
        metavar="N",
        help="Print the N most recent runs and exit",
    )
    parser.add_argument("--pretty", action="store_true", help="Human-readable log output")
    return parser


def apply_args(config: Config, args: argparse.Namespace) -> Config:
    """Overlay command-line flags on the environment configuration."""
    overrides: dict[str, Any] = {}
    if args.db_path:
        overrides["db_path"] = args.db_path
    if args.batch_size is not None:
        overrides["batch_size"] = args.batch_size
    if args.mode:
        overrides["mode"] = args.mode
    if args.truncate:
        overrides["mode"] = MODE_OVERWRITE
    if args.create_schema is not None:
        overrides["provision_schema"] = args.create_schema
    if args.interval:
        overrides["interval"] = args.interval
    if args.columns:
        overrides["column_mapping_path"] = args.columns
    return replace(config, **overrides)


def print_history(config: Config, limit: int) -> int:
    empty = json.dumps({"total": 0, "runs": []})
    # Reading history never creates the database file
    if config.db_path != ":memory:" and not Path(config.db_path).exists():
        print(empty)
        return 0

    with run_scope(config.db_path) as conn:
        if "data_refresh_logs" in missing_tables(conn):
            print(empty)
            return 0
        entries = fetch_run_history(conn, limit=limit)
        total = count_runs(conn)

    runs = [
        {
            "id": e.id,
            "filename": e.filename,
            "rows_processed": e.rows_processed,
            "status": e.status,
            "start_time": e.start_time.isoformat(),
            "end_time": e.end_time.isoformat(),
            "error_message": e.error_message,
        }
        for e in entries
    ]
    print(json.dumps({"total": total, "runs": runs}, indent=2))
    return 0


def run_once(orchestrator: RefreshOrchestrator, file_path: str, config: Config) -> int:
    try:
        result = orchestrator.refresh(file_path, config.refresh_options())
    except RefreshError as e:
        log.error("upload_failed", error=str(e), error_type=type(e).__name__)
        return 1
    print(json.dumps(result.as_dict(), indent=2))
    return 0


def run_scheduled(orchestrator: RefreshOrchestrator, file_path: str, config: Config) -> int:
    period = parse_interval(config.interval)

    def _handle_shutdown(signum: int, frame: Any) -> None:
        log.info("shutdown_signal_received", signal=signum)
        stop_event.set()

    stop_event = threading.Event()
    signal.signal(signal.SIGTERM, _handle_shutdown)
    signal.signal(signal.SIGINT, _handle_shutdown)

    scheduler = schedule(
        orchestrator, file_path, config.refresh_options(), period, metrics=orchestrator.metrics,
    )
    try:
        while not stop_event.wait(1.0):
            pass
    finally:
        scheduler.stop()
    return 0


def main(argv: list[str] | None = None) -> int:
    """Entry point; returns the process exit code."""
    args = build_parser().parse_args(argv)

    try:
        config = apply_args(Config.from_env(), args)
        configure_logging(config.log_level, args.pretty)

        if args.history is not None:
            return print_history(config, args.history)

        if not args.file:
            log.error("missing_file_argument", hint="use --file or -f")
            return 1
        if not Path(args.file).is_file():
            log.error("file_not_found", path=args.file)
            return 1

        # Fail fast on bad options before touching the database
        config.refresh_options()
        orchestrator = RefreshOrchestrator(config)

        if config.interval:
            return run_scheduled(orchestrator, args.file, config)
        return run_once(orchestrator, args.file, config)

    except (ConfigError, ValueError) as e:
        log.error("invalid_configuration", error=str(e))
        return 1
    except RefreshError as e:
        log.error("command_failed", error=str(e), error_type=type(e).__name__)
        return 1


if __name__ == "__main__":
    sys.exit(main())
