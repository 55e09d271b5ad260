"""
Sales Ingest - incremental loader for denormalized sales extracts.

Reads a flat CSV (one row per sold line item) and materializes it into a
normalized DuckDB schema: regions, categories, payment methods, customers,
products, orders and order items. Every run is audited in data_refresh_logs.

Usage:
    python -m sales_ingest --file sales.csv [--mode overwrite] [--interval 1h]

Environment Variables:
    INGEST_DB_PATH: DuckDB database file (default: sales.duckdb)
    INGEST_BATCH_SIZE: Rows per transaction window (default: 1000)
    INGEST_MODE: "append" or "overwrite" (default: append)
    INGEST_CREATE_SCHEMA: Create missing tables (default: true)
    INGEST_INTERVAL: Re-run period such as 30min or 1h (default: run once)
    INGEST_COLUMN_MAPPING: Optional YAML file overriding CSV header names
"""

__version__ = "0.1.0"
