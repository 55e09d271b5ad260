"""
Schema verification and provisioning.

Tables use VARCHAR external ids for customers, products and orders and
sequence-backed surrogate ids for the lookup tables, order items and run
logs. Foreign keys are not declared: DuckDB refuses ON CONFLICT updates on
rows referenced by a foreign key, so integrity comes from write order
inside each window transaction.
"""

import duckdb
import structlog

from sales_ingest.errors import SchemaError

log = structlog.get_logger()

REQUIRED_TABLES = (
    "customers",
    "regions",
    "categories",
    "payment_methods",
    "products",
    "orders",
    "order_items",
    "data_refresh_logs",
)

SCHEMA_DDL = """
CREATE SEQUENCE IF NOT EXISTS regions_id_seq;
CREATE SEQUENCE IF NOT EXISTS categories_id_seq;
CREATE SEQUENCE IF NOT EXISTS payment_methods_id_seq;
CREATE SEQUENCE IF NOT EXISTS order_items_id_seq;
CREATE SEQUENCE IF NOT EXISTS data_refresh_logs_id_seq;

CREATE TABLE IF NOT EXISTS customers (
    customer_id VARCHAR(50) PRIMARY KEY,
    name VARCHAR(100) NOT NULL,
    email VARCHAR(100) NOT NULL,
    address TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS regions (
    id INTEGER PRIMARY KEY DEFAULT nextval('regions_id_seq'),
    name VARCHAR(100) UNIQUE NOT NULL
);

CREATE TABLE IF NOT EXISTS categories (
    id INTEGER PRIMARY KEY DEFAULT nextval('categories_id_seq'),
    name VARCHAR(100) UNIQUE NOT NULL
);

CREATE TABLE IF NOT EXISTS payment_methods (
    id INTEGER PRIMARY KEY DEFAULT nextval('payment_methods_id_seq'),
    name VARCHAR(100) UNIQUE NOT NULL
);

CREATE TABLE IF NOT EXISTS products (
    product_id VARCHAR(50) PRIMARY KEY,
    name VARCHAR(255) NOT NULL,
    category_id INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS orders (
    order_id VARCHAR(50) PRIMARY KEY,
    customer_id VARCHAR(50) NOT NULL,
    region_id INTEGER NOT NULL,
    payment_method_id INTEGER NOT NULL,
    order_date DATE NOT NULL,
    shipping_cost DECIMAL(10, 2) NOT NULL
);

CREATE TABLE IF NOT EXISTS order_items (
    id INTEGER PRIMARY KEY DEFAULT nextval('order_items_id_seq'),
    order_id VARCHAR(50) NOT NULL,
    product_id VARCHAR(50) NOT NULL,
    quantity INTEGER NOT NULL CHECK (quantity > 0),
    unit_price DECIMAL(10, 2) NOT NULL,
    discount DECIMAL(5, 2) NOT NULL CHECK (discount BETWEEN 0 AND 1)
);

CREATE TABLE IF NOT EXISTS data_refresh_logs (
    id INTEGER PRIMARY KEY DEFAULT nextval('data_refresh_logs_id_seq'),
    filename VARCHAR(255) NOT NULL,
    rows_processed INTEGER NOT NULL,
    status VARCHAR(20) NOT NULL,
    start_time TIMESTAMP NOT NULL,
    end_time TIMESTAMP NOT NULL,
    error_message TEXT
);
"""


def missing_tables(conn: duckdb.DuckDBPyConnection) -> list[str]:
    """Return the required tables that do not exist in the current schema."""
    rows = conn.execute(
        """
        SELECT table_name
        FROM information_schema.tables
        WHERE table_schema = current_schema()
        """
    ).fetchall()
    existing = {row[0] for row in rows}
    return [table for table in REQUIRED_TABLES if table not in existing]


def create_schema(conn: duckdb.DuckDBPyConnection) -> None:
    """Create every sequence and table that does not exist yet."""
    conn.execute(SCHEMA_DDL)


def ensure_schema(conn: duckdb.DuckDBPyConnection, create_if_missing: bool) -> None:
    """
    Verify that all required tables exist, creating them if allowed.

    Args:
        conn: Open connection
        create_if_missing: Run the DDL when tables are missing

    Raises:
        SchemaError: If the catalog cannot be read, or tables are missing and
            creation is disabled or fails
    """
    try:
        missing = missing_tables(conn)
    except duckdb.Error as e:
        raise SchemaError(f"Schema check failed: {e}", list(REQUIRED_TABLES)) from e
    if not missing:
        log.info("schema_verified", tables=len(REQUIRED_TABLES))
        return

    log.warning("schema_incomplete", missing=missing)
    if not create_if_missing:
        raise SchemaError("Schema is incomplete and provisioning is disabled", missing)

    try:
        create_schema(conn)
    except duckdb.Error as e:
        raise SchemaError(f"Schema creation failed: {e}", missing) from e

    still_missing = missing_tables(conn)
    if still_missing:
        raise SchemaError("Schema creation did not create all tables", still_missing)

    log.info("schema_created", created=missing)
