"""
Configuration management for Sales Ingest.

This module handles:
- Loading environment variables into a typed Config dataclass
- Validating per-run refresh options (mode, window size, provisioning)
- Loading an optional YAML column mapping that renames CSV headers
- Parsing refresh intervals such as "30min" or "1h"
"""

import os
import re
from dataclasses import dataclass
from pathlib import Path

import yaml

from sales_ingest.errors import ConfigError

MODE_APPEND = "append"
MODE_OVERWRITE = "overwrite"
MODES = (MODE_APPEND, MODE_OVERWRITE)

DEFAULT_BATCH_SIZE = 1000

# Canonical field name -> header in the source CSV
DEFAULT_COLUMNS: dict[str, str] = {
    "order_id": "Order ID",
    "product_id": "Product ID",
    "customer_id": "Customer ID",
    "product_name": "Product Name",
    "category": "Category",
    "region": "Region",
    "order_date": "Date of Sale",
    "quantity": "Quantity Sold",
    "unit_price": "Unit Price",
    "discount": "Discount",
    "shipping_cost": "Shipping Cost",
    "payment_method": "Payment Method",
    "customer_name": "Customer Name",
    "customer_email": "Customer Email",
    "customer_address": "Customer Address",
}

_INTERVAL_PATTERN = re.compile(r"^(\d+)(s|min|h|d)$")
_INTERVAL_UNITS = {"s": 1, "min": 60, "h": 3600, "d": 86400}


def _env_flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Config:
    """
    Application configuration loaded from environment variables.

    CLI flags override individual fields via dataclasses.replace.
    """
    # Storage
    db_path: str                        # DuckDB database file

    # Run defaults
    batch_size: int                     # Rows per transaction window
    mode: str                           # "append" or "overwrite"
    provision_schema: bool              # Create missing tables before loading
    interval: str | None = None         # Recurring period, e.g. "1h"; None runs once
    column_mapping_path: str | None = None  # YAML overriding DEFAULT_COLUMNS

    # Observability
    env: str = "dev"
    log_level: str = "INFO"
    metrics_endpoint: str = ""
    metrics_token_path: str = "/secrets/metrics-token"

    @classmethod
    def from_env(cls) -> "Config":
        """
        Load configuration from environment variables.

        Optional:
            INGEST_DB_PATH: DuckDB file (default: sales.duckdb)
            INGEST_BATCH_SIZE: Window size (default: 1000)
            INGEST_MODE: append or overwrite (default: append)
            INGEST_CREATE_SCHEMA: Create missing tables (default: true)
            INGEST_INTERVAL: Recurring period (default: unset)
            INGEST_COLUMN_MAPPING: Column mapping YAML (default: unset)
            ENV, LOG_LEVEL, METRICS_ENDPOINT, METRICS_TOKEN_PATH
        """
        try:
            batch_size = int(os.environ.get("INGEST_BATCH_SIZE", str(DEFAULT_BATCH_SIZE)))
        except ValueError as e:
            raise ConfigError("INGEST_BATCH_SIZE must be an integer", str(e)) from e

        return cls(
            db_path=os.environ.get("INGEST_DB_PATH", "sales.duckdb"),
            batch_size=batch_size,
            mode=os.environ.get("INGEST_MODE", MODE_APPEND),
            provision_schema=_env_flag("INGEST_CREATE_SCHEMA", "true"),
            interval=os.environ.get("INGEST_INTERVAL") or None,
            column_mapping_path=os.environ.get("INGEST_COLUMN_MAPPING") or None,
            env=os.environ.get("ENV", "dev"),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
            metrics_endpoint=os.environ.get("METRICS_ENDPOINT", ""),
            metrics_token_path=os.environ.get("METRICS_TOKEN_PATH", "/secrets/metrics-token"),
        )

    def refresh_options(self) -> "RefreshOptions":
        """Build validated RefreshOptions from the configured defaults."""
        return RefreshOptions(
            mode=self.mode,
            batch_size=self.batch_size,
            provision_schema=self.provision_schema,
            columns=load_column_mapping(self.column_mapping_path),
        )


@dataclass(frozen=True)
class RefreshOptions:
    """Options for a single refresh run."""
    mode: str = MODE_APPEND
    batch_size: int = DEFAULT_BATCH_SIZE
    provision_schema: bool = True
    columns: dict[str, str] | None = None   # None means DEFAULT_COLUMNS

    def __post_init__(self) -> None:
        if self.mode not in MODES:
            raise ConfigError(f"Invalid refresh mode '{self.mode}'", f"expected one of {MODES}")
        if self.batch_size <= 0:
            raise ConfigError("Batch size must be positive", str(self.batch_size))

    @property
    def overwrite(self) -> bool:
        return self.mode == MODE_OVERWRITE


def load_column_mapping(path: str | None) -> dict[str, str]:
    """
    Load header overrides from a YAML file and merge them over the defaults.

    Only the fields being renamed need to appear:

        customer_email: "E-mail"
        order_date: "Sold On"

    Args:
        path: YAML file path, or None for the default headers

    Returns:
        Complete field -> header mapping

    Raises:
        ConfigError: If the file is missing, malformed or names unknown fields
    """
    columns = dict(DEFAULT_COLUMNS)
    if not path:
        return columns

    mapping_path = Path(path)
    if not mapping_path.exists():
        raise ConfigError("Column mapping file not found", str(mapping_path))

    try:
        raw = yaml.safe_load(mapping_path.read_text())
    except yaml.YAMLError as e:
        raise ConfigError("Column mapping is not valid YAML", str(e)) from e

    # Empty file keeps the defaults
    if not raw:
        return columns
    if not isinstance(raw, dict):
        raise ConfigError("Column mapping must be a field: header mapping", str(mapping_path))

    unknown = sorted(set(raw) - set(DEFAULT_COLUMNS))
    if unknown:
        raise ConfigError("Unknown fields in column mapping", ", ".join(unknown))

    for field_name, header in raw.items():
        columns[field_name] = str(header).strip()
    return columns


def parse_interval(value: str) -> int:
    """
    Parse a refresh interval into seconds.

    Accepts an integer followed by s, min, h or d (e.g. "10s", "30min", "1d").

    Raises:
        ConfigError: If the value does not match the format or is zero
    """
    match = _INTERVAL_PATTERN.match(value.strip())
    if not match:
        raise ConfigError(
            f"Invalid interval '{value}'",
            "use a format like 10s, 30min, 1h or 1d",
        )
    seconds = int(match.group(1)) * _INTERVAL_UNITS[match.group(2)]
    if seconds == 0:
        raise ConfigError(f"Invalid interval '{value}'", "interval must be positive")
    return seconds
