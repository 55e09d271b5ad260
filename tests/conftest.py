"""
Pytest configuration and shared fixtures.
"""
import csv
from pathlib import Path
from typing import Any, Callable, Dict, List

import duckdb
import pytest

from sales_ingest.config import DEFAULT_COLUMNS, Config


def sale_row(**overrides: Any) -> Dict[str, Any]:
    """One source row keyed by field name, with sensible defaults."""
    row = {
        "order_id": "ORD-1001",
        "product_id": "PRD-1",
        "customer_id": "CUST-1",
        "product_name": "Trail Running Shoes",
        "category": "Footwear",
        "region": "North America",
        "order_date": "2024-01-15",
        "quantity": "2",
        "unit_price": "180.00",
        "discount": "0.10",
        "shipping_cost": "12.50",
        "payment_method": "Credit Card",
        "customer_name": "Ada Lovelace",
        "customer_email": "ada@example.com",
        "customer_address": "12 Analytical Way, London, UK",
    }
    row.update(overrides)
    return row


@pytest.fixture
def db_path(tmp_path: Path) -> str:
    return str(tmp_path / "sales.duckdb")


@pytest.fixture
def config(db_path: str, tmp_path: Path) -> Config:
    return Config(
        db_path=db_path,
        batch_size=1000,
        mode="append",
        provision_schema=True,
        metrics_token_path=str(tmp_path / "no-token"),
    )


@pytest.fixture
def write_csv(tmp_path: Path) -> Callable[..., Path]:
    """Write rows (dicts keyed by field name) to a CSV with the default headers."""
    counter = {"n": 0}

    def _write(rows: List[Dict[str, Any]], name: str | None = None) -> Path:
        counter["n"] += 1
        path = tmp_path / (name or f"sales_{counter['n']}.csv")
        fields = list(DEFAULT_COLUMNS)
        with open(path, "w", newline="", encoding="utf-8") as f:
            writer = csv.writer(f)
            writer.writerow([DEFAULT_COLUMNS[field] for field in fields])
            for row in rows:
                writer.writerow([row.get(field, "") for field in fields])
        return path

    return _write


@pytest.fixture
def query(db_path: str) -> Callable[..., List[tuple]]:
    """Run a query on a short-lived connection to the test database."""

    def _query(sql: str, params: list | None = None) -> List[tuple]:
        conn = duckdb.connect(db_path)
        try:
            return conn.execute(sql, params or []).fetchall()
        finally:
            conn.close()

    return _query


@pytest.fixture
def make_row() -> Callable[..., Dict[str, Any]]:
    return sale_row
