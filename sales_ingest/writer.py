"""
Window writer: makes the database consistent with one window of records.

All writes for a window happen in a single transaction, in dependency
order:

1. Resolve region, category and payment method names not yet seen this run
2. Upsert customers not yet seen this run (overwrite name, email, address)
3. Upsert products not yet seen this run (overwrite name, category)
4. Upsert every order in the window (overwrite customer, region, payment
   method, date, shipping cost)
5. Delete the existing line items of the window's orders, then insert
   every line item of the window

Line items have no natural key, so step 5's delete-then-insert is what
makes re-ingesting a file idempotent. The delete only covers orders whose
items have not been reset earlier in this run; an order split across two
windows keeps the items the first window wrote.

Any failure rolls back the whole window and propagates.
"""

from dataclasses import dataclass, field

import duckdb
import polars as pl
import structlog

from sales_ingest.database import registered, transaction
from sales_ingest.records import SaleRecord
from sales_ingest.resolver import ReferenceResolver

log = structlog.get_logger()

CUSTOMER_SCHEMA = {
    "customer_id": pl.Utf8,
    "name": pl.Utf8,
    "email": pl.Utf8,
    "address": pl.Utf8,
}

PRODUCT_SCHEMA = {
    "product_id": pl.Utf8,
    "name": pl.Utf8,
    "category_id": pl.Int64,
}

# Money travels as text and is cast to DECIMAL in SQL so no float rounding occurs
ORDER_SCHEMA = {
    "order_id": pl.Utf8,
    "customer_id": pl.Utf8,
    "region_id": pl.Int64,
    "payment_method_id": pl.Int64,
    "order_date": pl.Date,
    "shipping_cost": pl.Utf8,
}

ITEM_SCHEMA = {
    "order_id": pl.Utf8,
    "product_id": pl.Utf8,
    "quantity": pl.Int64,
    "unit_price": pl.Utf8,
    "discount": pl.Utf8,
}


@dataclass
class RunState:
    """
    Everything a run remembers between windows.

    Scoped to one refresh invocation and discarded afterwards; the database
    remains the source of truth.
    """
    resolver: ReferenceResolver = field(default_factory=ReferenceResolver)
    seen_customers: set[str] = field(default_factory=set)
    seen_products: set[str] = field(default_factory=set)
    reset_orders: set[str] = field(default_factory=set)   # items already replaced this run
    rows_committed: int = 0
    windows_committed: int = 0


@dataclass
class WindowResult:
    """Counts for one committed window."""
    window: int
    rows: int
    customers: int
    products: int
    orders: int
    items_deleted: int
    items_inserted: int


class EntityBatchWriter:
    """Writes windows of SaleRecords into the normalized tables."""

    def __init__(self, conn: duckdb.DuckDBPyConnection):
        self.conn = conn

    def write(self, records: list[SaleRecord], state: RunState) -> WindowResult:
        """
        Write one window inside a single transaction.

        On success the run state learns the window's new customers,
        products, lookup ids and reset orders. On failure the transaction is
        rolled back, the state is left as it was and the error propagates.

        Args:
            records: Decoded rows of the window, in source order
            state: Run state shared across the run's windows

        Returns:
            WindowResult with per-entity counts
        """
        window = state.windows_committed + 1

        new_customers = _first_by_key(
            (r for r in records if r.customer_id not in state.seen_customers),
            lambda r: r.customer_id,
        )
        new_products = _first_by_key(
            (r for r in records if r.product_id not in state.seen_products),
            lambda r: r.product_id,
        )
        orders = _first_by_key(records, lambda r: r.order_id)
        orders_to_reset = [oid for oid in orders if oid not in state.reset_orders]

        try:
            with transaction(self.conn):
                self._resolve_lookups(records, state.resolver)
                self._upsert_customers(list(new_customers.values()))
                self._upsert_products(list(new_products.values()), state.resolver)
                self._upsert_orders(list(orders.values()), state.resolver)
                deleted = self._delete_items(orders_to_reset)
                self._insert_items(records)
        except Exception:
            state.resolver.discard()
            raise

        state.resolver.commit()
        state.seen_customers.update(new_customers)
        state.seen_products.update(new_products)
        state.reset_orders.update(orders_to_reset)
        state.rows_committed += len(records)
        state.windows_committed = window

        return WindowResult(
            window=window,
            rows=len(records),
            customers=len(new_customers),
            products=len(new_products),
            orders=len(orders),
            items_deleted=deleted,
            items_inserted=len(records),
        )

    def _resolve_lookups(self, records: list[SaleRecord], resolver: ReferenceResolver) -> None:
        """Resolve every lookup name in the window that the run has not seen yet."""
        for record in records:
            resolver.resolve(self.conn, "region", record.region)
            resolver.resolve(self.conn, "category", record.category)
            resolver.resolve(self.conn, "payment_method", record.payment_method)

    def _upsert_customers(self, customers: list[SaleRecord]) -> None:
        if not customers:
            return
        frame = pl.from_dicts(
            [
                {
                    "customer_id": r.customer_id,
                    "name": r.customer_name,
                    "email": r.customer_email,
                    "address": r.customer_address,
                }
                for r in customers
            ],
            schema=CUSTOMER_SCHEMA,
        )
        with registered(self.conn, "window_customers", frame):
            self.conn.execute(
                """
                INSERT INTO customers (customer_id, name, email, address)
                SELECT customer_id, name, email, address FROM window_customers
                ON CONFLICT (customer_id) DO UPDATE SET
                    name = excluded.name,
                    email = excluded.email,
                    address = excluded.address
                """
            )
        log.debug("customers_upserted", count=len(customers))

    def _upsert_products(self, products: list[SaleRecord], resolver: ReferenceResolver) -> None:
        if not products:
            return
        frame = pl.from_dicts(
            [
                {
                    "product_id": r.product_id,
                    "name": r.product_name,
                    "category_id": resolver.cached("category", r.category),
                }
                for r in products
            ],
            schema=PRODUCT_SCHEMA,
        )
        with registered(self.conn, "window_products", frame):
            self.conn.execute(
                """
                INSERT INTO products (product_id, name, category_id)
                SELECT product_id, name, CAST(category_id AS INTEGER) FROM window_products
                ON CONFLICT (product_id) DO UPDATE SET
                    name = excluded.name,
                    category_id = excluded.category_id
                """
            )
        log.debug("products_upserted", count=len(products))

    def _upsert_orders(self, orders: list[SaleRecord], resolver: ReferenceResolver) -> None:
        if not orders:
            return
        frame = pl.from_dicts(
            [
                {
                    "order_id": r.order_id,
                    "customer_id": r.customer_id,
                    "region_id": resolver.cached("region", r.region),
                    "payment_method_id": resolver.cached("payment_method", r.payment_method),
                    "order_date": r.order_date,
                    "shipping_cost": str(r.shipping_cost),
                }
                for r in orders
            ],
            schema=ORDER_SCHEMA,
        )
        with registered(self.conn, "window_orders", frame):
            self.conn.execute(
                """
                INSERT INTO orders
                    (order_id, customer_id, region_id, payment_method_id, order_date, shipping_cost)
                SELECT
                    order_id,
                    customer_id,
                    CAST(region_id AS INTEGER),
                    CAST(payment_method_id AS INTEGER),
                    order_date,
                    CAST(shipping_cost AS DECIMAL(10, 2))
                FROM window_orders
                ON CONFLICT (order_id) DO UPDATE SET
                    customer_id = excluded.customer_id,
                    region_id = excluded.region_id,
                    payment_method_id = excluded.payment_method_id,
                    order_date = excluded.order_date,
                    shipping_cost = excluded.shipping_cost
                """
            )
        log.debug("orders_upserted", count=len(orders))

    def _delete_items(self, order_ids: list[str]) -> int:
        """Delete existing line items for the given orders; returns rows deleted."""
        if not order_ids:
            return 0
        frame = pl.DataFrame({"order_id": order_ids}, schema={"order_id": pl.Utf8})
        with registered(self.conn, "window_reset_orders", frame):
            deleted = self.conn.execute(
                """
                SELECT count(*) FROM order_items
                WHERE order_id IN (SELECT order_id FROM window_reset_orders)
                """
            ).fetchone()[0]
            if deleted:
                self.conn.execute(
                    """
                    DELETE FROM order_items
                    WHERE order_id IN (SELECT order_id FROM window_reset_orders)
                    """
                )
        return deleted

    def _insert_items(self, records: list[SaleRecord]) -> None:
        if not records:
            return
        frame = pl.from_dicts(
            [
                {
                    "order_id": r.order_id,
                    "product_id": r.product_id,
                    "quantity": r.quantity,
                    "unit_price": str(r.unit_price),
                    "discount": str(r.discount),
                }
                for r in records
            ],
            schema=ITEM_SCHEMA,
        )
        with registered(self.conn, "window_items", frame):
            self.conn.execute(
                """
                INSERT INTO order_items (order_id, product_id, quantity, unit_price, discount)
                SELECT
                    order_id,
                    product_id,
                    CAST(quantity AS INTEGER),
                    CAST(unit_price AS DECIMAL(10, 2)),
                    CAST(discount AS DECIMAL(5, 2))
                FROM window_items
                """
            )


def _first_by_key(records, key) -> dict[str, SaleRecord]:
    """First record per key, keeping source order."""
    result: dict[str, SaleRecord] = {}
    for record in records:
        result.setdefault(key(record), record)
    return result
