"""
Lookup-table resolution for regions, categories and payment methods.

The resolver maps a name to its surrogate id with an insert-or-fetch
against the lookup table, then remembers the answer for the rest of the
run. Ids resolved inside a window stay pending until that window commits,
so a rolled-back window never leaves ids in the cache that the database
does not have.
"""

import duckdb
import structlog

log = structlog.get_logger()

# Entity kind -> lookup table
LOOKUP_TABLES = {
    "region": "regions",
    "category": "categories",
    "payment_method": "payment_methods",
}


class ReferenceResolver:
    """Per-run name -> id cache for the lookup tables."""

    def __init__(self) -> None:
        self._cache: dict[str, dict[str, int]] = {kind: {} for kind in LOOKUP_TABLES}
        self._pending: dict[str, dict[str, int]] = {kind: {} for kind in LOOKUP_TABLES}
        self.lookups = 0    # database round trips, for logging

    def cached(self, kind: str, name: str) -> int | None:
        """Return the id if it is already known this run, without touching the database."""
        self._check_kind(kind)
        return self._cache[kind].get(name, self._pending[kind].get(name))

    def resolve(self, conn: duckdb.DuckDBPyConnection, kind: str, name: str) -> int:
        """
        Return the id for a lookup name, inserting the row on first sight.

        Safe to call repeatedly with the same name inside one transaction:
        the unique constraint on name turns a second insert into a no-op and
        the existing id is returned.

        Args:
            conn: Connection with the window's transaction open
            kind: "region", "category" or "payment_method"
            name: Lookup value from the source row
        """
        known = self.cached(kind, name)
        if known is not None:
            return known

        table = LOOKUP_TABLES[kind]
        row = conn.execute(
            f"INSERT INTO {table} (name) VALUES (?) ON CONFLICT (name) DO NOTHING RETURNING id",
            [name],
        ).fetchone()
        if row is None:
            # Already present from an earlier run
            row = conn.execute(f"SELECT id FROM {table} WHERE name = ?", [name]).fetchone()
        self.lookups += 1

        self._pending[kind][name] = row[0]
        return row[0]

    def commit(self) -> None:
        """Promote ids resolved in the committed window into the run cache."""
        for kind, pending in self._pending.items():
            self._cache[kind].update(pending)
            pending.clear()

    def discard(self) -> None:
        """Forget ids resolved in a rolled-back window."""
        for pending in self._pending.values():
            pending.clear()

    def size(self, kind: str) -> int:
        self._check_kind(kind)
        return len(self._cache[kind])

    @staticmethod
    def _check_kind(kind: str) -> None:
        if kind not in LOOKUP_TABLES:
            raise ValueError(f"Unknown lookup kind '{kind}'")
