"""Exception hierarchy for refresh runs.

Every failure a run can report derives from RefreshError, so callers can
catch one type and still branch on the subclass to decide whether a
re-run with the same file makes sense.
"""

from __future__ import annotations


class RefreshError(Exception):
    """Base exception for all refresh failures."""

    def __init__(self, message: str, details: str | None = None) -> None:
        self.message = message
        self.details = details
        super().__init__(f"{message}: {details}" if details else message)


class ConfigError(RefreshError):
    """Raised for invalid runtime configuration or refresh options."""


class DecodeError(RefreshError):
    """Raised when a source row is malformed or incomplete."""

    def __init__(
        self,
        message: str,
        line: int | None = None,
        field: str | None = None,
    ) -> None:
        self.line = line
        self.field = field
        location = []
        if line is not None:
            location.append(f"line {line}")
        if field is not None:
            location.append(f"field '{field}'")
        super().__init__(message, ", ".join(location) or None)


class SchemaError(RefreshError):
    """Raised when required tables are absent and cannot be created."""

    def __init__(self, message: str, missing: list[str] | None = None) -> None:
        self.missing = missing or []
        super().__init__(message, ", ".join(self.missing) or None)


class TruncateError(RefreshError):
    """Raised when the full reset fails; prior data is left intact."""

    def __init__(self, message: str, table: str | None = None) -> None:
        self.table = table
        super().__init__(message, table)


class WriteError(RefreshError):
    """Raised when a window transaction fails and is rolled back."""

    def __init__(self, message: str, window: int, rows_committed: int) -> None:
        self.window = window
        self.rows_committed = rows_committed
        super().__init__(
            message,
            f"window {window}, {rows_committed} rows committed before it",
        )


class DBConnectionError(RefreshError):
    """Raised when the database cannot be opened."""
