"""
Stream batcher: decodes the source incrementally and writes it in windows.

Records are decoded one at a time and collected into windows of
``window_size`` rows. Each full window, and the trailing partial one, is
handed to the EntityBatchWriter and committed on its own. The first
failure stops the stream: later windows are never attempted and earlier
windows stay committed.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, TextIO

import structlog

from sales_ingest.errors import DecodeError, RefreshError, WriteError
from sales_ingest.records import RecordDecoder, SaleRecord
from sales_ingest.writer import EntityBatchWriter, RunState, WindowResult

log = structlog.get_logger()


@dataclass
class BatchSummary:
    """Outcome of a complete pass over the source."""
    rows_processed: int
    windows: int
    started_at: datetime
    completed_at: datetime

    @property
    def duration_seconds(self) -> float:
        return (self.completed_at - self.started_at).total_seconds()


class StreamBatcher:
    """Drives the writer once per window of decoded records."""

    def __init__(
        self,
        writer: EntityBatchWriter,
        state: RunState,
        columns: dict[str, str] | None = None,
        on_window: Callable[[WindowResult], None] | None = None,
    ):
        """
        Args:
            writer: Writer bound to the run's connection
            state: Run state; rows_committed is kept current after every window
            columns: Field -> header mapping for the decoder
            on_window: Optional callback after each committed window
        """
        self.writer = writer
        self.state = state
        self.columns = columns
        self.on_window = on_window

    def run(self, source: str | Path | TextIO, window_size: int) -> BatchSummary:
        """
        Decode the whole source and write it window by window.

        Args:
            source: Path to the CSV file, or an open text stream
            window_size: Records per transaction window

        Returns:
            BatchSummary with rows processed and timing

        Raises:
            DecodeError: If the header or any row is malformed
            WriteError: If a window's transaction fails
        """
        if window_size <= 0:
            raise ValueError("window_size must be positive")

        started_at = datetime.now(timezone.utc)

        if isinstance(source, (str, Path)):
            # utf-8-sig drops a leading byte order mark
            with open(source, newline="", encoding="utf-8-sig") as stream:
                self._consume(stream, window_size)
        else:
            self._consume(source, window_size)

        completed_at = datetime.now(timezone.utc)
        summary = BatchSummary(
            rows_processed=self.state.rows_committed,
            windows=self.state.windows_committed,
            started_at=started_at,
            completed_at=completed_at,
        )

        log.info(
            "stream_complete",
            rows=summary.rows_processed,
            windows=summary.windows,
            duration_seconds=summary.duration_seconds,
        )
        return summary

    def _consume(self, stream: TextIO, window_size: int) -> None:
        try:
            decoder = RecordDecoder(stream, self.columns)
            window: list[SaleRecord] = []
            for record in decoder:
                window.append(record)
                if len(window) >= window_size:
                    self._flush(window)
                    window = []
        except UnicodeDecodeError as e:
            raise DecodeError(f"Source is not valid UTF-8: {e.reason}") from e

        # Trailing partial window
        if window:
            self._flush(window)

    def _flush(self, window: list[SaleRecord]) -> None:
        number = self.state.windows_committed + 1
        try:
            result = self.writer.write(window, self.state)
        except RefreshError:
            raise
        except Exception as e:
            log.error(
                "window_failed",
                window=number,
                rows=len(window),
                first_line=window[0].line,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise WriteError(
                f"Window transaction failed: {e}",
                window=number,
                rows_committed=self.state.rows_committed,
            ) from e

        log.info(
            "window_committed",
            window=result.window,
            rows=result.rows,
            new_customers=result.customers,
            new_products=result.products,
            orders=result.orders,
            items_replaced=result.items_deleted,
            total_rows=self.state.rows_committed,
        )
        if self.on_window:
            self.on_window(result)
