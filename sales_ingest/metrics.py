"""
Ingestion metrics for Dynatrace.

One refresh produces one small batch of metric lines: the run outcome,
rows and windows committed, and duration. The scheduler adds a line for
every skipped tick. Lines are buffered and pushed with a single request
per run; with no endpoint or token configured the push is skipped.
"""

import threading
from pathlib import Path
from typing import TYPE_CHECKING, Any

import httpx
import structlog

from sales_ingest.config import Config

if TYPE_CHECKING:
    from sales_ingest.orchestrator import RunResult

log = structlog.get_logger()

PREFIX = "sales_ingest"


class MetricsClient:
    """Buffers run metrics and pushes them to the Dynatrace ingest API."""

    def __init__(self, config: Config) -> None:
        self.config = config
        self._lines: list[str] = []
        self._lock = threading.Lock()     # scheduler skips arrive from another thread
        self._token: str | None = None

    def record_run(self, result: "RunResult") -> None:
        """Record a successful refresh."""
        dims = {"mode": result.mode, "status": "success"}
        self._add("runs", "count", 1, dims)
        self._add("rows.processed", "gauge", result.rows_processed, dims)
        self._add("windows.committed", "gauge", result.windows, dims)
        self._add("run.duration_seconds", "gauge", round(result.duration_seconds, 3), dims)

    def record_failure(self, mode: str, error: BaseException) -> None:
        """
        Record a failed refresh.

        A WriteError carries the rows committed before the failing window;
        those are reported so partial loads show up on the rows chart.
        """
        dims = {"mode": mode, "status": "failed", "error_type": type(error).__name__}
        self._add("runs", "count", 1, dims)
        self._add("runs.failed", "count", 1, dims)
        rows_committed = getattr(error, "rows_committed", None)
        if rows_committed is not None:
            self._add("rows.processed", "gauge", rows_committed, dims)

    def record_skip(self, source: str) -> None:
        """Record a scheduler tick dropped because a run was in flight."""
        self._add("scheduler.skipped", "count", 1, {"source": source})

    @property
    def pending(self) -> list[str]:
        """Buffered metric lines not yet pushed."""
        with self._lock:
            return list(self._lines)

    def _add(self, name: str, kind: str, value: Any, dimensions: dict[str, Any]) -> None:
        dims = {"env": self.config.env, **dimensions}
        dim_str = ",".join(f"{k}={v}" for k, v in dims.items())
        with self._lock:
            self._lines.append(f"{PREFIX}.{name},{dim_str} {kind}={value}")
        log.debug("metric_recorded", metric=f"{PREFIX}.{name}", value=value)

    def _get_token(self) -> str | None:
        if self._token is None:
            token_path = Path(self.config.metrics_token_path)
            if not token_path.exists():
                log.debug("metrics_token_not_found", path=str(token_path))
                return None
            self._token = token_path.read_text().strip()
        return self._token

    def flush(self) -> None:
        """Push buffered lines; failures are logged and the lines dropped."""
        with self._lock:
            lines, self._lines = self._lines, []
        if not lines:
            return

        token = self._get_token()
        if not token or not self.config.metrics_endpoint:
            log.debug("metrics_flush_skipped", dropped=len(lines))
            return

        try:
            response = httpx.post(
                f"{self.config.metrics_endpoint}/api/v2/metrics/ingest",
                headers={
                    "Authorization": f"Api-Token {token}",
                    "Content-Type": "text/plain",
                },
                content="\n".join(lines),
                timeout=10,
            )
        except httpx.HTTPError as e:
            log.warning("metrics_flush_error", error=str(e), dropped=len(lines))
            return

        if response.status_code == 202:
            log.info("metrics_flushed", count=len(lines))
        else:
            log.error(
                "metrics_flush_failed",
                status=response.status_code,
                body=response.text[:500],
            )
