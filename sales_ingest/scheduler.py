"""
Recurring refresh scheduler.

Runs a refresh immediately, then on a fixed period until stopped. Runs
never overlap: a tick that comes due while a run is in flight is skipped,
not queued, and counted in ``runs_skipped``. A manual ``trigger()`` follows
the same rule and returns False when it had to skip.

``stop()`` is graceful: it waits for the in-flight run to finish. Each run
opens and closes its own connection, so nothing stays open afterwards.
"""

import threading
import time
from pathlib import Path
from typing import Any, Protocol

import structlog

from sales_ingest.config import RefreshOptions
from sales_ingest.errors import RefreshError
from sales_ingest.metrics import MetricsClient

log = structlog.get_logger()


class Refresher(Protocol):
    """Anything that can run a refresh (normally RefreshOrchestrator)."""

    def refresh(self, file_path: str | Path, options: RefreshOptions | None = None) -> Any:
        ...


class RecurringScheduler:
    """Fixed-period refresh loop on a background thread."""

    def __init__(
        self,
        refresher: Refresher,
        file_path: str | Path,
        options: RefreshOptions | None,
        period_seconds: float,
        metrics: MetricsClient | None = None,
    ) -> None:
        if period_seconds <= 0:
            raise ValueError("period_seconds must be positive")
        self.refresher = refresher
        self.file_path = file_path
        self.options = options
        self.period_seconds = period_seconds
        self.metrics = metrics

        self._stop = threading.Event()
        self._busy = threading.Lock()
        self._thread: threading.Thread | None = None

        self.runs_started = 0
        self.runs_succeeded = 0
        self.runs_failed = 0
        self.runs_skipped = 0
        self.last_result: Any = None
        self.last_error: BaseException | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> "RecurringScheduler":
        """Start the timer thread; the first run begins immediately."""
        if self.running:
            raise RuntimeError("Scheduler already started")
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="refresh-scheduler", daemon=True)
        self._thread.start()
        log.info(
            "scheduler_started",
            filename=Path(self.file_path).name,
            period_seconds=self.period_seconds,
        )
        return self

    def trigger(self) -> bool:
        """
        Run a refresh now in the calling thread.

        Returns:
            True if the run happened, False if one was already in flight
            or the scheduler is stopping
        """
        if self._stop.is_set():
            return False
        return self._fire(source="manual")

    def stop(self, timeout: float | None = None) -> None:
        """
        Stop firing and wait for the in-flight run to finish.

        Args:
            timeout: Maximum seconds to wait for the timer thread
        """
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                log.warning("scheduler_stop_timeout", timeout=timeout)
                return

        # A manual trigger may still be running in another thread
        acquired = self._busy.acquire(timeout=-1 if timeout is None else timeout)
        if acquired:
            self._busy.release()

        log.info(
            "scheduler_stopped",
            runs_started=self.runs_started,
            runs_succeeded=self.runs_succeeded,
            runs_failed=self.runs_failed,
            runs_skipped=self.runs_skipped,
        )

    def wait(self, timeout: float | None = None) -> bool:
        """Block until stop() is called; returns True if stopped."""
        return self._stop.wait(timeout)

    def _loop(self) -> None:
        next_fire = time.monotonic()
        while not self._stop.is_set():
            self._fire(source="timer")

            next_fire += self.period_seconds
            now = time.monotonic()
            # Ticks that came due during a long run are dropped
            while next_fire <= now:
                self._skip("timer", reason="previous run still in flight")
                next_fire += self.period_seconds

            self._stop.wait(next_fire - now)

    def _skip(self, source: str, reason: str) -> None:
        self.runs_skipped += 1
        log.warning("scheduled_run_skipped", source=source, reason=reason)
        if self.metrics is not None:
            self.metrics.record_skip(source)

    def _fire(self, source: str) -> bool:
        if not self._busy.acquire(blocking=False):
            self._skip(source, reason="run in flight")
            return False

        try:
            self.runs_started += 1
            log.info("scheduled_run_started", source=source, run=self.runs_started)
            try:
                self.last_result = self.refresher.refresh(self.file_path, self.options)
                self.last_error = None
                self.runs_succeeded += 1
            except RefreshError as e:
                # Retried on the next tick, never immediately
                self.last_error = e
                self.runs_failed += 1
                log.error(
                    "scheduled_run_failed",
                    source=source,
                    error=str(e),
                    error_type=type(e).__name__,
                )
            except Exception as e:
                self.last_error = e
                self.runs_failed += 1
                log.exception("scheduled_run_crashed", source=source, error=str(e))
        finally:
            self._busy.release()
        return True


def schedule(
    refresher: Refresher,
    file_path: str | Path,
    options: RefreshOptions | None,
    period_seconds: float,
    metrics: MetricsClient | None = None,
) -> RecurringScheduler:
    """Start refreshing now and every period_seconds; returns the running scheduler."""
    return RecurringScheduler(refresher, file_path, options, period_seconds, metrics).start()
