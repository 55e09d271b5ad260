"""Unit tests for the recurring refresh scheduler."""

import threading
import time

import pytest

from sales_ingest.errors import WriteError
from sales_ingest.scheduler import RecurringScheduler, schedule


class FakeRefresher:
    """Records calls; can block on an event or raise."""

    def __init__(self, error: Exception | None = None, block: bool = False, delay: float = 0.0):
        self.error = error
        self.delay = delay
        self.calls = 0
        self.entered = threading.Event()
        self.release = threading.Event()
        self.finished = threading.Event()
        if not block:
            self.release.set()

    def refresh(self, file_path, options=None):
        self.calls += 1
        self.entered.set()
        self.release.wait(5)
        if self.delay and self.calls == 1:
            time.sleep(self.delay)
        self.finished.set()
        if self.error is not None:
            raise self.error
        return {"file": str(file_path), "call": self.calls}


def test_rejects_non_positive_period() -> None:
    with pytest.raises(ValueError):
        RecurringScheduler(FakeRefresher(), "sales.csv", None, 0)


def test_first_run_is_immediate() -> None:
    refresher = FakeRefresher()
    scheduler = RecurringScheduler(refresher, "sales.csv", None, 60).start()

    assert refresher.entered.wait(5)
    scheduler.stop(timeout=5)

    assert refresher.calls == 1
    assert scheduler.runs_started == 1
    assert scheduler.runs_succeeded == 1
    assert scheduler.last_result == {"file": "sales.csv", "call": 1}
    assert not scheduler.running


def test_trigger_is_skipped_while_a_run_is_in_flight() -> None:
    refresher = FakeRefresher(block=True)
    scheduler = RecurringScheduler(refresher, "sales.csv", None, 60).start()
    assert refresher.entered.wait(5)

    assert scheduler.trigger() is False
    assert scheduler.runs_skipped == 1

    refresher.release.set()
    scheduler.stop(timeout=5)

    assert refresher.calls == 1
    assert scheduler.runs_succeeded == 1


def test_stop_waits_for_in_flight_run() -> None:
    refresher = FakeRefresher(block=True)
    scheduler = RecurringScheduler(refresher, "sales.csv", None, 60).start()
    assert refresher.entered.wait(5)

    threading.Timer(0.2, refresher.release.set).start()
    scheduler.stop(timeout=5)

    assert refresher.finished.is_set()
    assert scheduler.runs_succeeded == 1


def test_failures_are_counted_and_loop_survives() -> None:
    error = WriteError("Window transaction failed", window=1, rows_committed=0)
    refresher = FakeRefresher(error=error)
    scheduler = RecurringScheduler(refresher, "sales.csv", None, 0.05).start()

    deadline = time.monotonic() + 5
    while refresher.calls < 2 and time.monotonic() < deadline:
        time.sleep(0.01)
    scheduler.stop(timeout=5)

    assert refresher.calls >= 2
    assert scheduler.runs_failed == scheduler.runs_started
    assert scheduler.runs_succeeded == 0
    assert scheduler.last_error is error


def test_unexpected_exceptions_do_not_kill_the_loop() -> None:
    refresher = FakeRefresher(error=RuntimeError("boom"))
    scheduler = RecurringScheduler(refresher, "sales.csv", None, 0.05).start()

    deadline = time.monotonic() + 5
    while refresher.calls < 2 and time.monotonic() < deadline:
        time.sleep(0.01)
    scheduler.stop(timeout=5)

    assert refresher.calls >= 2
    assert isinstance(scheduler.last_error, RuntimeError)


def test_ticks_missed_during_a_long_run_are_skipped() -> None:
    refresher = FakeRefresher(delay=0.3)
    scheduler = RecurringScheduler(refresher, "sales.csv", None, 0.05).start()

    assert refresher.finished.wait(5)
    time.sleep(0.1)
    scheduler.stop(timeout=5)

    assert scheduler.runs_skipped >= 1
    assert scheduler.runs_started == refresher.calls


def test_manual_trigger_without_timer() -> None:
    refresher = FakeRefresher()
    scheduler = RecurringScheduler(refresher, "sales.csv", None, 60)

    assert scheduler.trigger() is True
    assert scheduler.runs_succeeded == 1

    scheduler.stop()

    assert scheduler.trigger() is False
    assert refresher.calls == 1


def test_start_twice_is_an_error() -> None:
    refresher = FakeRefresher()
    scheduler = RecurringScheduler(refresher, "sales.csv", None, 60).start()
    try:
        with pytest.raises(RuntimeError):
            scheduler.start()
    finally:
        scheduler.stop(timeout=5)


class CountingMetrics:
    def __init__(self):
        self.skips = []

    def record_skip(self, source):
        self.skips.append(source)


def test_skips_are_reported_as_metrics() -> None:
    refresher = FakeRefresher(block=True)
    metrics = CountingMetrics()
    scheduler = schedule(refresher, "sales.csv", None, 60, metrics=metrics)
    try:
        assert refresher.entered.wait(5)
        assert scheduler.trigger() is False
    finally:
        refresher.release.set()
        scheduler.stop(timeout=5)

    assert metrics.skips == ["manual"]


def test_schedule_returns_running_scheduler() -> None:
    refresher = FakeRefresher()
    scheduler = schedule(refresher, "sales.csv", None, 60)
    try:
        assert scheduler.running
        assert refresher.entered.wait(5)
    finally:
        scheduler.stop(timeout=5)

    assert not scheduler.running
