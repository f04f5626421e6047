"""
ContinuousMonitor lifecycle: publishing, stop semantics, errors and streams.
"""

import threading
import time

import pytest

from sqldiag.errors import MonitorAlreadyRunning, OperationCancelled
from sqldiag.models import DiagnosticOptions, DiagnosticReport
from sqldiag.monitor import ContinuousMonitor

TARGET = "Server=db01;Database=master"


class FakeOrchestrator:
    def __init__(self, fail_on=None):
        self.quick_calls = 0
        self.full_calls = 0
        self.fail_on = fail_on
        self._lock = threading.Lock()

    def quick_check(self, target, cancel_token=None):
        with self._lock:
            self.quick_calls += 1
            call = self.quick_calls
        if self.fail_on is not None and call >= self.fail_on:
            raise RuntimeError("probe exploded")
        return DiagnosticReport(target="db01", metadata={"mode": "quick", "n": call})

    def run_full(self, target, options, cancel_token=None):
        with self._lock:
            self.full_calls += 1
        return DiagnosticReport(target="db01", metadata={"mode": "full"})


class BlockingOrchestrator:
    """Parks inside the tick until cancelled."""

    def __init__(self):
        self.entered = threading.Event()

    def quick_check(self, target, cancel_token=None):
        self.entered.set()
        cancel_token.wait(5.0)
        raise OperationCancelled("cancelled")


def wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return False


class TestLifecycle:
    def test_publishes_quick_snapshots_until_stopped(self):
        received = []
        completed = threading.Event()
        monitor = ContinuousMonitor(FakeOrchestrator())
        monitor.subscribe(on_snapshot=received.append, on_completed=completed.set)

        monitor.start(TARGET, 0.01)
        assert wait_for(lambda: len(received) >= 3)
        monitor.stop()

        assert not monitor.is_running
        assert completed.is_set()
        assert all(s.report.metadata["mode"] == "quick" for s in received)
        count = len(received)
        time.sleep(0.05)
        assert len(received) == count

    def test_full_mode_when_options_given(self):
        orchestrator = FakeOrchestrator()
        received = []
        with ContinuousMonitor(orchestrator) as monitor:
            monitor.subscribe(on_snapshot=received.append)
            monitor.start(TARGET, 0.01, DiagnosticOptions())
            assert wait_for(lambda: received)
        assert received[0].report.metadata["mode"] == "full"
        assert orchestrator.quick_calls == 0

    def test_second_start_is_rejected(self):
        monitor = ContinuousMonitor(FakeOrchestrator())
        monitor.start(TARGET, 10.0)
        try:
            with pytest.raises(MonitorAlreadyRunning):
                monitor.start(TARGET, 10.0)
        finally:
            monitor.stop()

    def test_restart_after_stop(self):
        monitor = ContinuousMonitor(FakeOrchestrator())
        monitor.start(TARGET, 10.0)
        monitor.stop()
        monitor.start(TARGET, 10.0)
        assert monitor.is_running
        monitor.stop()

    def test_stop_is_idempotent(self):
        monitor = ContinuousMonitor(FakeOrchestrator())
        monitor.stop()
        monitor.start(TARGET, 10.0)
        monitor.stop()
        monitor.stop()
        assert not monitor.is_running

    @pytest.mark.parametrize("target,interval", [("", 1.0), (TARGET, 0), (TARGET, -1)])
    def test_invalid_arguments(self, target, interval):
        with pytest.raises(ValueError):
            ContinuousMonitor(FakeOrchestrator()).start(target, interval)

    def test_stop_cancels_in_flight_tick(self):
        orchestrator = BlockingOrchestrator()
        received = []
        monitor = ContinuousMonitor(orchestrator)
        monitor.subscribe(on_snapshot=received.append)
        monitor.start(TARGET, 0.01)
        assert orchestrator.entered.wait(2.0)

        started = time.monotonic()
        monitor.stop()
        assert time.monotonic() - started < 2.0
        assert received == []

    def test_concurrent_start_and_stop(self):
        monitor = ContinuousMonitor(FakeOrchestrator())
        rejected = []

        def churn():
            for _ in range(20):
                try:
                    monitor.start(TARGET, 0.01)
                except MonitorAlreadyRunning:
                    rejected.append(1)
                monitor.stop()

        workers = [threading.Thread(target=churn) for _ in range(4)]
        for w in workers:
            w.start()
        for w in workers:
            w.join(10.0)
        monitor.stop()
        assert not monitor.is_running


class TestSubscribers:
    def test_probe_error_reaches_on_error_and_ends_loop(self):
        errors = []
        completed = []
        monitor = ContinuousMonitor(FakeOrchestrator(fail_on=2))
        monitor.subscribe(on_error=errors.append, on_completed=lambda: completed.append(1))
        monitor.start(TARGET, 0.01)

        assert wait_for(lambda: errors)
        assert wait_for(lambda: not monitor.is_running)
        assert str(errors[0]) == "probe exploded"
        assert completed == []
        monitor.stop()

    def test_failing_subscriber_does_not_stop_others(self):
        received = []

        def broken(snapshot):
            raise ValueError("subscriber bug")

        monitor = ContinuousMonitor(FakeOrchestrator())
        monitor.subscribe(on_snapshot=broken)
        monitor.subscribe(on_snapshot=received.append)
        monitor.start(TARGET, 0.01)
        assert wait_for(lambda: len(received) >= 2)
        monitor.stop()

    def test_unsubscribe(self):
        received = []
        monitor = ContinuousMonitor(FakeOrchestrator())
        subscription = monitor.subscribe(on_snapshot=received.append)
        subscription.unsubscribe()
        subscription.unsubscribe()
        monitor.start(TARGET, 0.01)
        time.sleep(0.05)
        monitor.stop()
        assert received == []


class TestSnapshotStream:
    def test_stream_yields_until_stop(self):
        monitor = ContinuousMonitor(FakeOrchestrator())
        stream = monitor.snapshots(timeout=2.0)
        monitor.start(TARGET, 0.01)
        got = []
        for snapshot in stream:
            got.append(snapshot)
            if len(got) == 2:
                monitor.stop()
        assert len(got) >= 2
        assert got[0].report.metadata["n"] == 1

    def test_stream_reraises_loop_error(self):
        monitor = ContinuousMonitor(FakeOrchestrator(fail_on=1))
        stream = monitor.snapshots(timeout=2.0)
        monitor.start(TARGET, 0.01)
        with pytest.raises(RuntimeError, match="probe exploded"):
            for _ in stream:
                pass
        monitor.stop()

    def test_close_ends_iteration(self):
        monitor = ContinuousMonitor(FakeOrchestrator())
        stream = monitor.snapshots(timeout=2.0)
        stream.close()
        assert list(stream) == []
