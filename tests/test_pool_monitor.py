import pytest

from sqldiag.cancellation import CancellationToken
from sqldiag.errors import DatabaseError, OperationCancelled
from sqldiag.models import ConnectionPoolSnapshot, PoolHealth, utcnow
from sqldiag.pool_monitor import ConnectionPoolMonitor, summarize_pool_health
from sqldiag.utils import hash_target

from .fakes import FakeFactory

TARGET = "Server=db01;Database=app"


def snap(success=True, ms=5.0, active=None, free=None) -> ConnectionPoolSnapshot:
    return ConnectionPoolSnapshot(
        timestamp=utcnow(), success=success, acquisition_ms=ms, active_connections=active, free_connections=free
    )


class TestSummary:
    def test_no_samples_is_warning(self):
        summary = summarize_pool_health([])
        assert summary.severity == PoolHealth.WARNING
        assert summary.issues == ["No samples were collected."]

    def test_healthy(self):
        summary = summarize_pool_health([snap(active=2, free=8), snap(active=3, free=7)])
        assert summary.severity == PoolHealth.HEALTHY
        assert summary.failure_rate == 0.0
        assert summary.average_acquisition_ms == 5.0
        assert summary.issues == []

    def test_failure_rate_over_threshold_is_critical(self):
        summary = summarize_pool_health([snap(), snap(success=False, ms=0.0)] * 2)
        assert summary.severity == PoolHealth.CRITICAL
        assert summary.failure_rate == 0.5
        assert summary.issues[0] == "Connection acquisition failures observed (50%)."

    def test_slow_acquisition_is_warning(self):
        summary = summarize_pool_health([snap(ms=1500.0), snap(ms=1700.0)])
        assert summary.severity == PoolHealth.WARNING
        assert summary.average_acquisition_ms == 1600.0

    def test_exhaustion_escalates_slow_pool(self):
        summary = summarize_pool_health([snap(ms=2000.0, active=100, free=0)])
        assert summary.severity == PoolHealth.CRITICAL
        assert len(summary.issues) == 2

    def test_custom_thresholds(self):
        snapshots = [snap(ms=50.0)] * 9 + [snap(success=False)]
        assert summarize_pool_health(snapshots).severity == PoolHealth.HEALTHY
        assert summarize_pool_health(snapshots, failure_rate_threshold=0.05).severity == PoolHealth.CRITICAL
        assert summarize_pool_health(snapshots, slow_acquisition_ms=10.0).severity == PoolHealth.WARNING


class TestMonitor:
    def test_samples_until_deadline_and_reports_progress(self):
        seen = []
        monitor = ConnectionPoolMonitor(TARGET, probe=lambda token: snap(active=1, free=4))
        report = monitor.monitor(0.05, 0.01, progress=seen.append)

        assert len(report.snapshots) >= 2
        assert seen == report.snapshots
        assert report.target_hash == hash_target(TARGET)
        assert report.summary.severity == PoolHealth.HEALTHY
        assert report.completed_at_utc >= report.started_at_utc

    def test_probe_exception_is_failed_sample(self):
        def broken(token):
            raise RuntimeError("pool exhausted")

        report = ConnectionPoolMonitor(TARGET, probe=broken).monitor(0.01, 0.01)
        assert report.snapshots[0].error == "pool exhausted"
        assert report.summary.severity == PoolHealth.CRITICAL

    def test_default_probe_reads_counters(self):
        factory = FakeFactory(
            responses=[
                (
                    "dm_os_performance_counters",
                    [
                        ("NumberOfActiveConnections", 3),
                        ("NumberOfFreeConnections", 0),
                        ("NumberOfPooledConnections", 3),
                    ],
                )
            ]
        )
        report = ConnectionPoolMonitor(TARGET, connection_factory=factory).monitor(0.01, 0.01)
        first = report.snapshots[0]
        assert first.success
        assert first.active_connections == 3
        assert first.free_connections == 0
        assert report.summary.severity == PoolHealth.CRITICAL
        assert all(c.close_calls == 1 for c in factory.created)

    def test_default_probe_open_failure(self):
        factory = FakeFactory(open_errors=[DatabaseError("timeout expired", number=-2)] * 10)
        report = ConnectionPoolMonitor(TARGET, connection_factory=factory).monitor(0.01, 0.01)
        assert not report.snapshots[0].success
        assert report.snapshots[0].error == "timeout expired"

    def test_cancellation(self):
        token = CancellationToken()

        def cancelling(tok):
            token.cancel()
            return snap()

        with pytest.raises(OperationCancelled):
            ConnectionPoolMonitor(TARGET, probe=cancelling).monitor(10.0, 0.01, cancel_token=token)

    @pytest.mark.parametrize("duration,interval", [(0, 1), (1, 0)])
    def test_invalid_window(self, duration, interval):
        with pytest.raises(ValueError):
            ConnectionPoolMonitor(TARGET, probe=lambda t: snap()).monitor(duration, interval)

    def test_blank_target(self):
        with pytest.raises(ValueError):
            ConnectionPoolMonitor(" ")
