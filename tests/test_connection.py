import datetime

import pytest

from sqldiag import connection
from sqldiag.cancellation import CancellationToken
from sqldiag.connection import ConnectionProbe
from sqldiag.errors import DatabaseError, OperationCancelled, QueryTimeout

from .fakes import FakeFactory

POOL_ROWS = [
    ("NumberOfPooledConnections", 10),
    ("NumberOfActiveConnections", 4),
    ("NumberOfFreeConnections", 6),
    ("NumberOfStasisConnections", 1),
]


class TestMeasureConnection:
    def test_counts_and_failure_details(self, target):
        factory = FakeFactory(
            open_errors=[
                DatabaseError("Login failed for user 'diag'.", number=18456, severity=14, server="db01"),
                None,
                RuntimeError("socket closed"),
            ]
        )
        metrics = ConnectionProbe(factory).measure_connection(target, attempts=3)

        assert metrics.total_attempts == 3
        assert metrics.successful_attempts == 1
        assert metrics.failed_attempts == 2
        assert metrics.success_rate == pytest.approx(1 / 3.0)
        assert metrics.failures[0].error_number == 18456
        assert metrics.failures[0].severity == 14
        assert metrics.failures[0].server == "db01"
        assert metrics.failures[1].error_number is None
        assert metrics.failures[1].message == "socket closed"
        assert metrics.average_ms is not None
        assert metrics.min_ms == metrics.max_ms == metrics.average_ms

    def test_every_attempt_closes_its_connection(self, target, fake_factory):
        ConnectionProbe(fake_factory).measure_connection(target, attempts=4)
        assert len(fake_factory.created) == 4
        assert all(c.close_calls == 1 for c in fake_factory.created)

    def test_all_failures_leave_timings_empty(self, target):
        factory = FakeFactory(open_errors=[DatabaseError("down", number=4060)] * 2)
        metrics = ConnectionProbe(factory).measure_connection(target, attempts=2)
        assert metrics.success_rate == 0.0
        assert metrics.average_ms is None
        assert metrics.min_ms is None

    @pytest.mark.parametrize(
        "kwargs",
        [{"attempts": 0}, {"delay": -0.5}],
    )
    def test_invalid_arguments(self, target, fake_factory, kwargs):
        with pytest.raises(ValueError):
            ConnectionProbe(fake_factory).measure_connection(target, **kwargs)

    def test_empty_target_is_rejected(self, fake_factory):
        with pytest.raises(ValueError):
            ConnectionProbe(fake_factory).measure_connection("  ")

    def test_cancellation_is_not_a_failure(self, target, fake_factory):
        token = CancellationToken()
        token.cancel()
        with pytest.raises(OperationCancelled):
            ConnectionProbe(fake_factory).measure_connection(target, cancel_token=token)
        assert fake_factory.created == []


class TestConnectionPool:
    def test_pooling_disabled_skips_server_round_trip(self, fake_factory):
        metrics = ConnectionProbe(fake_factory).analyze_connection_pool("Server=db01;Pooling=false")
        assert not metrics.pooling_enabled
        assert metrics.notes == ["Connection pooling disabled."]
        assert fake_factory.created == []

    def test_reads_counters_and_pool_sizes(self):
        factory = FakeFactory(responses=[("dm_os_performance_counters", POOL_ROWS)])
        metrics = ConnectionProbe(factory).analyze_connection_pool(
            "Server=db01;Min Pool Size=2;Max Pool Size=50", sample_window=3.0
        )
        assert metrics.pooling_enabled
        assert metrics.min_pool_size == 2
        assert metrics.max_pool_size == 50
        assert metrics.sample_window_seconds == 3.0
        assert metrics.pooled_connections == 10
        assert metrics.active_connections == 4
        assert metrics.free_connections == 6
        assert metrics.reclaimed_connections == 1
        assert metrics.notes == []
        assert factory.created[0].close_calls == 1

    def test_missing_counters_add_permission_note(self, target, fake_factory):
        metrics = ConnectionProbe(fake_factory).analyze_connection_pool(target)
        assert metrics.sample_window_seconds == 5.0
        assert "VIEW SERVER STATE" in metrics.notes[0]

    def test_query_error_becomes_note(self, target):
        factory = FakeFactory(
            responses=[("dm_os_performance_counters", DatabaseError("permission denied", number=300))]
        )
        metrics = ConnectionProbe(factory).analyze_connection_pool(target)
        assert metrics.notes == ["Pool analysis unavailable: permission denied"]
        assert factory.created[0].close_calls == 1

    def test_open_timeout_becomes_note(self, target):
        factory = FakeFactory(open_errors=[QueryTimeout("Login timeout expired")])
        metrics = ConnectionProbe(factory).analyze_connection_pool(target)
        assert metrics.notes == ["Pool analysis unavailable: Login timeout expired"]
        assert metrics.active_connections is None
        assert factory.created[0].close_calls == 1


class TestStability:
    def test_samples_until_duration_elapses(self, target, fake_factory):
        report = ConnectionProbe(fake_factory).monitor_connection_stability(
            target, duration=0.05, probe_interval=0.01
        )
        assert report.samples
        assert report.success_count == len(report.samples)
        assert report.failure_count == 0
        assert report.completed_at_utc >= report.started_at_utc
        assert report.average_ms is not None

    def test_failures_are_counted(self, target):
        factory = FakeFactory(open_errors=[DatabaseError("down", number=4060)] * 100)
        report = ConnectionProbe(factory).monitor_connection_stability(
            target, duration=0.03, probe_interval=0.01
        )
        assert report.failure_count == len(report.samples)
        assert report.samples[0].error == "down"
        assert report.average_ms is None

    @pytest.mark.parametrize("kwargs", [{"duration": 0}, {"probe_interval": 0}])
    def test_invalid_windows(self, target, fake_factory, kwargs):
        with pytest.raises(ValueError):
            ConnectionProbe(fake_factory).monitor_connection_stability(target, **kwargs)

    def test_window_ignores_wall_clock_steps(self, target, fake_factory, monkeypatch):
        clock = {"now": datetime.datetime(2024, 5, 1, tzinfo=datetime.timezone.utc)}

        def jumping_utcnow():
            clock["now"] += datetime.timedelta(days=1)
            return clock["now"]

        monkeypatch.setattr(connection, "utcnow", jumping_utcnow)
        report = ConnectionProbe(fake_factory).monitor_connection_stability(
            target, duration=0.05, probe_interval=0.01
        )
        assert len(report.samples) >= 2
