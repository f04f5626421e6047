import socket

import pytest

from sqldiag.cancellation import CancellationToken
from sqldiag.errors import OperationCancelled
from sqldiag.network import NetworkProbe, PingReply, _build_ping_command

from .fakes import ScriptedPing


class TestMeasureLatency:
    def test_aggregates_successful_replies(self, ok_ping):
        metrics = NetworkProbe(ok_ping).measure_latency("db01", attempts=5, timeout_ms=1000)
        assert metrics.host == "db01"
        assert len(metrics.samples) == 5
        assert metrics.average_ms == 14.0
        assert metrics.min_ms == 10.0
        assert metrics.max_ms == 18.0
        assert metrics.jitter_ms == pytest.approx(2.8284, rel=1e-3)
        assert metrics.success
        assert ok_ping.calls[0] == ("db01", 1000)

    def test_all_failures_leave_statistics_empty(self):
        ping = ScriptedPing([PingReply(success=False, status="TimedOut")] * 5)
        metrics = NetworkProbe(ping).measure_latency("db01", attempts=5)
        assert len(metrics.samples) == 5
        assert metrics.average_ms is None
        assert metrics.min_ms is None
        assert metrics.max_ms is None
        assert metrics.jitter_ms is None
        assert not metrics.success
        assert all(s.error == "TimedOut" for s in metrics.samples)

    def test_ping_exception_becomes_failed_sample(self):
        ping = ScriptedPing([OSError("no route"), PingReply(success=True, round_trip_ms=4.0)])
        metrics = NetworkProbe(ping).measure_latency("db01", attempts=2)
        assert [s.success for s in metrics.samples] == [False, True]
        assert metrics.samples[0].error == "no route"
        assert metrics.average_ms == 4.0

    def test_cancellation_propagates(self):
        token = CancellationToken()
        token.cancel()
        with pytest.raises(OperationCancelled):
            NetworkProbe(ScriptedPing([])).measure_latency("db01", cancel_token=token)

    @pytest.mark.parametrize(
        "kwargs",
        [{"host": ""}, {"host": "db01", "attempts": 0}, {"host": "db01", "timeout_ms": 0}],
    )
    def test_invalid_arguments(self, kwargs):
        with pytest.raises(ValueError):
            NetworkProbe(ScriptedPing([])).measure_latency(**kwargs)


class TestDnsAndPort:
    def test_resolve_dns_deduplicates_addresses(self, monkeypatch):
        infos = [
            (socket.AF_INET, socket.SOCK_STREAM, 6, "", ("10.0.0.5", 0)),
            (socket.AF_INET, socket.SOCK_DGRAM, 17, "", ("10.0.0.5", 0)),
            (socket.AF_INET6, socket.SOCK_STREAM, 6, "", ("fe80::5", 0, 0, 0)),
        ]
        monkeypatch.setattr(socket, "getaddrinfo", lambda host, port: infos)
        result = NetworkProbe().resolve_dns("db01")
        assert result.addresses == ["10.0.0.5", "fe80::5"]
        assert result.success
        assert result.error is None

    def test_resolve_dns_failure(self, monkeypatch):
        def fail(host, port):
            raise socket.gaierror("Name or service not known")

        monkeypatch.setattr(socket, "getaddrinfo", fail)
        result = NetworkProbe().resolve_dns("nowhere")
        assert not result.success
        assert "not known" in result.error

    def test_probe_port_defaults_to_1433(self, monkeypatch):
        seen = []

        class _Sock:
            def __enter__(self):
                return self

            def __exit__(self, *exc):
                return False

        def connect(address, timeout=None):
            seen.append(address)
            return _Sock()

        monkeypatch.setattr(socket, "create_connection", connect)
        result = NetworkProbe().probe_port("db01")
        assert result.success
        assert result.port == 1433
        assert seen == [("db01", 1433)]

    def test_probe_port_refused(self, monkeypatch):
        def refuse(address, timeout=None):
            raise ConnectionRefusedError("refused")

        monkeypatch.setattr(socket, "create_connection", refuse)
        result = NetworkProbe().probe_port("db01", 1500)
        assert not result.success
        assert result.port == 1500
        assert "refused" in result.error


def test_ping_command_rounds_timeout_to_seconds(monkeypatch):
    monkeypatch.setattr("platform.system", lambda: "Linux")
    assert _build_ping_command("db01", 2500) == ["ping", "-c", "1", "-W", "2", "db01"]
    assert _build_ping_command("db01", 100) == ["ping", "-c", "1", "-W", "1", "db01"]
