"""
QuickTriage: stage sequencing, diagnosis priority and the default probes.
"""

import pytest

from sqldiag.cancellation import CancellationToken
from sqldiag.errors import DatabaseError, OperationCancelled
from sqldiag.events import EventLog, EventSeverity, EventType
from sqldiag.models import TestResult, TriageResult
from sqldiag.network import PingReply
from sqldiag.triage import UNREACHABLE_ISSUE, QuickTriage, TriageOptions, diagnose

from .fakes import FakeFactory, ScriptedPing


def stage(name, success=True, issues=(), duration_ms=1.0):
    def probe(target, token):
        result = TestResult(name, success=success, duration_ms=duration_ms, details="%s details" % name)
        for issue in issues:
            result.add_issue(issue)
        return result

    return probe


def healthy_options(**overrides) -> TriageOptions:
    probes = dict(
        network_probe=stage("Network"),
        connection_probe=stage("Connection"),
        query_probe=stage("Query"),
        server_probe=stage("Server"),
        blocking_probe=stage("Blocking"),
    )
    probes.update(overrides)
    return TriageOptions(**probes)


class MemorySink:
    def __init__(self):
        self.events = []

    def write(self, event):
        self.events.append(event)


class TestDiagnosisPriority:
    def test_healthy(self):
        result = QuickTriage(healthy_options()).run("Server=db01")
        assert result.diagnosis.category == "Healthy"
        assert result.completed_at_utc is not None
        assert result.network.started_at_utc is not None

    def test_network_failure_masks_everything_else(self):
        options = healthy_options(
            network_probe=stage("Network", success=False, issues=[UNREACHABLE_ISSUE]),
            connection_probe=stage("Connection", success=False),
            blocking_probe=stage("Blocking", issues=["Blocking detected."]),
        )
        result = QuickTriage(options).run("Server=db01")
        assert result.diagnosis.category == "Network"
        assert result.diagnosis.details == "Network details"

    def test_network_issue_alone_is_network(self):
        options = healthy_options(network_probe=stage("Network", issues=["High latency detected (250 ms)."]))
        assert QuickTriage(options).run("Server=db01").diagnosis.category == "Network"

    @pytest.mark.parametrize(
        "overrides,expected",
        [
            ({"connection_probe": stage("Connection", success=False)}, "Connection"),
            (
                {
                    "blocking_probe": stage("Blocking", issues=["Blocking detected."]),
                    "server_probe": stage("Server", issues=["High CPU."]),
                },
                "Blocking",
            ),
            (
                {
                    "server_probe": stage("Server", issues=["High CPU."]),
                    "query_probe": stage("Query", issues=["Slow."]),
                },
                "Server Resource",
            ),
            ({"query_probe": stage("Query", issues=["Slow."])}, "Query Performance"),
        ],
    )
    def test_priority_chain(self, overrides, expected):
        result = QuickTriage(healthy_options(**overrides)).run("Server=db01")
        assert result.diagnosis.category == expected

    def test_diagnose_pending_result_is_network(self):
        # pending stages count as failed
        assert diagnose(TriageResult()).category == "Network"


class TestStages:
    def test_progress_messages_in_order(self):
        messages = []
        QuickTriage(healthy_options()).run("Server=db01", progress=messages.append)
        assert messages == [
            "Testing network connectivity...",
            "Testing SQL connection...",
            "Running diagnostic query...",
            "Checking server health...",
            "Inspecting for blocking sessions...",
            "Triage complete: Healthy",
        ]

    def test_stage_exception_becomes_failed_result(self):
        def broken(target, token):
            raise RuntimeError("outer") from ValueError("root cause")

        sink = MemorySink()
        triage = QuickTriage(healthy_options(query_probe=broken), event_log=EventLog([sink]))
        result = triage.run("Server=db01")

        assert not result.query.success
        assert result.query.details == "outer | Inner: root cause"
        assert result.blocking.success
        errors = [e for e in sink.events if e.event_type == EventType.ERROR]
        assert errors[0].severity == EventSeverity.ERROR
        assert errors[0].data["stage"] == "Query"

    def test_slow_stage_emits_warning_event(self):
        sink = MemorySink()
        options = healthy_options(connection_probe=stage("Connection", duration_ms=5000.0))
        QuickTriage(options, event_log=EventLog([sink])).run("Server=db01")
        warnings = [e for e in sink.events if e.severity == EventSeverity.WARNING]
        assert len(warnings) == 1
        assert warnings[0].data["stage"] == "Connection"

    def test_cancellation_propagates(self):
        token = CancellationToken()

        def cancel_during_connection(target, tok):
            token.cancel()
            raise OperationCancelled("cancelled")

        with pytest.raises(OperationCancelled):
            QuickTriage(healthy_options(connection_probe=cancel_during_connection)).run(
                "Server=db01", cancel_token=token
            )

    def test_blank_target(self):
        with pytest.raises(ValueError):
            QuickTriage(healthy_options()).run("")


class TestDefaultProbes:
    def options(self, factory, ping, **kwargs) -> TriageOptions:
        return TriageOptions(connection_factory=factory, ping=ping, ping_delay_seconds=0, **kwargs)

    def test_healthy_server_end_to_end(self):
        factory = FakeFactory(responses=[("RING_BUFFER_SCHEDULER_MONITOR", [(12,)]), ("blocking_session_id", [(0,)])])
        ping = ScriptedPing([PingReply(True, 5.0)] * 4)
        result = QuickTriage(self.options(factory, ping)).run("Server=db01,1433")

        assert result.diagnosis.category == "Healthy"
        assert result.network.details == "4/4 pings succeeded."
        assert ping.calls[0] == ("db01", 2000)
        assert result.server.details == "SQL Server process CPU utilisation: 12%."
        assert result.blocking.details == "No blocking sessions detected."
        assert all(c.close_calls == 1 for c in factory.created)

    def test_unreachable_host(self):
        ping = ScriptedPing([PingReply(False, status="TimedOut")] * 4)
        result = QuickTriage(self.options(FakeFactory(), ping)).run("Server=db01")
        assert not result.network.success
        assert result.network.issues == [UNREACHABLE_ISSUE]
        assert result.diagnosis.category == "Network"

    def test_high_latency(self):
        ping = ScriptedPing([PingReply(True, 250.0)] * 4)
        result = QuickTriage(self.options(FakeFactory(), ping)).run("Server=db01")
        assert result.network.success
        assert result.network.issues == ["High latency detected (250 ms)."]

    def test_missing_data_source(self):
        result = QuickTriage(self.options(FakeFactory(), ScriptedPing([]))).run("Database=master")
        assert not result.network.success
        assert "server name" in result.network.details

    def test_connection_failure(self):
        factory = FakeFactory(open_errors=[DatabaseError("Login failed", number=18456)])
        ping = ScriptedPing([PingReply(True, 5.0)] * 4)
        result = QuickTriage(self.options(factory, ping)).run("Server=db01")
        assert result.connection.details == "SQL error 18456: Login failed"
        assert result.connection.issues == ["Failed to open SQL connection."]
        assert result.diagnosis.category == "Connection"

    def test_blocking_and_high_cpu(self):
        factory = FakeFactory(responses=[("RING_BUFFER_SCHEDULER_MONITOR", [(95,)]), ("blocking_session_id", [(3,)])])
        ping = ScriptedPing([PingReply(True, 5.0)] * 4)
        result = QuickTriage(self.options(factory, ping)).run("Server=db01")
        assert result.server.issues == ["High SQL Server CPU utilisation detected."]
        assert result.blocking.details == "3 blocked sessions detected."
        assert result.diagnosis.category == "Blocking"

    def test_cpu_unavailable(self):
        ping = ScriptedPing([PingReply(True, 5.0)] * 4)
        result = QuickTriage(self.options(FakeFactory(), ping)).run("Server=db01")
        assert result.server.success
        assert result.server.details == "SQL Server process CPU utilisation unavailable."
