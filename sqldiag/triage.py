import time
from dataclasses import dataclass
from typing import Callable, Optional

from .cancellation import CancellationToken, ensure_token
from .db import ConnectionFactory, SqlServerConnection
from .errors import DatabaseError, OperationCancelled
from .events import EventLog, EventSeverity, EventType
from .logger import get_logger
from .models import Diagnosis, TestResult, TriageResult, utcnow
from .network import PingFunc, system_ping
from .stats import mean
from .utils import get_data_source, parse_endpoint

log = get_logger("Triage")

StageProbe = Callable[[str, CancellationToken], TestResult]
ProgressCallback = Callable[[str], None]

TRIAGE_CPU_SQL = """
    SELECT TOP (1)
        cpu_percent = record.value('(./Record/SchedulerMonitorEvent/SystemHealth/ProcessUtilization)[1]', 'int')
    FROM (
        SELECT CONVERT(XML, record) AS record
        FROM sys.dm_os_ring_buffers
        WHERE ring_buffer_type = N'RING_BUFFER_SCHEDULER_MONITOR'
    ) AS rb
    ORDER BY cpu_percent DESC
"""

TRIAGE_BLOCKING_SQL = """
    SELECT COUNT(*)
    FROM sys.dm_exec_requests
    WHERE blocking_session_id <> 0
"""

UNREACHABLE_ISSUE = "Server is unreachable via ICMP (firewall or network issue)."
SLOW_STAGE_MS = 2000.0


@dataclass
class TriageOptions:
    network_probe: Optional[StageProbe] = None
    connection_probe: Optional[StageProbe] = None
    query_probe: Optional[StageProbe] = None
    server_probe: Optional[StageProbe] = None
    blocking_probe: Optional[StageProbe] = None
    connection_factory: Optional[ConnectionFactory] = None
    ping: Optional[PingFunc] = None
    ping_attempts: int = 4
    ping_timeout_ms: int = 2000
    ping_delay_seconds: float = 0.2
    slow_connection_ms: float = 1000.0
    slow_query_ms: float = 500.0
    high_latency_ms: float = 100.0
    high_cpu_percent: float = 80.0


class QuickTriage:
    """
    Five sequential probes (network, connection, query, server, blocking)
    followed by one diagnosis picked in strict priority order.
    """

    def __init__(self, options: Optional[TriageOptions] = None, event_log: Optional[EventLog] = None) -> None:
        self.options = options or TriageOptions()
        self.event_log = event_log
        self._factory = self.options.connection_factory or SqlServerConnection

    def run(
        self,
        target: str,
        progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> TriageResult:
        if not target or not target.strip():
            raise ValueError("Connection string must be provided.")
        token = ensure_token(cancel_token)
        opts = self.options

        result = TriageResult(started_at_utc=utcnow())
        start = time.perf_counter()
        result.network = self._stage(
            target, "Network", opts.network_probe or self.network_probe,
            "Testing network connectivity...", progress, token,
        )
        result.connection = self._stage(
            target, "Connection", opts.connection_probe or self.connection_probe,
            "Testing SQL connection...", progress, token,
        )
        result.query = self._stage(
            target, "Query", opts.query_probe or self.query_probe,
            "Running diagnostic query...", progress, token,
        )
        result.server = self._stage(
            target, "Server", opts.server_probe or self.server_probe,
            "Checking server health...", progress, token,
        )
        result.blocking = self._stage(
            target, "Blocking", opts.blocking_probe or self.blocking_probe,
            "Inspecting for blocking sessions...", progress, token,
        )
        result.duration_ms = (time.perf_counter() - start) * 1000.0
        result.completed_at_utc = utcnow()
        result.diagnosis = diagnose(result)

        log.info("Triage complete: {}", result.diagnosis.category)
        if progress is not None:
            progress("Triage complete: %s" % result.diagnosis.category)
        return result

    def _stage(
        self,
        target: str,
        name: str,
        probe: StageProbe,
        message: str,
        progress: Optional[ProgressCallback],
        token: CancellationToken,
    ) -> TestResult:
        if progress is not None:
            progress(message)
        token.raise_if_cancelled()
        started = utcnow()
        try:
            result = probe(target, token)
        except OperationCancelled:
            raise
        except Exception as exc:  # pylint: disable=broad-except
            details = _describe(exc)
            log.warning("{} probe failed: {}", name, details)
            self._record(
                "%s probe failed: %s" % (name, details),
                EventType.ERROR,
                EventSeverity.ERROR,
                {"stage": name, "details": details},
            )
            return TestResult.failure(name, details)

        result.started_at_utc = started
        result.ended_at_utc = utcnow()
        limit = {
            "Connection": self.options.slow_connection_ms,
            "Query": self.options.slow_query_ms,
        }.get(name, SLOW_STAGE_MS)
        if result.duration_ms > limit:
            self._record(
                "%s probe was slow: %.0f ms." % (name, result.duration_ms),
                EventType.GENERAL,
                EventSeverity.WARNING,
                {"stage": name, "duration_ms": result.duration_ms, "issues": list(result.issues)},
            )
        return result

    def _record(self, message: str, event_type: EventType, severity: EventSeverity, data: dict) -> None:
        if self.event_log is not None:
            self.event_log.log_event(message, event_type, severity, data)

    # Default stages ---------------------------------------------------------

    def network_probe(self, target: str, token: CancellationToken) -> TestResult:
        opts = self.options
        test = TestResult("Network")
        endpoint = parse_endpoint(get_data_source(target))
        if endpoint is None:
            test.details = "Unable to determine server name from connection string."
            return test

        host = endpoint[0]
        ping = opts.ping or (lambda h, t: system_ping(h, t, token))
        latencies = []
        for attempt in range(opts.ping_attempts):
            token.raise_if_cancelled()
            try:
                reply = ping(host, opts.ping_timeout_ms)
            except OperationCancelled:
                raise
            except Exception as exc:  # pylint: disable=broad-except
                log.debug("Ping attempt {} to {} failed: {}", attempt + 1, host, exc)
            else:
                if reply.success:
                    latencies.append(reply.round_trip_ms)
            if attempt < opts.ping_attempts - 1:
                token.sleep(opts.ping_delay_seconds)

        test.success = bool(latencies)
        test.details = "%d/%d pings succeeded." % (len(latencies), opts.ping_attempts)
        if latencies:
            average = mean(latencies)
            test.duration_ms = average
            if average > opts.high_latency_ms:
                test.add_issue("High latency detected (%.0f ms)." % average)
        else:
            test.add_issue(UNREACHABLE_ISSUE)
        return test

    def connection_probe(self, target: str, token: CancellationToken) -> TestResult:
        test = TestResult("Connection")
        conn = self._factory(target)
        start = time.perf_counter()
        try:
            conn.open(token)
            test.duration_ms = (time.perf_counter() - start) * 1000.0
            test.success = True
            test.details = "Connection established in %.0f ms." % test.duration_ms
            if test.duration_ms > self.options.slow_connection_ms:
                test.add_issue("Slow connection establishment.")
        except OperationCancelled:
            raise
        except DatabaseError as exc:
            test.details = "SQL error %s: %s" % (exc.number, exc)
            test.add_issue("Failed to open SQL connection.")
        except Exception as exc:  # pylint: disable=broad-except
            test.details = _describe(exc)
            test.add_issue("Unexpected error opening SQL connection.")
        finally:
            conn.close()
        return test

    def query_probe(self, target: str, token: CancellationToken) -> TestResult:
        test = TestResult("Query")
        conn = self._factory(target)
        try:
            conn.open(token)
            conn.statistics_enabled = True
            start = time.perf_counter()
            conn.scalar("SELECT 1")
            test.duration_ms = (time.perf_counter() - start) * 1000.0
            test.success = True
            test.details = "Diagnostic query executed in %.0f ms." % test.duration_ms
            if test.duration_ms > self.options.slow_query_ms:
                test.add_issue("Diagnostic query executed slower than expected.")
        except OperationCancelled:
            raise
        except Exception as exc:  # pylint: disable=broad-except
            test.details = _describe(exc)
            test.add_issue("Failed to execute diagnostic query.")
        finally:
            conn.close()
        return test

    def server_probe(self, target: str, token: CancellationToken) -> TestResult:
        test = TestResult("Server")
        conn = self._factory(target)
        try:
            conn.open(token)
            value = conn.scalar(TRIAGE_CPU_SQL)
            cpu = int(value) if value is not None else None
            test.success = True
            if cpu is None:
                test.details = "SQL Server process CPU utilisation unavailable."
            else:
                test.details = "SQL Server process CPU utilisation: %d%%." % cpu
                if cpu > self.options.high_cpu_percent:
                    test.add_issue("High SQL Server CPU utilisation detected.")
        except OperationCancelled:
            raise
        except Exception as exc:  # pylint: disable=broad-except
            test.details = _describe(exc)
            test.add_issue("Unable to retrieve server health information.")
        finally:
            conn.close()
        return test

    def blocking_probe(self, target: str, token: CancellationToken) -> TestResult:
        test = TestResult("Blocking")
        conn = self._factory(target)
        try:
            conn.open(token)
            blocked = int(conn.scalar(TRIAGE_BLOCKING_SQL) or 0)
            test.success = True
            if blocked > 0:
                test.details = "%d blocked sessions detected." % blocked
                test.add_issue("Blocking detected. Investigate long-running transactions.")
            else:
                test.details = "No blocking sessions detected."
        except OperationCancelled:
            raise
        except Exception as exc:  # pylint: disable=broad-except
            test.details = _describe(exc)
            test.add_issue("Unable to inspect blocking state.")
        finally:
            conn.close()
        return test


def diagnose(result: TriageResult) -> Diagnosis:
    """
    Pick exactly one diagnosis. Order matters: a network problem masks
    everything downstream of it.
    """
    if not result.network.success or result.network.issues:
        return Diagnosis(
            category="Network",
            summary="Network connectivity issues detected.",
            details=result.network.details,
            recommendations=[
                "Verify that the SQL Server host is reachable (firewall, VPN, routing).",
                "Check network latency and packet loss.",
                "See: https://learn.microsoft.com/en-us/sql/database-engine/configure-windows/sql-server-network-configuration",
            ],
        )
    if not result.connection.success:
        return Diagnosis(
            category="Connection",
            summary="Failed to establish SQL connection.",
            details=result.connection.details,
            recommendations=[
                "Confirm credentials and database accessibility.",
                "Ensure SQL Server is configured to accept remote connections.",
                "See: https://learn.microsoft.com/en-us/sql/database-engine/configure-windows/enable-or-disable-a-server-network-protocol",
            ],
        )
    if result.blocking.issues:
        return Diagnosis(
            category="Blocking",
            summary="Blocking sessions detected on SQL Server.",
            details=result.blocking.details,
            recommendations=[
                "Identify blocking sessions and review transaction scope.",
                "Consider collecting execution plans for blocked queries.",
                "See: https://learn.microsoft.com/en-us/sql/relational-databases/performance-monitor/analyzing-blocking",
            ],
        )
    if result.server.issues:
        return Diagnosis(
            category="Server Resource",
            summary="Potential server resource pressure detected.",
            details=result.server.details,
            recommendations=[
                "Inspect DMV metrics for CPU and IO utilisation.",
                "Review workload patterns and index efficiency.",
                "See: https://learn.microsoft.com/en-us/sql/relational-databases/performance/performance-dashboard",
            ],
        )
    if result.query.issues:
        return Diagnosis(
            category="Query Performance",
            summary="Diagnostic query executed slower than expected.",
            details=result.query.details,
            recommendations=[
                "Capture execution plan for slow queries.",
                "Validate statistics and consider indexing strategies.",
                "See: https://learn.microsoft.com/en-us/sql/relational-databases/performance/query-performance-issues",
            ],
        )
    return Diagnosis(
        category="Healthy",
        summary="No immediate issues detected by triage probes.",
        details="All probes completed successfully.",
        recommendations=[
            "Monitor the workload for intermittent issues.",
            "Capture a performance baseline for future comparisons.",
        ],
    )


def _describe(exc: BaseException) -> str:
    details = str(exc) or type(exc).__name__
    cause = exc.__cause__
    if cause is not None:
        details += " | Inner: %s" % cause
    return details
