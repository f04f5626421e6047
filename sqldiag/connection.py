import time
from typing import List, Optional

from .cancellation import CancellationToken, ensure_token
from .db import ConnectionFactory, SqlServerConnection, column
from .errors import DatabaseError, OperationCancelled, QueryTimeout
from .logger import get_logger
from .models import (
    ConnectionFailure,
    ConnectionMetrics,
    ConnectionPoolMetrics,
    ConnectionStabilityReport,
    ConnectionStabilitySample,
    utcnow,
)
from .stats import mean
from .utils import parse_connection_string, pooling_enabled

log = get_logger("Connection")

POOL_COUNTERS_SQL = """
    SELECT counter_name, cntr_value
    FROM sys.dm_os_performance_counters
    WHERE counter_name IN (
        'NumberOfPooledConnections',
        'NumberOfActiveConnections',
        'NumberOfFreeConnections',
        'NumberOfStasisConnections'
    )
    AND instance_name = ''
"""


def _require_target(target: str) -> None:
    if not target or not target.strip():
        raise ValueError("Connection string must be provided.")


class ConnectionProbe:
    """
    Repeated open/close cycles to capture connection latency and reliability.
    """

    def __init__(self, connection_factory: Optional[ConnectionFactory] = None) -> None:
        self._factory = connection_factory or SqlServerConnection

    def measure_connection(
        self,
        target: str,
        attempts: int = 5,
        delay: Optional[float] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ConnectionMetrics:
        _require_target(target)
        if attempts < 1:
            raise ValueError("attempts must be >= 1")
        if delay is not None and delay < 0:
            raise ValueError("Delay between attempts must not be negative.")

        token = ensure_token(cancel_token)
        metrics = ConnectionMetrics(total_attempts=attempts)
        timings: List[float] = []

        for attempt in range(1, attempts + 1):
            token.raise_if_cancelled()
            try:
                timings.append(self._open_and_close(target, token))
                metrics.successful_attempts += 1
            except OperationCancelled:
                raise
            except DatabaseError as exc:
                metrics.failed_attempts += 1
                metrics.failures.append(
                    ConnectionFailure(
                        timestamp=utcnow(),
                        message=str(exc),
                        error_number=exc.number,
                        severity=exc.severity,
                        server=exc.server,
                    )
                )
                log.warning("Connection attempt {} failed with SQL error {}: {}", attempt, exc.number, exc)
            except Exception as exc:  # pylint: disable=broad-except
                metrics.failed_attempts += 1
                metrics.failures.append(ConnectionFailure(timestamp=utcnow(), message=str(exc)))
                log.error("Connection attempt {} failed with unexpected error: {}", attempt, exc)

            if delay is not None and attempt < attempts:
                token.sleep(delay)

        if timings:
            metrics.average_ms = mean(timings)
            metrics.min_ms = min(timings)
            metrics.max_ms = max(timings)
        metrics.success_rate = (
            metrics.successful_attempts / float(metrics.total_attempts) if metrics.total_attempts > 0 else 0.0
        )
        return metrics

    def analyze_connection_pool(
        self,
        target: str,
        sample_window: Optional[float] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ConnectionPoolMetrics:
        _require_target(target)
        parts = parse_connection_string(target)
        metrics = ConnectionPoolMetrics(
            pooling_enabled=pooling_enabled(target),
            min_pool_size=_int_or_none(parts.get("min pool size")),
            max_pool_size=_int_or_none(parts.get("max pool size")),
        )
        if not metrics.pooling_enabled:
            metrics.notes.append("Connection pooling disabled.")
            return metrics

        metrics.sample_window_seconds = sample_window if sample_window is not None else 5.0
        conn = self._factory(target)
        try:
            conn.open(cancel_token)
            for row in conn.query(POOL_COUNTERS_SQL):
                name = column(row, 0, str)
                value = column(row, 1, int)
                if name == "NumberOfPooledConnections":
                    metrics.pooled_connections = value
                elif name == "NumberOfActiveConnections":
                    metrics.active_connections = value
                elif name == "NumberOfFreeConnections":
                    metrics.free_connections = value
                elif name == "NumberOfStasisConnections":
                    metrics.reclaimed_connections = value

            if (
                metrics.pooled_connections is None
                and metrics.active_connections is None
                and metrics.free_connections is None
            ):
                metrics.notes.append(
                    "Performance counter data unavailable. Ensure VIEW SERVER STATE permission is granted."
                )
        except (DatabaseError, QueryTimeout) as exc:
            log.warning("Unable to collect pool metrics: {}", exc)
            metrics.notes.append("Pool analysis unavailable: %s" % exc)
        finally:
            conn.close()
        return metrics

    def monitor_connection_stability(
        self,
        target: str,
        duration: Optional[float] = None,
        probe_interval: Optional[float] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ConnectionStabilityReport:
        """
        Connect/measure/disconnect every `probe_interval` seconds until
        `duration` elapses (default one minute). Cancellation during the wait
        ends the loop and returns what was collected.
        """
        _require_target(target)
        interval = probe_interval if probe_interval is not None else 5.0
        if interval <= 0:
            raise ValueError("Probe interval must be positive.")
        window = duration if duration is not None else 60.0
        if window <= 0:
            raise ValueError("Duration must be positive.")

        token = ensure_token(cancel_token)
        report = ConnectionStabilityReport(started_at_utc=utcnow())
        deadline = time.monotonic() + window

        while time.monotonic() <= deadline:
            token.raise_if_cancelled()
            timestamp = utcnow()
            try:
                latency = self._open_and_close(target, token)
                report.samples.append(ConnectionStabilitySample(timestamp, True, latency))
                report.success_count += 1
            except OperationCancelled:
                raise
            except DatabaseError as exc:
                report.samples.append(ConnectionStabilitySample(timestamp, False, 0.0, str(exc)))
                report.failure_count += 1
                log.warning("Stability probe failed with SQL error {}: {}", exc.number, exc)
            except Exception as exc:  # pylint: disable=broad-except
                report.samples.append(ConnectionStabilitySample(timestamp, False, 0.0, str(exc)))
                report.failure_count += 1
                log.error("Stability probe failed with unexpected error: {}", exc)

            if time.monotonic() > deadline:
                break
            if token.wait(interval):
                break

        report.completed_at_utc = utcnow()
        latencies = [s.latency_ms for s in report.samples if s.succeeded]
        if latencies:
            report.average_ms = mean(latencies)
            report.min_ms = min(latencies)
            report.max_ms = max(latencies)
        return report

    def _open_and_close(self, target: str, token: CancellationToken) -> float:
        conn = self._factory(target)
        start = time.perf_counter()
        try:
            conn.open(token)
            return (time.perf_counter() - start) * 1000.0
        finally:
            conn.close()


def _int_or_none(value: Optional[str]) -> Optional[int]:
    if value is None or not value.strip().isdigit():
        return None
    return int(value.strip())
