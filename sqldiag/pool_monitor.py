import time
from typing import Callable, List, Optional

from .cancellation import CancellationToken, ensure_token
from .connection import POOL_COUNTERS_SQL
from .db import ConnectionFactory, SqlServerConnection, column
from .errors import OperationCancelled
from .logger import get_logger
from .models import (
    ConnectionPoolHealthReport,
    ConnectionPoolHealthSummary,
    ConnectionPoolSnapshot,
    PoolHealth,
    utcnow,
)
from .stats import mean
from .utils import hash_target

log = get_logger("PoolMonitor")

PoolProbe = Callable[[CancellationToken], ConnectionPoolSnapshot]
ProgressCallback = Callable[[ConnectionPoolSnapshot], None]

DEFAULT_FAILURE_RATE_THRESHOLD = 0.1
DEFAULT_SLOW_ACQUISITION_MS = 1000.0


class ConnectionPoolMonitor:
    """
    Repeatedly acquires a connection, reads the pool counters and classifies
    the pool's health over the sampling window.
    """

    def __init__(
        self,
        target: str,
        probe: Optional[PoolProbe] = None,
        connection_factory: Optional[ConnectionFactory] = None,
        failure_rate_threshold: float = DEFAULT_FAILURE_RATE_THRESHOLD,
        slow_acquisition_ms: float = DEFAULT_SLOW_ACQUISITION_MS,
    ) -> None:
        if not target or not target.strip():
            raise ValueError("Connection string must be provided.")
        self.target = target
        self._factory = connection_factory or SqlServerConnection
        self._probe = probe or self._default_probe
        self.failure_rate_threshold = failure_rate_threshold
        self.slow_acquisition_ms = slow_acquisition_ms

    def monitor(
        self,
        duration: float,
        sample_interval: float,
        progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ConnectionPoolHealthReport:
        if duration <= 0:
            raise ValueError("Duration must be positive.")
        if sample_interval <= 0:
            raise ValueError("Sample interval must be positive.")

        token = ensure_token(cancel_token)
        started = utcnow()
        deadline = time.monotonic() + duration
        snapshots: List[ConnectionPoolSnapshot] = []

        while True:
            token.raise_if_cancelled()
            try:
                snapshot = self._probe(token)
            except OperationCancelled:
                raise
            except Exception as exc:  # pylint: disable=broad-except
                log.warning("Pool probe failed: {}", exc)
                snapshot = ConnectionPoolSnapshot(timestamp=utcnow(), success=False, error=str(exc))
            snapshots.append(snapshot)
            if progress is not None:
                progress(snapshot)
            if time.monotonic() >= deadline:
                break
            token.sleep(sample_interval)

        return ConnectionPoolHealthReport(
            target_hash=hash_target(self.target),
            started_at_utc=started,
            completed_at_utc=utcnow(),
            snapshots=snapshots,
            summary=summarize_pool_health(snapshots, self.failure_rate_threshold, self.slow_acquisition_ms),
        )

    def _default_probe(self, token: CancellationToken) -> ConnectionPoolSnapshot:
        snapshot = ConnectionPoolSnapshot(timestamp=utcnow(), success=False)
        conn = self._factory(self.target)
        start = time.perf_counter()
        try:
            conn.open(token)
            snapshot.acquisition_ms = (time.perf_counter() - start) * 1000.0
            snapshot.success = True
            for row in conn.query(POOL_COUNTERS_SQL):
                name = column(row, 0, str)
                if name == "NumberOfActiveConnections":
                    snapshot.active_connections = column(row, 1, int)
                elif name == "NumberOfFreeConnections":
                    snapshot.free_connections = column(row, 1, int)
                elif name == "NumberOfPooledConnections":
                    snapshot.pooled_connections = column(row, 1, int)
        except OperationCancelled:
            raise
        except Exception as exc:  # pylint: disable=broad-except
            snapshot.error = str(exc)
            if not snapshot.success:
                snapshot.acquisition_ms = (time.perf_counter() - start) * 1000.0
        finally:
            conn.close()
        return snapshot


def summarize_pool_health(
    snapshots: List[ConnectionPoolSnapshot],
    failure_rate_threshold: float = DEFAULT_FAILURE_RATE_THRESHOLD,
    slow_acquisition_ms: float = DEFAULT_SLOW_ACQUISITION_MS,
) -> ConnectionPoolHealthSummary:
    summary = ConnectionPoolHealthSummary()
    if not snapshots:
        summary.severity = PoolHealth.WARNING
        summary.issues.append("No samples were collected.")
        return summary

    failures = sum(1 for s in snapshots if not s.success)
    summary.failure_rate = failures / float(len(snapshots))
    summary.average_acquisition_ms = mean(s.acquisition_ms for s in snapshots if s.success) or 0.0

    if summary.failure_rate > failure_rate_threshold:
        _escalate(summary, PoolHealth.CRITICAL)
        summary.issues.append("Connection acquisition failures observed (%.0f%%)." % (summary.failure_rate * 100))
        summary.recommendations.append("Inspect application code for undisposed connections.")

    if summary.average_acquisition_ms > slow_acquisition_ms:
        _escalate(summary, PoolHealth.WARNING)
        summary.issues.append("High average acquisition time %.0f ms." % summary.average_acquisition_ms)
        summary.recommendations.append("Increase Max Pool Size or optimise connection usage patterns.")

    exhausted = any(
        s.success and s.free_connections == 0 and (s.active_connections or 0) > 0 for s in snapshots
    )
    if exhausted:
        _escalate(summary, PoolHealth.CRITICAL)
        summary.issues.append("Pool reported no free connections while active sessions were present.")
        summary.recommendations.append("Consider using connection resiliency or adding retry logic.")
    return summary


def _escalate(summary: ConnectionPoolHealthSummary, severity: PoolHealth) -> None:
    if severity.rank > summary.severity.rank:
        summary.severity = severity
