import time
from typing import Any, Callable, Dict, Optional, Sequence

from .cancellation import CancellationToken
from .db import DatabaseConnection, column
from .errors import DatabaseError
from .logger import get_logger
from .models import (
    BlockingReport,
    BlockingSession,
    QueryMetrics,
    QueryPlanAnalysis,
    WaitStatisticEntry,
    WaitStatistics,
    WaitStatsScope,
)

log = get_logger("Query")

BLOCKING_SESSIONS_SQL = """
    SELECT
        req.session_id,
        req.blocking_session_id,
        req.wait_type,
        req.wait_time,
        req.status,
        req.command,
        SUBSTRING(text.text,
            (req.statement_start_offset / 2) + 1,
            ((CASE req.statement_end_offset
                WHEN -1 THEN DATALENGTH(text.text)
                ELSE req.statement_end_offset
            END - req.statement_start_offset) / 2) + 1) AS sql_text
    FROM sys.dm_exec_requests AS req
    OUTER APPLY sys.dm_exec_sql_text(req.sql_handle) AS text
    WHERE req.blocking_session_id <> 0
    ORDER BY req.wait_time DESC
"""

BENIGN_WAITS = (
    "SLEEP_TASK",
    "SLEEP_SYSTEMTASK",
    "LAZYWRITER_SLEEP",
    "RESOURCE_QUEUE",
    "XE_TIMER_EVENT",
    "XE_DISPATCHER_WAIT",
    "FT_IFTS_SCHEDULER_IDLE_WAIT",
    "BROKER_TASK_STOP",
    "BROKER_TO_FLUSH",
    "SQLTRACE_BUFFER_FLUSH",
    "CLR_AUTO_EVENT",
    "CLR_MANUAL_EVENT",
    "REQUEST_FOR_DEADLOCK_SEARCH",
)
_BENIGN_LIST = ", ".join("'%s'" % w for w in BENIGN_WAITS)

SESSION_WAIT_STATS_SQL = """
    SELECT wait_type, wait_time_ms, signal_wait_time_ms, waiting_tasks_count
    FROM sys.dm_exec_session_wait_stats
    WHERE session_id = @@SPID
    ORDER BY wait_time_ms DESC
"""

SERVER_WAIT_STATS_SQL = """
    SELECT wait_type, wait_time_ms, signal_wait_time_ms, waiting_tasks_count
    FROM sys.dm_os_wait_stats
    WHERE waiting_tasks_count > 0
    AND wait_type NOT IN (%s)
    ORDER BY wait_time_ms DESC
""" % _BENIGN_LIST

# statistic key -> (field, converter)
_STAT_FIELDS = (
    ("NetworkServerTime", "network_time_ms", float),
    ("ExecutionTime", "server_time_ms", float),
    ("BytesSent", "bytes_sent", int),
    ("BytesReceived", "bytes_received", int),
    ("SelectRows", "rows_returned", int),
    ("ServerRoundtrips", "server_roundtrips", int),
)


def map_statistics(elapsed_ms: float, raw: Dict[str, Any]) -> QueryMetrics:
    """
    Copy known statistics into named fields; every raw entry is kept as well.
    Missing or unconvertible keys are left unset.
    """
    metrics = QueryMetrics(total_execution_ms=elapsed_ms)
    for key, attr, convert in _STAT_FIELDS:
        if key not in raw or raw[key] is None:
            continue
        try:
            setattr(metrics, attr, convert(raw[key]))
        except (TypeError, ValueError):
            log.debug("Ignoring non-numeric statistic {}={!r}", key, raw[key])
    for key, value in raw.items():
        if key:
            metrics.add_statistic(str(key), value)
    return metrics


class QueryProbe:
    """
    Executes SQL against an existing connection and collects client statistics,
    plans, blocking chains and wait statistics.
    """

    def execute_with_diagnostics(
        self,
        connection: DatabaseConnection,
        query: str,
        params_factory: Optional[Callable[[], Sequence[Any]]] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> QueryMetrics:
        if connection is None:
            raise ValueError("connection must be provided")
        if not query or not query.strip():
            raise ValueError("Query must be provided.")

        opened = self._ensure_open(connection, cancel_token)
        try:
            connection.statistics_enabled = True
            connection.reset_statistics()
            params = params_factory() if params_factory is not None else None
            start = time.perf_counter()
            connection.execute(query, params or None)
            elapsed_ms = (time.perf_counter() - start) * 1000.0
            raw = connection.retrieve_statistics()
        finally:
            if opened:
                connection.close()
        return map_statistics(elapsed_ms, raw)

    def analyze_query_plan(
        self,
        connection: DatabaseConnection,
        query: str,
        cancel_token: Optional[CancellationToken] = None,
    ) -> QueryPlanAnalysis:
        if connection is None:
            raise ValueError("connection must be provided")
        if not query or not query.strip():
            raise ValueError("Query must be provided.")

        analysis = QueryPlanAnalysis()
        opened = self._ensure_open(connection, cancel_token)
        try:
            connection.execute("SET SHOWPLAN_XML ON;")
            start = time.perf_counter()
            plan = connection.scalar(query)
            analysis.collection_ms = (time.perf_counter() - start) * 1000.0
            analysis.plan_xml = str(plan) if plan is not None else None
        except DatabaseError as exc:
            analysis.warnings.append(str(exc))
        finally:
            try:
                connection.execute("SET SHOWPLAN_XML OFF;")
            except DatabaseError as exc:
                log.debug("Failed to turn SHOWPLAN_XML off: {}", exc)
            if opened:
                connection.close()
        return analysis

    def detect_blocking(
        self,
        connection: DatabaseConnection,
        cancel_token: Optional[CancellationToken] = None,
    ) -> BlockingReport:
        if connection is None:
            raise ValueError("connection must be provided")

        report = BlockingReport()
        opened = self._ensure_open(connection, cancel_token)
        try:
            for row in connection.query(BLOCKING_SESSIONS_SQL):
                report.sessions.append(
                    BlockingSession(
                        session_id=column(row, 0, int),
                        blocking_session_id=column(row, 1, int),
                        wait_type=column(row, 2, str),
                        wait_time_ms=column(row, 3, float) or 0.0,
                        status=column(row, 4, str),
                        command=column(row, 5, str),
                        sql_text=column(row, 6, str),
                    )
                )
        except DatabaseError as exc:
            report.warnings.append(str(exc))
        finally:
            if opened:
                connection.close()
        return report

    def get_wait_statistics(
        self,
        connection: DatabaseConnection,
        scope: WaitStatsScope = WaitStatsScope.SESSION,
        cancel_token: Optional[CancellationToken] = None,
    ) -> WaitStatistics:
        if connection is None:
            raise ValueError("connection must be provided")

        result = WaitStatistics(scope=scope)
        sql = SESSION_WAIT_STATS_SQL if scope == WaitStatsScope.SESSION else SERVER_WAIT_STATS_SQL
        opened = self._ensure_open(connection, cancel_token)
        try:
            for row in connection.query(sql):
                result.waits.append(wait_entry(row))
        except DatabaseError as exc:
            result.warnings.append(str(exc))
        finally:
            if opened:
                connection.close()
        return result

    @staticmethod
    def _ensure_open(connection: DatabaseConnection, cancel_token: Optional[CancellationToken]) -> bool:
        if connection.is_open:
            return False
        connection.open(cancel_token)
        return True


def wait_entry(row: Sequence[Any]) -> WaitStatisticEntry:
    return WaitStatisticEntry(
        wait_type=column(row, 0, str) or "",
        wait_time_ms=column(row, 1, int) or 0,
        signal_wait_time_ms=column(row, 2, int) or 0,
        waiting_tasks=column(row, 3, int) or 0,
    )
