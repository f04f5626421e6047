from typing import Any, List, Optional, Sequence

from .cancellation import CancellationToken
from .db import DatabaseConnection, column, query_with_fallback
from .models import PerformanceCounter, ServerConfigurationSetting, ServerMetrics, ServerResourceUsage
from .query import BENIGN_WAITS, wait_entry

CPU_SQL = """
    SELECT
        record.value('(./Record/SchedulerMonitorEvent/SystemHealth/ProcessUtilization)[1]', 'int') AS cpu_usage,
        record.value('(./Record/SchedulerMonitorEvent/SystemHealth/SQLProcessUtilization)[1]', 'int') AS sql_cpu_usage
    FROM (
        SELECT TOP 1 CONVERT(xml, record) AS record
        FROM sys.dm_os_ring_buffers
        WHERE ring_buffer_type = 'RING_BUFFER_SCHEDULER_MONITOR'
        ORDER BY timestamp DESC
    ) AS x
"""

MEMORY_SQL = """
    SELECT
        (total_physical_memory_kb / 1024.0) AS total_memory_mb,
        (available_physical_memory_kb / 1024.0) AS available_memory_mb
    FROM sys.dm_os_sys_memory
"""

# Pre-2008 servers have no sys.dm_os_sys_memory.
MEMORY_REDUCED_SQL = """
    SELECT
        (physical_memory_kb / 1024.0) AS total_memory_mb,
        CAST(NULL AS float) AS available_memory_mb
    FROM sys.dm_os_sys_info
"""

PLE_SQL = """
    SELECT TOP 1 CAST(cntr_value AS float)
    FROM sys.dm_os_performance_counters
    WHERE object_name LIKE '%Buffer Manager%'
    AND counter_name = 'Page life expectancy'
"""

IO_STALL_SQL = """
    SELECT SUM(io_stall) AS io_stall
    FROM sys.dm_io_virtual_file_stats(NULL, NULL)
"""

TOP_WAITS_SQL = """
    SELECT TOP (10) wait_type, wait_time_ms, signal_wait_time_ms, waiting_tasks_count
    FROM sys.dm_os_wait_stats
    WHERE wait_type NOT IN (%s)
    ORDER BY wait_time_ms DESC
""" % ", ".join("'%s'" % w for w in BENIGN_WAITS)

PERFORMANCE_COUNTERS_SQL = """
    WITH counters AS (
        SELECT object_name, counter_name, instance_name, cntr_value, cntr_type
        FROM sys.dm_os_performance_counters
        WHERE (
            object_name LIKE '%SQL Statistics%'
            AND counter_name IN ('Batch Requests/sec', 'SQL Compilations/sec', 'SQL Re-Compilations/sec')
        )
        OR (
            object_name LIKE '%Buffer Manager%'
            AND counter_name IN ('Page life expectancy', 'Page lookups/sec', 'Buffer cache hit ratio', 'Buffer cache hit ratio base')
        )
        OR (
            object_name LIKE '%General Statistics%'
            AND counter_name IN ('User Connections')
        )
    )
    SELECT
        c.object_name,
        c.counter_name,
        c.instance_name,
        CASE
            WHEN c.counter_name = 'Buffer cache hit ratio'
                THEN CASE
                    WHEN b.cntr_value IS NULL OR b.cntr_value = 0 THEN NULL
                    ELSE (c.cntr_value * 100.0) / b.cntr_value
                END
            ELSE CAST(c.cntr_value AS float)
        END AS cntr_value,
        c.cntr_type
    FROM counters AS c
    LEFT JOIN counters AS b
        ON c.counter_name = 'Buffer cache hit ratio'
        AND b.counter_name = 'Buffer cache hit ratio base'
        AND c.object_name = b.object_name
        AND ISNULL(c.instance_name, '') = ISNULL(b.instance_name, '')
    WHERE c.counter_name <> 'Buffer cache hit ratio base'
"""

CONFIGURATION_SQL = """
    SELECT
        name,
        description,
        CAST(value AS float) AS configured_value,
        CAST(value_in_use AS float) AS value_in_use,
        is_advanced
    FROM sys.configurations
    WHERE value <> value_in_use
        OR name IN ('cost threshold for parallelism', 'max degree of parallelism', 'optimize for ad hoc workloads')
    ORDER BY name
"""


class ServerProbe:
    """
    Instance-wide resource usage, waits, counters and configuration from DMVs.
    """

    def collect(
        self,
        connection: DatabaseConnection,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ServerMetrics:
        if connection is None:
            raise ValueError("connection must be provided")

        opened = False
        if not connection.is_open:
            connection.open(cancel_token)
            opened = True
        try:
            metrics = ServerMetrics(resource_usage=self._resource_usage(connection, cancel_token))
            metrics.waits = [wait_entry(r) for r in self._rows(connection, TOP_WAITS_SQL, cancel_token)]
            metrics.performance_counters = [
                _counter(r) for r in self._rows(connection, PERFORMANCE_COUNTERS_SQL, cancel_token)
            ]
            metrics.configuration = [
                _setting(r) for r in self._rows(connection, CONFIGURATION_SQL, cancel_token)
            ]
            version = self._scalar(connection, "SELECT @@VERSION", cancel_token)
            metrics.properties["sql_version_string"] = version or ""
            return metrics
        finally:
            if opened:
                connection.close()

    def _resource_usage(
        self, connection: DatabaseConnection, cancel_token: Optional[CancellationToken]
    ) -> ServerResourceUsage:
        usage = ServerResourceUsage()

        cpu = self._rows(connection, CPU_SQL, cancel_token)
        if cpu:
            usage.cpu_percent = column(cpu[0], 0, float)
            usage.sql_process_percent = column(cpu[0], 1, float)

        memory = self._rows(connection, MEMORY_SQL, cancel_token, reduced=MEMORY_REDUCED_SQL)
        if memory:
            usage.total_memory_mb = column(memory[0], 0, float)
            usage.available_memory_mb = column(memory[0], 1, float)

        usage.page_life_expectancy_seconds = _to_float(self._scalar(connection, PLE_SQL, cancel_token))
        io_stall = self._scalar(connection, IO_STALL_SQL, cancel_token)
        usage.io_stall_ms = int(io_stall) if io_stall is not None else None
        return usage

    @staticmethod
    def _rows(
        connection: DatabaseConnection,
        sql: str,
        cancel_token: Optional[CancellationToken],
        reduced: Optional[str] = None,
    ) -> List[Sequence[Any]]:
        return query_with_fallback(connection, sql, reduced, cancel_token)

    def _scalar(self, connection: DatabaseConnection, sql: str, cancel_token: Optional[CancellationToken]) -> Any:
        rows = self._rows(connection, sql, cancel_token)
        return column(rows[0], 0) if rows else None


def _counter(row: Sequence[Any]) -> PerformanceCounter:
    return PerformanceCounter(
        object_name=_strip(column(row, 0, str)),
        counter_name=_strip(column(row, 1, str)) or "",
        instance_name=_strip(column(row, 2, str)),
        value=column(row, 3, float),
        counter_type=column(row, 4, int),
    )


def _setting(row: Sequence[Any]) -> ServerConfigurationSetting:
    return ServerConfigurationSetting(
        name=column(row, 0, str) or "",
        description=column(row, 1, str),
        value=column(row, 2, float),
        value_in_use=column(row, 3, float),
        is_advanced=bool(column(row, 4)),
    )


def _strip(value: Optional[str]) -> Optional[str]:
    # performance counter names are fixed-width nchar columns
    return value.strip() if value is not None else None


def _to_float(value: Any) -> Optional[float]:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None
