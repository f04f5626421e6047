from typing import Any, Optional, Sequence

from .cancellation import CancellationToken
from .db import DatabaseConnection, column, query_with_fallback
from .models import DatabaseMetrics, DatabaseSnapshot

_SUMMARY_CTES = """
WITH file_sizes AS (
    SELECT
        database_id,
        SUM(CASE WHEN type_desc = 'ROWS' THEN size END) * 8.0 / 1024 AS data_file_size_mb,
        SUM(CASE WHEN type_desc = 'LOG' THEN size END) * 8.0 / 1024 AS log_file_size_mb
    FROM sys.master_files
    GROUP BY database_id
),
session_counts AS (
    SELECT COALESCE(database_id, 0) AS database_id, COUNT_BIG(*) AS session_count
    FROM sys.dm_exec_sessions
    WHERE is_user_process = 1
    GROUP BY COALESCE(database_id, 0)
),
request_counts AS (
    SELECT
        COALESCE(database_id, 0) AS database_id,
        COUNT_BIG(*) AS request_count,
        SUM(CAST(wait_time AS bigint)) AS total_wait_ms
    FROM sys.dm_exec_requests
    GROUP BY COALESCE(database_id, 0)
)
SELECT
    d.database_id,
    d.name,
    d.state_desc,
    d.recovery_model_desc,
    d.compatibility_level,
    d.containment_desc,
    d.log_reuse_wait_desc,
    d.is_read_only,
    d.is_auto_close_on,
    d.is_auto_shrink_on,
    fs.data_file_size_mb,
    fs.log_file_size_mb,
    sc.session_count,
    rc.request_count,
    rc.total_wait_ms,
"""

_SUMMARY_TAIL = """
    d.is_auto_create_stats_on,
    d.is_auto_update_stats_on,
    d.target_recovery_time_in_seconds
FROM sys.databases AS d
LEFT JOIN file_sizes AS fs ON fs.database_id = d.database_id
LEFT JOIN session_counts AS sc ON sc.database_id = d.database_id
LEFT JOIN request_counts AS rc ON rc.database_id = d.database_id
"""

DATABASE_SUMMARY_SQL = (
    _SUMMARY_CTES
    + """
    ls.total_log_size_mb,
    ls.active_log_size_mb,
    ls.percent_log_used,
    ls.log_since_last_log_backup_mb,
    ls.log_backup_time,
    ls.log_checkpoint_time,
    ls.log_truncation_holdup_reason,
"""
    + _SUMMARY_TAIL
    + "OUTER APPLY sys.dm_db_log_stats(d.database_id) AS ls\nORDER BY d.name"
)

# sys.dm_db_log_stats arrived in SQL Server 2016 SP2.
DATABASE_SUMMARY_REDUCED_SQL = (
    _SUMMARY_CTES
    + """
    CAST(NULL AS decimal(18,2)) AS total_log_size_mb,
    CAST(NULL AS decimal(18,2)) AS active_log_size_mb,
    CAST(NULL AS decimal(18,2)) AS percent_log_used,
    CAST(NULL AS decimal(18,2)) AS log_since_last_log_backup_mb,
    CAST(NULL AS datetime2(3)) AS log_backup_time,
    CAST(NULL AS datetime2(3)) AS log_checkpoint_time,
    CAST(NULL AS nvarchar(256)) AS log_truncation_holdup_reason,
"""
    + _SUMMARY_TAIL
    + "ORDER BY d.name"
)

NO_DATABASES_WARNING = (
    "No databases returned by DMV queries. Ensure the login has VIEW SERVER STATE permission."
)


class DatabaseProbe:
    def collect(
        self,
        connection: DatabaseConnection,
        cancel_token: Optional[CancellationToken] = None,
    ) -> DatabaseMetrics:
        if connection is None:
            raise ValueError("connection must be provided")

        opened = False
        if not connection.is_open:
            connection.open(cancel_token)
            opened = True
        try:
            rows = query_with_fallback(
                connection, DATABASE_SUMMARY_SQL, DATABASE_SUMMARY_REDUCED_SQL, cancel_token
            )
            metrics = DatabaseMetrics(databases=[map_snapshot(r) for r in rows])
            if not metrics.databases:
                metrics.metadata["warning"] = NO_DATABASES_WARNING
            return metrics
        finally:
            if opened:
                connection.close()


def map_snapshot(row: Sequence[Any]) -> DatabaseSnapshot:
    """
    Ordinal mapping of one summary row; short rows leave trailing fields None.
    """
    snapshot = DatabaseSnapshot(
        database_id=column(row, 0, int),
        name=column(row, 1, str),
        state=column(row, 2, str),
        recovery_model=column(row, 3, str),
        compatibility_level=column(row, 4, int),
        containment=column(row, 5, str),
        log_reuse_wait=column(row, 6, str),
        is_read_only=column(row, 7, bool),
        is_auto_close=column(row, 8, bool),
        is_auto_shrink=column(row, 9, bool),
        data_file_size_mb=column(row, 10, float),
        log_file_size_mb=column(row, 11, float),
        active_sessions=column(row, 12, int),
        running_requests=column(row, 13, int),
        aggregate_wait_ms=column(row, 14, float),
        total_log_size_mb=column(row, 15, float),
        active_log_size_mb=column(row, 16, float),
        log_used_percent=column(row, 17, float),
        log_since_last_backup_mb=column(row, 18, float),
        last_log_backup_time=column(row, 19),
        last_checkpoint_time=column(row, 20),
        log_truncation_holdup_reason=column(row, 21, str),
    )
    snapshot.additional_properties["auto_create_stats"] = column(row, 22, bool)
    snapshot.additional_properties["auto_update_stats"] = column(row, 23, bool)
    snapshot.additional_properties["target_recovery_time_s"] = column(row, 24, int)
    return snapshot
