import re
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

from .cancellation import CancellationToken
from .errors import DatabaseError, OperationCancelled, QueryTimeout, is_schema_missing
from .logger import get_logger
from .retry import execute_with_retry
from .utils import get_data_source, parse_connection_string

log = get_logger("Database")

DEFAULT_ODBC_DRIVER = "ODBC Driver 18 for SQL Server"

_ERROR_NUMBER = re.compile(r"\((\d+)\)")

# ADO.NET style keys -> ODBC keys. Pooling keys are client-side only.
_KEY_MAP = {
    "data source": "SERVER",
    "server": "SERVER",
    "address": "SERVER",
    "addr": "SERVER",
    "network address": "SERVER",
    "initial catalog": "DATABASE",
    "database": "DATABASE",
    "user id": "UID",
    "uid": "UID",
    "user": "UID",
    "password": "PWD",
    "pwd": "PWD",
    "encrypt": "Encrypt",
    "trustservercertificate": "TrustServerCertificate",
    "trust server certificate": "TrustServerCertificate",
    "application name": "APP",
    "multisubnetfailover": "MultiSubnetFailover",
}
_SKIPPED_KEYS = ("pooling", "min pool size", "max pool size", "connect timeout", "connection timeout", "timeout")


class DatabaseConnection(Protocol):
    """
    Capability the probes need from a database client.
    """

    statistics_enabled: bool

    @property
    def is_open(self) -> bool: ...

    def open(self, cancel_token: Optional[CancellationToken] = None) -> None: ...

    def close(self) -> None: ...

    def execute(self, sql: str, params: Optional[Sequence[Any]] = None) -> int: ...

    def query(self, sql: str, params: Optional[Sequence[Any]] = None) -> List[Sequence[Any]]: ...

    def scalar(self, sql: str, params: Optional[Sequence[Any]] = None) -> Any: ...

    def reset_statistics(self) -> None: ...

    def retrieve_statistics(self) -> Dict[str, Any]: ...


ConnectionFactory = Callable[[str], DatabaseConnection]


def column(row: Optional[Sequence[Any]], index: int, convert: Optional[Callable[[Any], Any]] = None) -> Any:
    """
    Bounds-checked, NULL-aware ordinal access. Out-of-range ordinals, NULLs and
    values `convert` rejects all come back as None.
    """
    if row is None or index < 0 or index >= len(row):
        return None
    value = row[index]
    if value is None:
        return None
    if convert is None:
        return value
    try:
        return convert(value)
    except (TypeError, ValueError):
        return None


def to_odbc(connection_string: str, driver: str = DEFAULT_ODBC_DRIVER) -> str:
    parts = parse_connection_string(connection_string)
    if "driver" in parts or "dsn" in parts:
        return connection_string
    out = ["DRIVER={%s}" % driver]
    for key, value in parts.items():
        if key in _SKIPPED_KEYS:
            continue
        if key in ("integrated security", "trusted_connection"):
            if value.lower() in ("true", "yes", "sspi"):
                out.append("Trusted_Connection=yes")
            continue
        mapped = _KEY_MAP.get(key, key)
        out.append("%s={%s}" % (mapped, value) if ";" in value else "%s=%s" % (mapped, value))
    return ";".join(out)


def login_timeout(connection_string: str, default: int = 15) -> int:
    parts = parse_connection_string(connection_string)
    for key in ("connect timeout", "connection timeout", "timeout"):
        if parts.get(key, "").isdigit():
            return int(parts[key])
    return default


def translate_error(exc: Exception, server: Optional[str] = None) -> Exception:
    """
    Map a DB-API driver error onto DatabaseError / QueryTimeout.
    """
    args = getattr(exc, "args", ()) or ()
    sqlstate = str(args[0]) if len(args) > 1 else ""
    message = str(args[-1]) if args else str(exc)
    if sqlstate in ("HYT00", "HYT01"):
        return QueryTimeout(message)
    numbers = _ERROR_NUMBER.findall(message)
    number = int(numbers[0]) if numbers else 0
    # 08xxx: connection exception class, the session is gone.
    severity = 20 if sqlstate.startswith("08") else 16
    return DatabaseError(message, number=number, severity=severity, server=server)


class SqlServerConnection:
    """
    Thin wrapper around pyodbc with client-side execution statistics.
    """

    def __init__(
        self,
        connection_string: str,
        command_timeout: int = 30,
        odbc_driver: str = DEFAULT_ODBC_DRIVER,
    ) -> None:
        if not connection_string or not connection_string.strip():
            raise ValueError("Connection string must be provided.")
        self.connection_string = connection_string
        self.command_timeout = command_timeout
        self.odbc_driver = odbc_driver
        self.server = get_data_source(connection_string)
        self.statistics_enabled = False
        self._driver = None
        self._conn = None
        self._stats: Dict[str, Any] = {}
        self.reset_statistics()

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def open(self, cancel_token: Optional[CancellationToken] = None) -> None:
        if self._conn is not None:
            return
        driver = self._load_driver()
        odbc = to_odbc(self.connection_string, self.odbc_driver)
        timeout = login_timeout(self.connection_string)

        def _connect():
            try:
                return driver.connect(odbc, timeout=timeout)
            except driver.Error as exc:
                raise translate_error(exc, self.server) from exc

        conn = _connect_cancellable(_connect, cancel_token)
        conn.timeout = self.command_timeout
        self._conn = conn

    def close(self) -> None:
        if self._conn is not None:
            conn, self._conn = self._conn, None
            conn.close()

    def execute(self, sql: str, params: Optional[Sequence[Any]] = None) -> int:
        cursor = self._cursor()
        try:
            start = time.perf_counter()
            self._run(cursor, sql, params)
            rowcount = cursor.rowcount
            rows = self._drain(cursor)
            self._record(sql, start, rows=rows)
            return rowcount
        finally:
            cursor.close()

    def query(self, sql: str, params: Optional[Sequence[Any]] = None) -> List[Sequence[Any]]:
        cursor = self._cursor()
        try:
            start = time.perf_counter()
            self._run(cursor, sql, params)
            rows = self._fetch_all(cursor)
            self._record(sql, start, rows=len(rows))
            return [tuple(r) for r in rows]
        finally:
            cursor.close()

    def scalar(self, sql: str, params: Optional[Sequence[Any]] = None) -> Any:
        rows = self.query(sql, params)
        return column(rows[0], 0) if rows else None

    def reset_statistics(self) -> None:
        self._stats = {
            "ExecutionTime": 0.0,
            "SelectRows": 0,
            "ServerRoundtrips": 0,
            "BytesSent": 0,
        }

    def retrieve_statistics(self) -> Dict[str, Any]:
        return dict(self._stats)

    def _cursor(self):
        if self._conn is None:
            raise DatabaseError("Connection is not open.", server=self.server)
        return self._conn.cursor()

    def _run(self, cursor, sql: str, params: Optional[Sequence[Any]]) -> None:
        driver = self._load_driver()
        try:
            if params:
                cursor.execute(sql, *params)
            else:
                cursor.execute(sql)
        except driver.Error as exc:
            raise translate_error(exc, self.server) from exc

    def _fetch_all(self, cursor) -> List[Any]:
        driver = self._load_driver()
        rows: List[Any] = []
        try:
            while True:
                if cursor.description is not None:
                    rows.extend(cursor.fetchall())
                    break
                if not cursor.nextset():
                    break
        except driver.Error as exc:
            raise translate_error(exc, self.server) from exc
        return rows

    def _drain(self, cursor) -> int:
        """
        Read every pending result set so the rows the server sent are counted.
        """
        driver = self._load_driver()
        count = 0
        try:
            while True:
                if cursor.description is not None:
                    count += len(cursor.fetchall())
                if not cursor.nextset():
                    break
        except driver.Error as exc:
            raise translate_error(exc, self.server) from exc
        return count

    def _record(self, sql: str, start: float, rows: int) -> None:
        if not self.statistics_enabled:
            return
        self._stats["ExecutionTime"] += (time.perf_counter() - start) * 1000.0
        self._stats["SelectRows"] += rows
        self._stats["ServerRoundtrips"] += 1
        # TDS sends batch text as UTF-16.
        self._stats["BytesSent"] += len(sql.encode("utf-16-le"))

    def _load_driver(self):
        if self._driver:
            return self._driver
        try:
            import pyodbc as driver
        except ImportError as exc:
            raise ImportError(
                "Install pyodbc (pip install sqldiag[sqlserver]) and an ODBC driver "
                "for SQL Server to use SqlServerConnection."
            ) from exc
        self._driver = driver
        return driver


def _connect_cancellable(connect: Callable[[], Any], cancel_token: Optional[CancellationToken]):
    """
    Run a blocking connect on a helper thread so the caller can unwind as soon
    as the token fires. A connection that arrives after cancellation is closed.
    """
    if cancel_token is None:
        return connect()
    cancel_token.raise_if_cancelled()

    lock = threading.Lock()
    done = threading.Event()
    state: Dict[str, Any] = {"abandoned": False}

    def _worker():
        try:
            conn = connect()
        except Exception as exc:  # pylint: disable=broad-except
            with lock:
                state["error"] = exc
            done.set()
            return
        with lock:
            if state["abandoned"]:
                conn.close()
                return
            state["conn"] = conn
        done.set()

    threading.Thread(target=_worker, name="sqldiag-connect", daemon=True).start()
    while not done.wait(0.05):
        if cancel_token.cancelled:
            with lock:
                if not done.is_set():
                    state["abandoned"] = True
                    raise OperationCancelled("Connection open was cancelled.")
    if "error" in state:
        raise state["error"]
    return state["conn"]


def open_connection(
    factory: ConnectionFactory,
    target: str,
    cancel_token: Optional[CancellationToken] = None,
) -> DatabaseConnection:
    conn = factory(target)
    conn.open(cancel_token)
    return conn


def query_with_fallback(
    conn: DatabaseConnection,
    optimistic_sql: str,
    reduced_sql: Optional[str],
    cancel_token: Optional[CancellationToken] = None,
) -> List[Sequence[Any]]:
    """
    Run `optimistic_sql` with transient-error retries. When the server does
    not know an object or column it references (207, 208, 2812), run
    `reduced_sql` instead; with no reduced query the result is empty.
    """
    try:
        return execute_with_retry(lambda: conn.query(optimistic_sql), cancel_token=cancel_token)
    except DatabaseError as exc:
        if not is_schema_missing(exc):
            raise
        log.debug("Optimistic DMV query unavailable ({}); using reduced query.", exc.number)
        if reduced_sql is None:
            return []
        return execute_with_retry(lambda: conn.query(reduced_sql), cancel_token=cancel_token)
