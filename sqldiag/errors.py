from typing import Optional


class DiagnosticsError(Exception):
    """
    Base class for errors raised by the diagnostics toolkit.
    """


class OperationCancelled(DiagnosticsError):
    """
    Raised when a cancellation token fires while an operation is in flight.
    Never counted as a probe failure.
    """


class DatabaseError(DiagnosticsError):
    """
    Driver-level failure reported by SQL Server.

    `number` is the native error number (e.g. 4060, 208), `severity` the
    error class (>= 20 means the server closed the connection).
    """

    def __init__(
        self,
        message: str,
        number: int = 0,
        severity: int = 0,
        server: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.number = number
        self.severity = severity
        self.server = server


class QueryTimeout(DiagnosticsError, TimeoutError):
    """
    Command or login timeout reported by the driver.
    """


class MonitorAlreadyRunning(DiagnosticsError, RuntimeError):
    pass


# SQL Server: invalid column name, invalid object name, missing stored procedure.
SCHEMA_MISSING_ERRORS = frozenset((207, 208, 2812))


def is_schema_missing(exc: BaseException) -> bool:
    return isinstance(exc, DatabaseError) and exc.number in SCHEMA_MISSING_ERRORS
