import functools
from typing import Callable, Optional, TypeVar

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_fixed,
)

from .cancellation import CancellationToken, ensure_token
from .errors import DatabaseError
from .logger import get_logger

log = get_logger("Retry")

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_DELAY_SECONDS = 0.15

# Login failure during failover, throttling, resource governor, database
# unavailable and elastic pool limits.
TRANSIENT_ERROR_NUMBERS = frozenset(
    (4060, 10928, 10929, 40197, 40501, 40613, 49918, 49919, 49920)
)
# Errors at this class or above close the connection.
FATAL_SEVERITY_CLASS = 20


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, DatabaseError):
        return exc.number in TRANSIENT_ERROR_NUMBERS or exc.severity >= FATAL_SEVERITY_CLASS
    return isinstance(exc, TimeoutError)


def _log_retry(state: RetryCallState) -> None:
    exc = state.outcome.exception() if state.outcome else None
    if isinstance(exc, TimeoutError):
        log.warning("Timeout on attempt {}: {}", state.attempt_number, exc)
    else:
        log.warning("Transient SQL error on attempt {}: {}", state.attempt_number, exc)


def execute_with_retry(
    operation: Callable[[], T],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    delay: float = DEFAULT_DELAY_SECONDS,
    cancel_token: Optional[CancellationToken] = None,
) -> T:
    """
    Run `operation`, retrying transient failures with a fixed delay.

    Non-transient errors propagate on the first occurrence; once attempts are
    exhausted the last transient error is re-raised. The delay between
    attempts is cancellable and raises OperationCancelled.
    """
    if operation is None:
        raise ValueError("operation must be provided")
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")
    if delay < 0:
        raise ValueError("delay must not be negative")

    token = ensure_token(cancel_token)
    token.raise_if_cancelled()
    retrying = Retrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_fixed(delay),
        retry=retry_if_exception(is_transient),
        before_sleep=_log_retry,
        sleep=token.sleep,
        reraise=True,
    )
    return retrying(operation)


def retrying(
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    delay: float = DEFAULT_DELAY_SECONDS,
):
    """
    Decorator form of `execute_with_retry`. The wrapped callable may receive
    a `cancel_token` keyword, which is also used for the retry waits.
    """

    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            token = kwargs.get("cancel_token")
            return execute_with_retry(
                lambda: func(*args, **kwargs),
                max_attempts=max_attempts,
                delay=delay,
                cancel_token=token,
            )

        return wrapper

    return decorator
