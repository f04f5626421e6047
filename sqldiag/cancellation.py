import threading
from typing import Optional

from .errors import OperationCancelled


class CancellationToken:
    """
    Cooperative cancellation signal shared between a caller and the probes it runs.

    Long-running operations call `raise_if_cancelled` between steps and use
    `sleep` instead of `time.sleep` so a pending delay unwinds immediately.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled("Operation was cancelled.")

    def wait(self, timeout: Optional[float] = None) -> bool:
        """
        Block up to `timeout` seconds; returns True if cancellation fired.
        """
        return self._event.wait(timeout)

    def sleep(self, seconds: float) -> None:
        if seconds <= 0:
            self.raise_if_cancelled()
            return
        if self._event.wait(seconds):
            raise OperationCancelled("Operation was cancelled.")


def ensure_token(token: Optional[CancellationToken]) -> CancellationToken:
    return token if token is not None else CancellationToken()
