import queue
import threading
from dataclasses import dataclass
from typing import Callable, Iterator, List, Optional

from .cancellation import CancellationToken
from .errors import MonitorAlreadyRunning, OperationCancelled
from .logger import get_logger
from .models import DiagnosticOptions, DiagnosticSnapshot, utcnow
from .orchestrator import DiagnosticOrchestrator
from .utils import get_data_source

log = get_logger("Monitor")

SnapshotHandler = Callable[[DiagnosticSnapshot], None]
ErrorHandler = Callable[[BaseException], None]
CompletedHandler = Callable[[], None]

_END = object()


@dataclass(eq=False)
class Subscription:
    on_snapshot: Optional[SnapshotHandler] = None
    on_error: Optional[ErrorHandler] = None
    on_completed: Optional[CompletedHandler] = None
    _monitor: Optional["ContinuousMonitor"] = None

    def unsubscribe(self) -> None:
        if self._monitor is not None:
            self._monitor._remove(self)
            self._monitor = None


class SnapshotStream:
    """
    Blocking iterator over snapshots published by a monitor. Iteration ends
    when the loop completes; a terminal loop error is re-raised here.
    """

    def __init__(self, monitor: "ContinuousMonitor", timeout: Optional[float] = None) -> None:
        self._queue: "queue.Queue" = queue.Queue()
        self._timeout = timeout
        self._subscription = monitor.subscribe(
            on_snapshot=self._queue.put,
            on_error=self._queue.put,
            on_completed=lambda: self._queue.put(_END),
        )

    def __iter__(self) -> Iterator[DiagnosticSnapshot]:
        try:
            while True:
                item = self._queue.get(timeout=self._timeout)
                if item is _END:
                    return
                if isinstance(item, BaseException):
                    raise item
                yield item
        finally:
            self._subscription.unsubscribe()

    def close(self) -> None:
        self._subscription.unsubscribe()
        self._queue.put(_END)


class ContinuousMonitor:
    """
    Runs the orchestrator on a timer in a background thread and publishes a
    snapshot per tick.

    Quick-check mode is used when no options are given, full mode otherwise.
    A probe error other than cancellation is forwarded to `on_error` and ends
    the loop. `stop()` cancels the in-flight tick and joins the loop, so no
    snapshot is delivered once it returns.
    """

    def __init__(self, orchestrator: Optional[DiagnosticOrchestrator] = None) -> None:
        self.orchestrator = orchestrator or DiagnosticOrchestrator()
        self._gate = threading.Lock()
        self._subscribers_lock = threading.Lock()
        self._subscribers: List[Subscription] = []
        self._thread: Optional[threading.Thread] = None
        self._token: Optional[CancellationToken] = None

    @property
    def is_running(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive()

    def subscribe(
        self,
        on_snapshot: Optional[SnapshotHandler] = None,
        on_error: Optional[ErrorHandler] = None,
        on_completed: Optional[CompletedHandler] = None,
    ) -> Subscription:
        subscription = Subscription(on_snapshot, on_error, on_completed, self)
        with self._subscribers_lock:
            self._subscribers.append(subscription)
        return subscription

    def snapshots(self, timeout: Optional[float] = None) -> SnapshotStream:
        return SnapshotStream(self, timeout)

    def start(self, target: str, interval: float, options: Optional[DiagnosticOptions] = None) -> None:
        if not target or not target.strip():
            raise ValueError("Connection string must be provided.")
        if interval <= 0:
            raise ValueError("Interval must be positive.")
        if options is not None:
            options.validate()

        with self._gate:
            if self._thread is not None and self._thread.is_alive():
                raise MonitorAlreadyRunning("Monitor is already running.")
            token = CancellationToken()
            thread = threading.Thread(
                target=self._loop,
                args=(target, interval, options, token),
                name="sqldiag-monitor",
                daemon=True,
            )
            self._token = token
            self._thread = thread
            thread.start()
        log.info("Monitoring {} every {}s", get_data_source(target) or "<unknown>", interval)

    def stop(self) -> None:
        with self._gate:
            token, thread = self._token, self._thread
            self._token = None
            self._thread = None
        if token is not None:
            token.cancel()
        if thread is not None and thread is not threading.current_thread():
            thread.join()

    def close(self) -> None:
        self.stop()

    def __enter__(self) -> "ContinuousMonitor":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    def _loop(
        self,
        target: str,
        interval: float,
        options: Optional[DiagnosticOptions],
        token: CancellationToken,
    ) -> None:
        try:
            while not token.cancelled:
                if options is None:
                    report = self.orchestrator.quick_check(target, cancel_token=token)
                else:
                    report = self.orchestrator.run_full(target, options, cancel_token=token)
                if token.cancelled:
                    break
                self._publish(DiagnosticSnapshot(timestamp=utcnow(), report=report))
                if token.wait(interval):
                    break
        except OperationCancelled:
            log.debug("Monitor loop cancelled.")
        except Exception as exc:  # pylint: disable=broad-except
            log.error("Monitor loop failed: {}", exc)
            self._notify_error(exc)
            return
        self._notify_completed()

    def _handlers(self) -> List[Subscription]:
        with self._subscribers_lock:
            return list(self._subscribers)

    def _remove(self, subscription: Subscription) -> None:
        with self._subscribers_lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)

    def _publish(self, snapshot: DiagnosticSnapshot) -> None:
        for sub in self._handlers():
            if sub.on_snapshot is None:
                continue
            try:
                sub.on_snapshot(snapshot)
            except Exception as exc:  # pylint: disable=broad-except
                log.warning("Snapshot subscriber failed: {}", exc)

    def _notify_error(self, error: BaseException) -> None:
        for sub in self._handlers():
            if sub.on_error is None:
                continue
            try:
                sub.on_error(error)
            except Exception as exc:  # pylint: disable=broad-except
                log.warning("Error subscriber failed: {}", exc)

    def _notify_completed(self) -> None:
        for sub in self._handlers():
            if sub.on_completed is None:
                continue
            try:
                sub.on_completed()
            except Exception as exc:  # pylint: disable=broad-except
                log.warning("Completion subscriber failed: {}", exc)
