import datetime
import enum
import json
import os
import socket
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Protocol

from .logger import get_logger
from .models import DiagnosticReport, Severity, utcnow

log = get_logger("Events")


class EventType(enum.Enum):
    GENERAL = "General"
    CONNECTION = "Connection"
    NETWORK = "Network"
    QUERY = "Query"
    SERVER = "Server"
    DATASET = "Dataset"
    POOL = "Pool"
    BASELINE = "Baseline"
    PACKAGE = "Package"
    ERROR = "Error"


class EventSeverity(enum.Enum):
    INFO = "Info"
    WARNING = "Warning"
    ERROR = "Error"
    CRITICAL = "Critical"


@dataclass
class DiagnosticEvent:
    message: str
    event_type: EventType = EventType.GENERAL
    severity: EventSeverity = EventSeverity.INFO
    source: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp_utc: datetime.datetime = field(default_factory=utcnow)
    machine_name: str = field(default_factory=socket.gethostname)
    process_id: int = field(default_factory=os.getpid)

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.event_id,
            "timestamp": self.timestamp_utc.isoformat(),
            "type": self.event_type.value,
            "severity": self.severity.value,
            "message": self.message,
            "source": self.source,
            "machine": self.machine_name,
            "pid": self.process_id,
            "data": self.data,
        }


class EventSink(Protocol):
    def write(self, event: DiagnosticEvent) -> None: ...


class JsonLinesSink:
    """
    追加写入 JSON Lines，每行一个事件：
    {"id": "...", "timestamp": "2024-05-01T12:00:00+00:00", "type": "Connection",
     "severity": "Warning", "message": "...", "source": "...", "data": {...}}

    目录不存在时自动创建；多线程写入时串行化，保证每行完整。
    """

    def __init__(self, path: str) -> None:
        self.path = os.path.expanduser(path)
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        self._lock = threading.Lock()

    def write(self, event: DiagnosticEvent) -> None:
        line = json.dumps(event.to_record(), ensure_ascii=False, default=str)
        with self._lock:
            with open(self.path, "a", encoding="utf-8") as fp:
                fp.write(line + "\n")
                fp.flush()


class EventLog:
    """
    Fans structured events out to sinks. A failing sink is logged and skipped.
    """

    def __init__(self, sinks: Optional[Iterable[EventSink]] = None, source: str = "sqldiag") -> None:
        self.sinks: List[EventSink] = list(sinks or [])
        self.source = source

    def add_sink(self, sink: EventSink) -> None:
        self.sinks.append(sink)

    def log(self, event: DiagnosticEvent) -> None:
        if event.source is None:
            event.source = self.source
        for sink in list(self.sinks):
            try:
                sink.write(event)
            except Exception as exc:  # pylint: disable=broad-except
                log.warning("Event sink {} failed: {}", type(sink).__name__, exc)

    def log_event(
        self,
        message: str,
        event_type: EventType = EventType.GENERAL,
        severity: EventSeverity = EventSeverity.INFO,
        data: Optional[Dict[str, Any]] = None,
    ) -> DiagnosticEvent:
        event = DiagnosticEvent(message=message, event_type=event_type, severity=severity, data=dict(data or {}))
        self.log(event)
        return event

    def log_report(self, report: DiagnosticReport) -> DiagnosticEvent:
        data: Dict[str, Any] = {
            "target": report.target,
            "generated_at": report.generated_at_utc.isoformat(),
            "recommendations": len(report.recommendations),
        }
        if report.connection is not None:
            data["connection_avg_ms"] = report.connection.average_ms
            data["connection_success_rate"] = report.connection.success_rate
        if report.network is not None:
            data["network_avg_ms"] = report.network.average_ms
            data["network_jitter_ms"] = report.network.jitter_ms
        skipped = {k: v for k, v in report.metadata.items() if k.endswith(("_skipped", "_error"))}
        if skipped:
            data["issues"] = skipped

        worst = max((r.severity for r in report.recommendations), key=lambda s: s.rank, default=None)
        severity = EventSeverity.INFO
        if worst == Severity.CRITICAL:
            severity = EventSeverity.CRITICAL
        elif worst == Severity.WARNING or skipped:
            severity = EventSeverity.WARNING
        return self.log_event(
            "Diagnostics completed for %s" % (report.target or "<unknown>"),
            EventType.GENERAL,
            severity,
            data,
        )
