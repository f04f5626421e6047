import datetime
import json
import os
import re
import socket
import threading
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from .cancellation import CancellationToken, ensure_token
from .logger import get_logger
from .models import (
    BaselineOptions,
    ConnectionBaselineMetrics,
    DiagnosticReport,
    NetworkBaselineMetrics,
    PerformanceBaseline,
    RegressionFinding,
    RegressionReport,
    Severity,
    utcnow,
)
from .stats import mean, percentile
from .utils import hash_target, sanitize_file_name

if TYPE_CHECKING:
    from .orchestrator import DiagnosticOrchestrator

log = get_logger("Baseline")

DEFAULT_STORAGE_DIR = os.path.join("~", ".sqldiag", "baselines")
BASELINE_NOT_FOUND = "Baseline not found. Capture a baseline before running comparisons."
NO_REGRESSIONS = "No regressions detected."

_TIMESTAMP_FORMAT = "%Y%m%d%H%M%S%f"
_STORED_NAME = re.compile(r"-(\d{20})(?:-(\d+))?\.json$", re.IGNORECASE)
_write_lock = threading.Lock()

QuickCheckRunner = Callable[[str, CancellationToken], DiagnosticReport]


class BaselineEngine:
    """
    Captures latency baselines from repeated quick checks, stores them as JSON
    files and compares fresh quick checks against them.
    """

    def __init__(
        self,
        storage_dir: Optional[str] = None,
        runner: Optional[QuickCheckRunner] = None,
        orchestrator: Optional["DiagnosticOrchestrator"] = None,
    ) -> None:
        self.storage_dir = os.path.expanduser(storage_dir or DEFAULT_STORAGE_DIR)
        if runner is None:
            if orchestrator is None:
                from .orchestrator import DiagnosticOrchestrator

                orchestrator = DiagnosticOrchestrator()
            runner = orchestrator.quick_check
        self._runner = runner

    def capture_baseline(
        self,
        target: str,
        name: str,
        options: Optional[BaselineOptions] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> PerformanceBaseline:
        if not target or not target.strip():
            raise ValueError("Connection string must be provided.")
        if not name or not name.strip():
            raise ValueError("Baseline name must be provided.")
        opts = (options or BaselineOptions()).copy()
        opts.validate()
        token = ensure_token(cancel_token)

        connection_samples: List[float] = []
        network_samples: List[float] = []
        success_rates: List[float] = []
        for index in range(opts.sample_count):
            token.raise_if_cancelled()
            report = self._runner(target, token)
            if report.connection is not None:
                success_rates.append(report.connection.success_rate)
                if report.connection.average_ms is not None:
                    connection_samples.append(report.connection.average_ms)
            if report.network is not None and report.network.average_ms is not None:
                network_samples.append(report.network.average_ms)
            if index < opts.sample_count - 1 and opts.sample_interval_seconds > 0:
                token.sleep(opts.sample_interval_seconds)

        baseline = PerformanceBaseline(
            name=name,
            captured_at_utc=utcnow(),
            target_hash=hash_target(target),
            sample_count=opts.sample_count,
            connection=ConnectionBaselineMetrics(
                median_ms=percentile(connection_samples, 0.5),
                p95_ms=percentile(connection_samples, 0.95),
                p99_ms=percentile(connection_samples, 0.99),
                success_rate=mean(success_rates),
            ),
            network=NetworkBaselineMetrics(
                median_ms=percentile(network_samples, 0.5),
                p95_ms=percentile(network_samples, 0.95),
                p99_ms=percentile(network_samples, 0.99),
            ),
            machine_name=socket.gethostname(),
        )
        path = self.save(baseline)
        log.info("Captured baseline {} from {} samples into {}", name, opts.sample_count, path)
        return baseline

    def compare_to_baseline(
        self,
        target: str,
        baseline_name: Optional[str] = None,
        options: Optional[BaselineOptions] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> RegressionReport:
        if not target or not target.strip():
            raise ValueError("Connection string must be provided.")
        opts = (options or BaselineOptions()).copy()
        opts.validate()
        token = ensure_token(cancel_token)

        if baseline_name and baseline_name.strip():
            baseline = self.load_by_name(baseline_name)
        else:
            baseline = self.load_latest_for_target(target)
        if baseline is None:
            return RegressionReport(success=False, message=BASELINE_NOT_FOUND, compared_at_utc=utcnow())

        report = self._runner(target, token)
        return evaluate_regression(baseline, report, opts)

    def save(self, baseline: PerformanceBaseline) -> str:
        os.makedirs(self.storage_dir, exist_ok=True)
        stem = "%s-%s" % (sanitize_file_name(baseline.name), baseline.captured_at_utc.strftime(_TIMESTAMP_FORMAT))
        payload = json.dumps(baseline_to_dict(baseline), ensure_ascii=False, indent=2)
        with _write_lock:
            path = os.path.join(self.storage_dir, stem + ".json")
            suffix = 1
            while True:
                try:
                    with open(path, "x", encoding="utf-8") as fp:
                        fp.write(payload)
                    return path
                except FileExistsError:
                    path = os.path.join(self.storage_dir, "%s-%d.json" % (stem, suffix))
                    suffix += 1

    def load_by_name(self, name: str) -> Optional[PerformanceBaseline]:
        pattern = re.compile(
            r"^%s-\d{20}(-\d+)?\.json$" % re.escape(sanitize_file_name(name)), re.IGNORECASE
        )
        for file_name in self._newest_first():
            if not pattern.match(file_name):
                continue
            baseline = self._read(file_name)
            if baseline is not None:
                return baseline
        return None

    def load_latest_for_target(self, target: str) -> Optional[PerformanceBaseline]:
        wanted = hash_target(target)
        for baseline in self.list_baselines():
            if baseline.target_hash == wanted:
                return baseline
        return None

    def list_baselines(self) -> List[PerformanceBaseline]:
        result = []
        for file_name in self._newest_first():
            baseline = self._read(file_name)
            if baseline is not None:
                result.append(baseline)
        return result

    def _newest_first(self) -> List[str]:
        """
        Stored files ordered by capture time, then by collision suffix, newest first.
        """

        def key(file_name: str):
            match = _STORED_NAME.search(file_name)
            if match is None:
                return ("", 0, file_name)
            return (match.group(1), int(match.group(2) or 0), file_name)

        return sorted(self._files(), key=key, reverse=True)

    def _files(self) -> List[str]:
        if not os.path.isdir(self.storage_dir):
            return []
        return [f for f in os.listdir(self.storage_dir) if f.lower().endswith(".json")]

    def _read(self, file_name: str) -> Optional[PerformanceBaseline]:
        path = os.path.join(self.storage_dir, file_name)
        try:
            with open(path, "r", encoding="utf-8") as fp:
                return baseline_from_dict(json.load(fp))
        except (OSError, ValueError, KeyError, TypeError) as exc:
            log.warning("Skipping unreadable baseline file {}: {}", path, exc)
            return None


def evaluate_regression(
    baseline: PerformanceBaseline,
    report: DiagnosticReport,
    options: Optional[BaselineOptions] = None,
) -> RegressionReport:
    """
    Compare a report's connection and network figures with a stored baseline.
    Metrics missing on either side are not compared.
    """
    opts = options or BaselineOptions()
    result = RegressionReport(
        success=True,
        baseline_name=baseline.name,
        baseline_captured_at_utc=baseline.captured_at_utc,
        compared_at_utc=utcnow(),
    )

    conn = report.connection
    base_p95 = baseline.connection.p95_ms
    if conn is not None and conn.average_ms is not None and base_p95 is not None and base_p95 > 0:
        threshold = base_p95 * (1 + opts.connection_latency_tolerance)
        if conn.average_ms > threshold:
            over = (conn.average_ms - threshold) / threshold
            result.findings.append(
                RegressionFinding(
                    severity=Severity.CRITICAL if over > opts.critical_over_ratio else Severity.WARNING,
                    category="Connection",
                    description="Average connection time exceeds baseline.",
                    baseline_value="%.0f ms (P95)" % base_p95,
                    current_value="%.0f ms" % conn.average_ms,
                    percentage_change=(conn.average_ms - base_p95) / base_p95,
                )
            )

    base_rate = baseline.connection.success_rate
    if conn is not None and base_rate is not None:
        if conn.success_rate < base_rate - opts.success_rate_tolerance:
            result.findings.append(
                RegressionFinding(
                    severity=Severity.CRITICAL,
                    category="Reliability",
                    description="Connection success rate has dropped.",
                    baseline_value="%.1f%%" % (base_rate * 100),
                    current_value="%.1f%%" % (conn.success_rate * 100),
                    percentage_change=(conn.success_rate - base_rate) / base_rate if base_rate > 0 else None,
                )
            )

    net = report.network
    base_net = baseline.network.p95_ms
    if net is not None and net.average_ms is not None and base_net is not None and base_net > 0:
        if net.average_ms > base_net * (1 + opts.network_latency_tolerance):
            result.findings.append(
                RegressionFinding(
                    severity=Severity.WARNING,
                    category="Network",
                    description="Network latency is higher than baseline.",
                    baseline_value="%.0f ms (P95)" % base_net,
                    current_value="%.0f ms" % net.average_ms,
                    percentage_change=(net.average_ms - base_net) / base_net,
                )
            )

    result.message = NO_REGRESSIONS if not result.findings else "%d regression(s) detected." % len(result.findings)
    return result


def baseline_to_dict(baseline: PerformanceBaseline) -> Dict[str, Any]:
    return {
        "name": baseline.name,
        "captured_at_utc": baseline.captured_at_utc.isoformat(),
        "target_hash": baseline.target_hash,
        "sample_count": baseline.sample_count,
        "machine_name": baseline.machine_name,
        "connection": {
            "median_ms": baseline.connection.median_ms,
            "p95_ms": baseline.connection.p95_ms,
            "p99_ms": baseline.connection.p99_ms,
            "success_rate": baseline.connection.success_rate,
        },
        "network": {
            "median_ms": baseline.network.median_ms,
            "p95_ms": baseline.network.p95_ms,
            "p99_ms": baseline.network.p99_ms,
        },
    }


def baseline_from_dict(data: Dict[str, Any]) -> PerformanceBaseline:
    captured = datetime.datetime.fromisoformat(data["captured_at_utc"])
    if captured.tzinfo is None:
        captured = captured.replace(tzinfo=datetime.timezone.utc)
    conn = data.get("connection") or {}
    net = data.get("network") or {}
    return PerformanceBaseline(
        name=data["name"],
        captured_at_utc=captured,
        target_hash=data["target_hash"],
        sample_count=int(data.get("sample_count", 0)),
        connection=ConnectionBaselineMetrics(
            median_ms=conn.get("median_ms"),
            p95_ms=conn.get("p95_ms"),
            p99_ms=conn.get("p99_ms"),
            success_rate=conn.get("success_rate"),
        ),
        network=NetworkBaselineMetrics(
            median_ms=net.get("median_ms"),
            p95_ms=net.get("p95_ms"),
            p99_ms=net.get("p99_ms"),
        ),
        machine_name=data.get("machine_name"),
    )
