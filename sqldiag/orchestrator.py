from concurrent.futures import Future, ThreadPoolExecutor
from typing import TYPE_CHECKING, Dict, List, Optional, Protocol, Sequence

from .baseline import evaluate_regression
from .cancellation import CancellationToken, ensure_token
from .connection import ConnectionProbe
from .database import DatabaseProbe
from .db import ConnectionFactory, SqlServerConnection, open_connection
from .errors import OperationCancelled
from .logger import get_logger
from .models import (
    BaselineOptions,
    DiagnosticCategories,
    DiagnosticOptions,
    DiagnosticReport,
    Recommendation,
    Severity,
)
from .network import NetworkProbe, PingFunc
from .query import QueryProbe
from .server import ServerProbe
from .utils import get_data_source, parse_endpoint

if TYPE_CHECKING:
    from .events import EventLog

log = get_logger("Orchestrator")

DEFAULT_QUERY = "SELECT 1"
SQL_CATEGORIES = DiagnosticCategories.QUERY | DiagnosticCategories.SERVER | DiagnosticCategories.DATABASE


class RecommendationRule(Protocol):
    def applies(self, report: DiagnosticReport) -> bool: ...

    def generate(self, report: DiagnosticReport) -> Optional[Recommendation]: ...


class DiagnosticOrchestrator:
    """
    Decides which probes to run for a category mask, runs them and merges the
    results into one DiagnosticReport.

    Connection and Network probes run concurrently. Query, Server and Database
    probes share a single connection and run one after another. A failing
    probe is recorded in `report.metadata` and never aborts its siblings; only
    invalid input, cancellation or a shared connection that cannot be opened
    end a run with an exception.
    """

    def __init__(
        self,
        connection_factory: Optional[ConnectionFactory] = None,
        ping: Optional[PingFunc] = None,
        rules: Optional[Sequence[RecommendationRule]] = None,
        event_log: Optional["EventLog"] = None,
    ) -> None:
        self.connection_factory = connection_factory or SqlServerConnection
        self.connection_probe = ConnectionProbe(self.connection_factory)
        self.network_probe = NetworkProbe(ping)
        self.query_probe = QueryProbe()
        self.server_probe = ServerProbe()
        self.database_probe = DatabaseProbe()
        self.rules: List[RecommendationRule] = list(rules or [])
        self.event_log = event_log

    def quick_check(
        self, target: str, cancel_token: Optional[CancellationToken] = None
    ) -> DiagnosticReport:
        options = DiagnosticOptions(categories=DiagnosticCategories.CONNECTION | DiagnosticCategories.NETWORK)
        return self.run(target, options=options, cancel_token=cancel_token)

    def run_full(
        self,
        target: str,
        options: Optional[DiagnosticOptions] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> DiagnosticReport:
        return self.run(target, options=options or DiagnosticOptions(), cancel_token=cancel_token)

    def run(
        self,
        target: str,
        categories: Optional[DiagnosticCategories] = None,
        options: Optional[DiagnosticOptions] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> DiagnosticReport:
        if not target or not target.strip():
            raise ValueError("Connection string must be provided.")
        opts = (options or DiagnosticOptions()).copy()
        if categories is not None:
            opts.categories = categories
        if not opts.categories:
            opts.categories = DiagnosticCategories.ALL
        opts.validate()

        token = ensure_token(cancel_token)
        token.raise_if_cancelled()

        report = DiagnosticReport(target=get_data_source(target))
        log.info(
            "Running diagnostics for {} with categories {}",
            report.target or "<unknown>",
            opts.categories.describe(),
        )
        report.metadata["categories"] = opts.categories.describe()
        report.metadata["timeout_seconds"] = opts.timeout_seconds
        report.metadata["include_query_plans"] = opts.include_query_plans
        report.metadata["generate_recommendations"] = opts.generate_recommendations
        if opts.compare_with_baseline and opts.baseline is not None:
            report.metadata["baseline_target"] = opts.baseline.name

        self._run_independent_probes(target, report, opts, token)
        if opts.categories & SQL_CATEGORIES:
            self._run_sql_probes(target, report, opts, token)

        self._apply_baseline(report, opts)
        if opts.generate_recommendations:
            self._generate_recommendations(report, opts)

        if self.event_log is not None:
            self.event_log.log_report(report)
        return report

    def _run_independent_probes(
        self,
        target: str,
        report: DiagnosticReport,
        opts: DiagnosticOptions,
        token: CancellationToken,
    ) -> None:
        endpoint = parse_endpoint(report.target)
        want_network = DiagnosticCategories.NETWORK in opts.categories
        if want_network and endpoint is None:
            log.warning("Skipping network diagnostics; unable to determine target host.")
            report.metadata["network_skipped"] = "Missing data source"
            want_network = False

        futures: Dict[str, Future] = {}
        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="sqldiag-probe") as pool:
            if DiagnosticCategories.CONNECTION in opts.categories:
                futures["connection"] = pool.submit(self._connection_probes, target, report, opts, token)
            if want_network:
                futures["network"] = pool.submit(self._network_probes, endpoint, report, opts, token)

            cancelled = False
            for key, future in futures.items():
                try:
                    future.result()
                except OperationCancelled:
                    cancelled = True
                except Exception as exc:  # pylint: disable=broad-except
                    log.warning("{} diagnostics failed: {}", key.title(), exc)
                    report.metadata["%s_error" % key] = str(exc)
            if cancelled:
                raise OperationCancelled("Diagnostics run was cancelled.")

    def _connection_probes(
        self,
        target: str,
        report: DiagnosticReport,
        opts: DiagnosticOptions,
        token: CancellationToken,
    ) -> None:
        report.connection = self.connection_probe.measure_connection(
            target,
            attempts=opts.connection_attempts,
            delay=opts.connection_delay_seconds,
            cancel_token=token,
        )
        if opts.include_connection_pool_analysis:
            report.connection_pool = self.connection_probe.analyze_connection_pool(
                target, sample_window=opts.pool_sample_window_seconds, cancel_token=token
            )
        if opts.monitor_connection_stability:
            report.connection_stability = self.connection_probe.monitor_connection_stability(
                target,
                duration=opts.stability_duration_seconds,
                probe_interval=opts.stability_probe_interval_seconds,
                cancel_token=token,
            )

    def _network_probes(self, endpoint, report: DiagnosticReport, opts: DiagnosticOptions, token: CancellationToken) -> None:
        host, port = endpoint
        report.network = self.network_probe.measure_latency(
            host, attempts=opts.ping_attempts, timeout_ms=opts.ping_timeout_ms, cancel_token=token
        )
        if opts.include_dns_resolution:
            token.raise_if_cancelled()
            report.dns = self.network_probe.resolve_dns(host)
        if opts.include_port_probe:
            token.raise_if_cancelled()
            report.port_connectivity = self.network_probe.probe_port(host, port)

    def _run_sql_probes(
        self,
        target: str,
        report: DiagnosticReport,
        opts: DiagnosticOptions,
        token: CancellationToken,
    ) -> None:
        conn = open_connection(self.connection_factory, target, token)
        try:
            if DiagnosticCategories.QUERY in opts.categories:
                self._isolated(report, "query_skipped", "Query", lambda: self._query_probes(conn, report, opts, token))
            if DiagnosticCategories.SERVER in opts.categories:
                self._isolated(report, "server_skipped", "Server", lambda: self._server_probe(conn, report, token))
            if DiagnosticCategories.DATABASE in opts.categories:
                self._isolated(report, "database_skipped", "Database", lambda: self._database_probe(conn, report, token))
        finally:
            conn.close()

    @staticmethod
    def _isolated(report: DiagnosticReport, key: str, label: str, action) -> None:
        try:
            action()
        except OperationCancelled:
            raise
        except Exception as exc:  # pylint: disable=broad-except
            log.warning("{} diagnostics failed: {}", label, exc)
            report.metadata[key] = str(exc)

    def _query_probes(self, conn, report: DiagnosticReport, opts: DiagnosticOptions, token: CancellationToken) -> None:
        query = opts.query_to_profile if opts.query_to_profile and opts.query_to_profile.strip() else DEFAULT_QUERY
        metrics = self.query_probe.execute_with_diagnostics(conn, query, cancel_token=token)
        metrics.add_statistic("QueryText", query)
        report.query = metrics
        if opts.include_query_plans:
            token.raise_if_cancelled()
            report.query_plan = self.query_probe.analyze_query_plan(conn, query, cancel_token=token)
        if opts.detect_blocking:
            token.raise_if_cancelled()
            report.blocking = self.query_probe.detect_blocking(conn, cancel_token=token)
        if opts.capture_wait_statistics:
            token.raise_if_cancelled()
            report.wait_statistics = self.query_probe.get_wait_statistics(
                conn, opts.wait_stats_scope, cancel_token=token
            )

    def _server_probe(self, conn, report: DiagnosticReport, token: CancellationToken) -> None:
        token.raise_if_cancelled()
        report.server = self.server_probe.collect(conn, cancel_token=token)

    def _database_probe(self, conn, report: DiagnosticReport, token: CancellationToken) -> None:
        token.raise_if_cancelled()
        report.databases = self.database_probe.collect(conn, cancel_token=token)

    def _apply_baseline(self, report: DiagnosticReport, opts: DiagnosticOptions) -> None:
        if not opts.compare_with_baseline or opts.baseline is None:
            return
        try:
            comparison = evaluate_regression(opts.baseline, report, opts.baseline_options or BaselineOptions())
        except Exception as exc:  # pylint: disable=broad-except
            log.warning("Failed to compare report to baseline: {}", exc)
            report.metadata["baseline_comparison_error"] = str(exc)
            return

        report.baseline_comparison = comparison
        if not comparison.has_findings:
            return
        report.metadata["baseline_regressions"] = [f.description for f in comparison.findings]
        if not opts.generate_recommendations:
            return
        for finding in comparison.findings:
            report.recommendations.append(
                Recommendation(
                    severity=finding.severity,
                    category="Baseline Comparison",
                    issue="Regression detected relative to baseline",
                    text="%s: %s (baseline %s, current %s)"
                    % (finding.category, finding.description, finding.baseline_value, finding.current_value),
                )
            )

    def _generate_recommendations(self, report: DiagnosticReport, opts: DiagnosticOptions) -> None:
        limits = opts.thresholds
        conn = report.connection
        if conn is not None and conn.average_ms is not None and conn.average_ms > limits.slow_connection_ms:
            report.recommendations.append(
                Recommendation(
                    severity=Severity.WARNING,
                    category="Connection",
                    issue="High connection latency",
                    text="Consider enabling connection pooling or reviewing network latency.",
                )
            )
        if conn is not None and conn.success_rate < limits.low_success_rate:
            report.recommendations.append(
                Recommendation(
                    severity=Severity.WARNING,
                    category="Connectivity",
                    issue="Low success rate",
                    text="Inspect SQL Server error logs and network stability.",
                )
            )
        net = report.network
        if net is not None and net.jitter_ms is not None and net.jitter_ms > limits.high_jitter_ms:
            report.recommendations.append(
                Recommendation(
                    severity=Severity.INFO,
                    category="Network",
                    issue="High jitter detected",
                    text="Investigate network congestion or wireless links along the path.",
                )
            )

        for rule in self.rules:
            try:
                if not rule.applies(report):
                    continue
                recommendation = rule.generate(report)
                if recommendation is not None:
                    report.recommendations.append(recommendation)
            except Exception as exc:  # pylint: disable=broad-except
                log.warning("Recommendation rule {} execution failed: {}", type(rule).__name__, exc)
