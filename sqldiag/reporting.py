import datetime
import enum
import html
import json
import os
from typing import Any, List, Optional

from .models import (
    ConnectionPoolHealthReport,
    DiagnosticReport,
    RegressionReport,
    Severity,
    TriageResult,
)

FORMATS = ("text", "json", "markdown", "html")


def format_report(report: DiagnosticReport) -> str:
    parts = [
        "Target: %s" % (report.target or "<unknown>"),
        "Generated: %s" % report.generated_at_utc.isoformat(),
        "Health score: %d/100" % health_score(report),
    ]
    conn = report.connection
    if conn is not None:
        parts.append(
            "Connection: %d/%d succeeded (%.0f%%), avg %s, min %s, max %s"
            % (
                conn.successful_attempts,
                conn.total_attempts,
                conn.success_rate * 100,
                _ms(conn.average_ms),
                _ms(conn.min_ms),
                _ms(conn.max_ms),
            )
        )
        for failure in conn.failures:
            parts.append("  Failure: %s" % failure.message)
    net = report.network
    if net is not None:
        parts.append(
            "Network: %s, %d/%d replies, avg %s, jitter %s"
            % (net.host, net.successful_samples, len(net.samples), _ms(net.average_ms), _ms(net.jitter_ms))
        )
    if report.dns is not None:
        dns = report.dns
        parts.append(
            "DNS: %s -> %s (%.0f ms)"
            % (dns.host, ", ".join(dns.addresses) if dns.success else "FAILED %s" % (dns.error or ""), dns.elapsed_ms)
        )
    if report.port_connectivity is not None:
        port = report.port_connectivity
        parts.append(
            "Port %s:%s: %s (%.0f ms)" % (port.host, port.port, "OPEN" if port.success else "CLOSED", port.elapsed_ms)
        )
    if report.query is not None:
        query = report.query
        parts.append(
            "Query: total %s, server %s, rows %s, roundtrips %s"
            % (_ms(query.total_execution_ms), _ms(query.server_time_ms), query.rows_returned, query.server_roundtrips)
        )
    if report.blocking is not None:
        parts.append("Blocking sessions: %d" % len(report.blocking.sessions))
    if report.wait_statistics is not None and report.wait_statistics.waits:
        top = report.wait_statistics.waits[0]
        parts.append("Top wait: %s (%d ms)" % (top.wait_type, top.wait_time_ms))
    if report.server is not None:
        usage = report.server.resource_usage
        parts.append(
            "Server: CPU %s%%, SQL CPU %s%%, PLE %s s, available memory %s MB"
            % (
                _num(usage.cpu_percent),
                _num(usage.sql_process_percent),
                _num(usage.page_life_expectancy_seconds),
                _num(usage.available_memory_mb),
            )
        )
    if report.databases is not None:
        names = [d.name or "?" for d in report.databases.databases]
        parts.append("Databases (%d): %s" % (len(names), ", ".join(names)))
    if report.connection_pool is not None:
        pool = report.connection_pool
        parts.append(
            "Pool: %s, active %s, free %s, pooled %s"
            % (
                "enabled" if pool.pooling_enabled else "disabled",
                pool.active_connections,
                pool.free_connections,
                pool.pooled_connections,
            )
        )
        for note in pool.notes:
            parts.append("  Note: %s" % note)
    if report.connection_stability is not None:
        stability = report.connection_stability
        parts.append(
            "Stability: %d ok / %d failed, avg %s"
            % (stability.success_count, stability.failure_count, _ms(stability.average_ms))
        )
    if report.baseline_comparison is not None:
        parts.append(format_regression(report.baseline_comparison))
    notes = {k: v for k, v in report.metadata.items() if k.endswith(("_skipped", "_error"))}
    for key, value in sorted(notes.items()):
        parts.append("Skipped %s: %s" % (key, value))
    if report.recommendations:
        parts.append("Recommendations:")
        for idx, rec in enumerate(report.recommendations, start=1):
            parts.append("%s. [%s] %s: %s" % (idx, rec.severity.value, rec.issue, rec.text))
    return "\n".join(parts)


def format_triage(result: TriageResult) -> str:
    parts = ["Diagnosis: %s - %s" % (result.diagnosis.category, result.diagnosis.summary)]
    if result.diagnosis.details:
        parts.append("Details: %s" % result.diagnosis.details)
    for test in (result.network, result.connection, result.query, result.server, result.blocking):
        parts.append(
            "%-10s %s  %.0f ms  %s" % (test.name, "OK  " if test.success else "FAIL", test.duration_ms, test.details)
        )
        for issue in test.issues:
            parts.append("           - %s" % issue)
    if result.diagnosis.recommendations:
        parts.append("Suggestions:")
        for idx, tip in enumerate(result.diagnosis.recommendations, start=1):
            parts.append("%s. %s" % (idx, tip))
    parts.append("Duration: %.0f ms" % result.duration_ms)
    return "\n".join(parts)


def format_regression(report: RegressionReport) -> str:
    parts = []
    if report.baseline_name:
        captured = report.baseline_captured_at_utc
        parts.append(
            "Baseline: %s (captured %s)" % (report.baseline_name, captured.isoformat() if captured else "?")
        )
    if report.message:
        parts.append(report.message)
    for finding in report.findings:
        change = ""
        if finding.percentage_change is not None:
            change = " (%+.0f%%)" % (finding.percentage_change * 100)
        parts.append(
            "[%s] %s: %s baseline %s, current %s%s"
            % (
                finding.severity.value,
                finding.category,
                finding.description,
                finding.baseline_value,
                finding.current_value,
                change,
            )
        )
    return "\n".join(parts)


def format_pool_health(report: ConnectionPoolHealthReport) -> str:
    summary = report.summary
    parts = [
        "Pool health: %s" % summary.severity.value,
        "Samples: %d" % len(report.snapshots),
        "Failure rate: %.0f%%" % (summary.failure_rate * 100),
        "Avg acquisition: %.0f ms" % summary.average_acquisition_ms,
    ]
    for issue in summary.issues:
        parts.append("Issue: %s" % issue)
    for rec in summary.recommendations:
        parts.append("Recommendation: %s" % rec)
    return "\n".join(parts)


def health_score(report: DiagnosticReport) -> int:
    """
    0..100 summary score. Starts at 100 and subtracts weighted penalties for
    connection failures and latency, network latency and jitter, and for
    each Warning or Critical recommendation.
    """
    score = 100.0
    conn = report.connection
    if conn is not None:
        score -= (1 - conn.success_rate) * 40
        if conn.average_ms is not None:
            score -= min(conn.average_ms / 1000.0, 1.0) * 15
    net = report.network
    if net is not None:
        if net.average_ms is not None:
            score -= min(net.average_ms / 200.0, 1.0) * 20
        if net.jitter_ms is not None:
            score -= min(net.jitter_ms / 100.0, 1.0) * 10
    for rec in report.recommendations:
        if rec.severity == Severity.CRITICAL:
            score -= 10
        elif rec.severity == Severity.WARNING:
            score -= 5
    return int(max(0, min(100, round(score))))


def to_json(data: Any) -> str:
    return json.dumps(to_dict(data), ensure_ascii=False, indent=2)


def to_dict(data: Any) -> Any:
    if isinstance(data, enum.Enum):
        return data.value
    if isinstance(data, (datetime.datetime, datetime.date)):
        return data.isoformat()
    if isinstance(data, dict):
        return {str(key): to_dict(value) for key, value in data.items()}
    if isinstance(data, (list, tuple)):
        return [to_dict(item) for item in data]
    if hasattr(data, "__dict__"):
        return {
            key: to_dict(value)
            for key, value in data.__dict__.items()
            if not key.startswith("_")
        }
    return data


def to_markdown(report: DiagnosticReport) -> str:
    lines = [
        "# SQL Diagnostics Report",
        "",
        "- **Target:** %s" % (report.target or "<unknown>"),
        "- **Generated:** %s" % report.generated_at_utc.isoformat(),
        "- **Health score:** %d/100" % health_score(report),
        "",
    ]
    if report.connection is not None:
        conn = report.connection
        lines += [
            "## Connection",
            "",
            "| Metric | Value |",
            "| --- | --- |",
            "| Attempts | %d |" % conn.total_attempts,
            "| Success rate | %.0f%% |" % (conn.success_rate * 100),
            "| Average | %s |" % _ms(conn.average_ms),
            "| Min / Max | %s / %s |" % (_ms(conn.min_ms), _ms(conn.max_ms)),
            "",
        ]
    if report.network is not None:
        net = report.network
        lines += [
            "## Network",
            "",
            "| Metric | Value |",
            "| --- | --- |",
            "| Host | %s |" % net.host,
            "| Replies | %d/%d |" % (net.successful_samples, len(net.samples)),
            "| Average | %s |" % _ms(net.average_ms),
            "| Jitter | %s |" % _ms(net.jitter_ms),
            "",
        ]
    if report.server is not None:
        usage = report.server.resource_usage
        lines += [
            "## Server",
            "",
            "- CPU: %s%%" % _num(usage.cpu_percent),
            "- Page life expectancy: %s s" % _num(usage.page_life_expectancy_seconds),
            "",
        ]
    if report.databases is not None and report.databases.databases:
        lines += ["## Databases", "", "| Name | State | Recovery | Log used % |", "| --- | --- | --- | --- |"]
        for db in report.databases.databases:
            lines.append(
                "| %s | %s | %s | %s |" % (db.name, db.state, db.recovery_model, _num(db.log_used_percent))
            )
        lines.append("")
    if report.baseline_comparison is not None:
        lines += ["## Baseline comparison", "", "```", format_regression(report.baseline_comparison), "```", ""]
    if report.recommendations:
        lines += ["## Recommendations", ""]
        for rec in report.recommendations:
            lines.append("- **%s** (%s): %s - %s" % (rec.issue, rec.severity.value, rec.category, rec.text))
        lines.append("")
    return "\n".join(lines)


def to_html(report: DiagnosticReport) -> str:
    esc = html.escape
    rows: List[str] = []

    def row(label: str, value: Any) -> None:
        rows.append("<tr><th>%s</th><td>%s</td></tr>" % (esc(label), esc(str(value))))

    row("Target", report.target or "<unknown>")
    row("Generated", report.generated_at_utc.isoformat())
    row("Health score", "%d/100" % health_score(report))
    if report.connection is not None:
        row("Connection success rate", "%.0f%%" % (report.connection.success_rate * 100))
        row("Connection average", _ms(report.connection.average_ms))
    if report.network is not None:
        row("Network average", _ms(report.network.average_ms))
        row("Network jitter", _ms(report.network.jitter_ms))

    recs = "".join(
        "<li><strong>%s</strong> [%s] %s</li>" % (esc(r.issue), esc(r.severity.value), esc(r.text))
        for r in report.recommendations
    )
    return (
        "<!DOCTYPE html>\n<html><head><meta charset=\"utf-8\"><title>SQL Diagnostics Report</title></head>\n"
        "<body>\n<h1>SQL Diagnostics Report</h1>\n<table>%s</table>\n"
        "<h2>Recommendations</h2>\n<ul>%s</ul>\n</body></html>\n" % ("".join(rows), recs or "<li>None</li>")
    )


def render(report: DiagnosticReport, fmt: str = "text") -> str:
    if fmt == "json":
        return to_json(report)
    if fmt == "markdown":
        return to_markdown(report)
    if fmt == "html":
        return to_html(report)
    if fmt == "text":
        return format_report(report)
    raise ValueError("Unsupported format: %s" % fmt)


def export_report(report: DiagnosticReport, path: str, fmt: Optional[str] = None) -> str:
    """
    Write the report to `path`; the format defaults from the file extension.
    """
    if fmt is None:
        ext = os.path.splitext(path)[1].lower()
        fmt = {".json": "json", ".md": "markdown", ".html": "html", ".htm": "html"}.get(ext, "text")
    content = render(report, fmt)
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    with open(path, "w", encoding="utf-8") as fp:
        fp.write(content)
    return path


def _ms(value: Optional[float]) -> str:
    return "n/a" if value is None else "%.1f ms" % value


def _num(value: Optional[float]) -> str:
    return "n/a" if value is None else "%.0f" % value
