"""
INI loading, env overrides and the command line entry point.
"""

import json

import pytest

from sqldiag import cli
from sqldiag.config import ToolConfig, env_override, load_config
from sqldiag.models import (
    ConnectionMetrics,
    DiagnosticCategories,
    DiagnosticReport,
    Recommendation,
    Severity,
    WaitStatsScope,
)

SAMPLE_INI = """
[target]
connection_string = Server=db01;Database=app
command_timeout = 45

[diagnostics]
categories = connection, server
connection_attempts = 3
connection_delay_seconds = 0.5
detect_blocking = yes
wait_stats_scope = SERVER
query = SELECT COUNT(*) FROM sys.objects

[thresholds]
slow_connection_ms = 250
pool_failure_rate = 0.2

[baseline]
directory = /var/lib/sqldiag
sample_count = 8
critical_over_ratio = 0.75

[triage]
high_cpu_percent = 90

[monitor]
interval_seconds = 15
full = true

[logging]
level = debug
event_log = /tmp/events.jsonl
"""


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in (
        "SQLDIAG_CONFIG",
        "SQLDIAG_CONNECTION_STRING",
        "SQLDIAG_BASELINE_DIR",
        "SQLDIAG_LOG_DIR",
        "SQLDIAG_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)


def write_ini(tmp_path, text=SAMPLE_INI) -> str:
    path = tmp_path / "sqldiag.ini"
    path.write_text(text, encoding="utf-8")
    return str(path)


class TestLoadConfig:
    def test_missing_file_gives_defaults(self, tmp_path):
        cfg = load_config(str(tmp_path / "absent.ini"))
        assert cfg == ToolConfig()
        assert cfg.diagnostic_options().categories == DiagnosticCategories.ALL

    def test_missing_required_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(str(tmp_path / "absent.ini"), required=True)

    def test_sections_are_applied(self, tmp_path):
        cfg = load_config(write_ini(tmp_path))
        assert cfg.target.connection_string == "Server=db01;Database=app"
        assert cfg.target.command_timeout == 45
        assert cfg.diagnostics.connection_attempts == 3
        assert cfg.diagnostics.detect_blocking is True
        assert cfg.thresholds.slow_connection_ms == 250.0
        assert cfg.thresholds.pool_failure_rate == 0.2
        assert cfg.baseline.directory == "/var/lib/sqldiag"
        assert cfg.baseline.sample_count == 8
        assert cfg.triage.high_cpu_percent == 90.0
        assert cfg.monitor.interval_seconds == 15.0
        assert cfg.monitor.full is True
        assert cfg.logging.level == "DEBUG"
        assert cfg.logging.event_log == "/tmp/events.jsonl"

    def test_diagnostic_and_baseline_options(self, tmp_path):
        cfg = load_config(write_ini(tmp_path))
        options = cfg.diagnostic_options()
        assert options.categories == DiagnosticCategories.CONNECTION | DiagnosticCategories.SERVER
        assert options.connection_delay_seconds == 0.5
        assert options.wait_stats_scope == WaitStatsScope.SERVER
        assert options.query_to_profile == "SELECT COUNT(*) FROM sys.objects"
        assert options.thresholds.slow_connection_ms == 250.0
        options.validate()

        baseline = cfg.baseline_options()
        assert baseline.sample_count == 8
        assert baseline.critical_over_ratio == 0.75

    def test_unknown_threshold_key(self, tmp_path):
        with pytest.raises(ValueError):
            load_config(write_ini(tmp_path, "[thresholds]\nslow_conection_ms = 1\n"))

    def test_unknown_category(self, tmp_path):
        cfg = load_config(write_ini(tmp_path, "[diagnostics]\ncategories = connection,disk\n"))
        with pytest.raises(ValueError):
            cfg.diagnostic_options()

    def test_env_override(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SQLDIAG_CONNECTION_STRING", "Server=fromenv")
        monkeypatch.setenv("SQLDIAG_BASELINE_DIR", "/srv/baselines")
        monkeypatch.setenv("SQLDIAG_LOG_LEVEL", "warning")
        cfg = env_override(load_config(write_ini(tmp_path)))
        assert cfg.target.connection_string == "Server=fromenv"
        assert cfg.baseline.directory == "/srv/baselines"
        assert cfg.logging.level == "WARNING"


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


class FakeOrchestrator:
    report_factory = staticmethod(lambda: DiagnosticReport(target="db01"))

    def __init__(self, connection_factory=None, event_log=None, **kwargs):
        self.calls = []

    def quick_check(self, target, cancel_token=None):
        self.calls.append(("quick", target))
        return FakeOrchestrator.report_factory()

    def run_full(self, target, options=None, cancel_token=None):
        self.calls.append(("full", target, options))
        return FakeOrchestrator.report_factory()


@pytest.fixture
def fake_orchestrator(monkeypatch):
    monkeypatch.setattr(cli, "DiagnosticOrchestrator", FakeOrchestrator)
    monkeypatch.setattr(cli, "setup_logging", lambda *args, **kwargs: None)
    monkeypatch.setattr(FakeOrchestrator, "report_factory", staticmethod(lambda: DiagnosticReport(target="db01")))
    return FakeOrchestrator


class TestCli:
    def test_no_command_prints_help(self, capsys):
        assert cli.main([]) == 0
        assert "usage" in capsys.readouterr().out.lower()

    def test_missing_connection_string(self, tmp_path, fake_orchestrator):
        with pytest.raises(SystemExit):
            cli.main(["--config", str(tmp_path / "absent.ini"), "quick"])

    def test_quick_prints_text_report(self, tmp_path, fake_orchestrator, capsys):
        code = cli.main(["--config", str(tmp_path / "absent.ini"), "--connection", "Server=db01", "quick"])
        assert code == 0
        assert "Target: db01" in capsys.readouterr().out

    def test_full_writes_json_and_flags_warnings(self, tmp_path, fake_orchestrator, capsys):
        def warned():
            report = DiagnosticReport(target="db01")
            report.connection = ConnectionMetrics(total_attempts=1, success_rate=0.0)
            report.recommendations.append(Recommendation(Severity.WARNING, "Connectivity", "Low success rate", "x"))
            return report

        fake_orchestrator.report_factory = staticmethod(warned)
        out = tmp_path / "reports" / "full.json"
        code = cli.main(
            [
                "--config", write_ini(tmp_path),
                "--format", "json",
                "--output", str(out),
                "full", "--categories", "connection",
            ]
        )
        assert code == 1
        data = json.loads(out.read_text(encoding="utf-8"))
        assert data["recommendations"][0]["issue"] == "Low success rate"
        assert "Written to" in capsys.readouterr().out

    def test_probe_errors_set_exit_code(self, tmp_path, fake_orchestrator):
        fake_orchestrator.report_factory = staticmethod(
            lambda: DiagnosticReport(target="db01", metadata={"network_error": "boom"})
        )
        assert cli.main(["--config", write_ini(tmp_path), "quick"]) == 1

    def test_full_with_unknown_baseline(self, tmp_path, fake_orchestrator, monkeypatch, capsys):
        monkeypatch.setenv("SQLDIAG_BASELINE_DIR", str(tmp_path / "baselines"))
        code = cli.main(["--config", write_ini(tmp_path), "full", "--baseline", "nope"])
        assert code == 1
        assert "Baseline not found: nope" in capsys.readouterr().err

    def test_baseline_compare_without_baseline(self, tmp_path, fake_orchestrator, monkeypatch, capsys):
        monkeypatch.setenv("SQLDIAG_BASELINE_DIR", str(tmp_path / "baselines"))
        code = cli.main(["--config", write_ini(tmp_path), "baseline-compare"])
        assert code == 1
        assert "Baseline not found" in capsys.readouterr().out
