import configparser
import os
from dataclasses import dataclass, field
from typing import Dict, Optional

from .db import DEFAULT_ODBC_DRIVER
from .models import (
    BaselineOptions,
    DiagnosticCategories,
    DiagnosticOptions,
    RecommendationThresholds,
    WaitStatsScope,
)
from .pool_monitor import DEFAULT_FAILURE_RATE_THRESHOLD, DEFAULT_SLOW_ACQUISITION_MS

DEFAULT_CONFIG_FILE = "sqldiag.ini"


@dataclass
class TargetConfig:
    connection_string: Optional[str] = None
    command_timeout: int = 30
    odbc_driver: str = DEFAULT_ODBC_DRIVER


@dataclass
class DiagnosticsConfig:
    categories: str = "all"
    timeout_seconds: float = 30.0
    connection_attempts: int = 5
    connection_delay_seconds: Optional[float] = None
    ping_attempts: int = 5
    ping_timeout_ms: int = 5000
    query: Optional[str] = None
    include_query_plans: bool = False
    detect_blocking: bool = False
    capture_wait_statistics: bool = False
    wait_stats_scope: str = "session"
    include_connection_pool_analysis: bool = False
    pool_sample_window_seconds: float = 5.0
    monitor_connection_stability: bool = False
    stability_duration_seconds: float = 60.0
    stability_probe_interval_seconds: float = 5.0
    include_dns_resolution: bool = False
    include_port_probe: bool = False
    generate_recommendations: bool = True


@dataclass
class ThresholdsConfig:
    slow_connection_ms: float = 500.0
    low_success_rate: float = 0.8
    high_jitter_ms: float = 50.0
    pool_failure_rate: float = DEFAULT_FAILURE_RATE_THRESHOLD
    pool_slow_acquisition_ms: float = DEFAULT_SLOW_ACQUISITION_MS


@dataclass
class BaselineConfig:
    directory: Optional[str] = None
    sample_count: int = 5
    sample_interval_seconds: float = 2.0
    connection_latency_tolerance: float = 0.2
    network_latency_tolerance: float = 0.5
    success_rate_tolerance: float = 0.1
    critical_over_ratio: float = 0.5


@dataclass
class TriageConfig:
    slow_connection_ms: float = 1000.0
    slow_query_ms: float = 500.0
    high_latency_ms: float = 100.0
    high_cpu_percent: float = 80.0


@dataclass
class MonitorConfig:
    interval_seconds: float = 60.0
    full: bool = False


@dataclass
class LoggingConfig:
    level: str = "INFO"
    directory: Optional[str] = None
    event_log: Optional[str] = None


@dataclass
class ToolConfig:
    target: TargetConfig = field(default_factory=TargetConfig)
    diagnostics: DiagnosticsConfig = field(default_factory=DiagnosticsConfig)
    thresholds: ThresholdsConfig = field(default_factory=ThresholdsConfig)
    baseline: BaselineConfig = field(default_factory=BaselineConfig)
    triage: TriageConfig = field(default_factory=TriageConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def diagnostic_options(self) -> DiagnosticOptions:
        d = self.diagnostics
        return DiagnosticOptions(
            categories=DiagnosticCategories.parse(d.categories) or DiagnosticCategories.ALL,
            timeout_seconds=d.timeout_seconds,
            connection_attempts=d.connection_attempts,
            connection_delay_seconds=d.connection_delay_seconds,
            ping_attempts=d.ping_attempts,
            ping_timeout_ms=d.ping_timeout_ms,
            query_to_profile=d.query,
            include_query_plans=d.include_query_plans,
            detect_blocking=d.detect_blocking,
            capture_wait_statistics=d.capture_wait_statistics,
            wait_stats_scope=WaitStatsScope(d.wait_stats_scope.lower()),
            include_connection_pool_analysis=d.include_connection_pool_analysis,
            pool_sample_window_seconds=d.pool_sample_window_seconds,
            monitor_connection_stability=d.monitor_connection_stability,
            stability_duration_seconds=d.stability_duration_seconds,
            stability_probe_interval_seconds=d.stability_probe_interval_seconds,
            include_dns_resolution=d.include_dns_resolution,
            include_port_probe=d.include_port_probe,
            generate_recommendations=d.generate_recommendations,
            thresholds=RecommendationThresholds(
                slow_connection_ms=self.thresholds.slow_connection_ms,
                low_success_rate=self.thresholds.low_success_rate,
                high_jitter_ms=self.thresholds.high_jitter_ms,
            ),
        )

    def baseline_options(self) -> BaselineOptions:
        b = self.baseline
        return BaselineOptions(
            sample_count=b.sample_count,
            sample_interval_seconds=b.sample_interval_seconds,
            connection_latency_tolerance=b.connection_latency_tolerance,
            network_latency_tolerance=b.network_latency_tolerance,
            success_rate_tolerance=b.success_rate_tolerance,
            critical_over_ratio=b.critical_over_ratio,
        )


def load_config(path: Optional[str] = None, required: bool = False) -> ToolConfig:
    """
    Read an INI file into a ToolConfig. Every key is optional; a missing file
    yields the defaults unless `required` is set.
    """
    parser = configparser.ConfigParser()
    read = parser.read(path or DEFAULT_CONFIG_FILE, encoding="utf-8")
    if not read and required:
        raise FileNotFoundError("Config file not found: %s" % path)

    target_raw = _section_to_dict(parser, "target")
    diag_raw = _section_to_dict(parser, "diagnostics")
    thresholds_raw = _section_to_dict(parser, "thresholds")
    baseline_raw = _section_to_dict(parser, "baseline")
    triage_raw = _section_to_dict(parser, "triage")
    monitor_raw = _section_to_dict(parser, "monitor")
    logging_raw = _section_to_dict(parser, "logging")

    config = ToolConfig()
    t = config.target
    t.connection_string = target_raw.get("connection_string") or None
    t.command_timeout = int(target_raw.get("command_timeout", t.command_timeout))
    t.odbc_driver = target_raw.get("odbc_driver", t.odbc_driver)

    d = config.diagnostics
    d.categories = diag_raw.get("categories", d.categories)
    d.timeout_seconds = float(diag_raw.get("timeout_seconds", d.timeout_seconds))
    d.connection_attempts = int(diag_raw.get("connection_attempts", d.connection_attempts))
    if diag_raw.get("connection_delay_seconds"):
        d.connection_delay_seconds = float(diag_raw["connection_delay_seconds"])
    d.ping_attempts = int(diag_raw.get("ping_attempts", d.ping_attempts))
    d.ping_timeout_ms = int(diag_raw.get("ping_timeout_ms", d.ping_timeout_ms))
    d.query = diag_raw.get("query") or None
    d.wait_stats_scope = diag_raw.get("wait_stats_scope", d.wait_stats_scope)
    d.pool_sample_window_seconds = float(diag_raw.get("pool_sample_window_seconds", d.pool_sample_window_seconds))
    d.stability_duration_seconds = float(diag_raw.get("stability_duration_seconds", d.stability_duration_seconds))
    d.stability_probe_interval_seconds = float(
        diag_raw.get("stability_probe_interval_seconds", d.stability_probe_interval_seconds)
    )
    for flag in (
        "include_query_plans",
        "detect_blocking",
        "capture_wait_statistics",
        "include_connection_pool_analysis",
        "monitor_connection_stability",
        "include_dns_resolution",
        "include_port_probe",
        "generate_recommendations",
    ):
        if flag in diag_raw:
            setattr(d, flag, _to_bool(diag_raw[flag]))

    _apply_floats(config.thresholds, thresholds_raw)
    _apply_floats(config.triage, triage_raw)

    b = config.baseline
    b.directory = baseline_raw.get("directory") or None
    b.sample_count = int(baseline_raw.get("sample_count", b.sample_count))
    _apply_floats(b, {k: v for k, v in baseline_raw.items() if k not in ("directory", "sample_count")})

    m = config.monitor
    m.interval_seconds = float(monitor_raw.get("interval_seconds", m.interval_seconds))
    m.full = _to_bool(monitor_raw.get("full", "false"))

    lg = config.logging
    lg.level = logging_raw.get("level", lg.level).upper()
    lg.directory = logging_raw.get("directory") or None
    lg.event_log = logging_raw.get("event_log") or None
    return config


def _section_to_dict(parser: configparser.ConfigParser, section: str) -> Dict[str, str]:
    if not parser.has_section(section):
        return {}
    return {k: v for k, v in parser.items(section)}


def _apply_floats(target, raw: Dict[str, str]) -> None:
    for key, value in raw.items():
        if not hasattr(target, key):
            raise ValueError("Unknown config key: %s" % key)
        setattr(target, key, float(value))


def env_override(config: ToolConfig) -> ToolConfig:
    """
    Allow env overrides so connection strings with credentials stay out of config files.
    """
    conn = os.environ.get("SQLDIAG_CONNECTION_STRING")
    baseline_dir = os.environ.get("SQLDIAG_BASELINE_DIR")
    log_dir = os.environ.get("SQLDIAG_LOG_DIR")
    log_level = os.environ.get("SQLDIAG_LOG_LEVEL")
    if conn:
        config.target.connection_string = conn
    if baseline_dir:
        config.baseline.directory = baseline_dir
    if log_dir:
        config.logging.directory = log_dir
    if log_level:
        config.logging.level = log_level.upper()
    return config


def _to_bool(value: str) -> bool:
    return str(value).lower() in ("1", "true", "yes", "on")
