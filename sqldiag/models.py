import copy
import datetime
import enum
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class DiagnosticCategories(enum.Flag):
    NONE = 0
    CONNECTION = 1
    NETWORK = 2
    QUERY = 4
    SERVER = 8
    DATABASE = 16
    ALL = CONNECTION | NETWORK | QUERY | SERVER | DATABASE

    @classmethod
    def parse(cls, text: Optional[str]) -> "DiagnosticCategories":
        """
        Parse a comma separated list such as "connection,network".
        """
        result = cls.NONE
        for part in (text or "").split(","):
            name = part.strip().upper()
            if not name:
                continue
            try:
                result |= cls[name]
            except KeyError:
                raise ValueError("Unknown diagnostic category: %s" % part.strip()) from None
        return result

    def describe(self) -> str:
        if self == DiagnosticCategories.ALL:
            return "All"
        if not self:
            return "None"
        names = [m.name.title() for m in DiagnosticCategories if m.name not in ("NONE", "ALL") and m in self]
        return ", ".join(names)


class Severity(enum.Enum):
    INFO = "Info"
    WARNING = "Warning"
    CRITICAL = "Critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {Severity.INFO: 0, Severity.WARNING: 1, Severity.CRITICAL: 2}


class PoolHealth(enum.Enum):
    HEALTHY = "Healthy"
    WARNING = "Warning"
    CRITICAL = "Critical"

    @property
    def rank(self) -> int:
        return _POOL_RANK[self]


_POOL_RANK = {PoolHealth.HEALTHY: 0, PoolHealth.WARNING: 1, PoolHealth.CRITICAL: 2}


class WaitStatsScope(enum.Enum):
    SESSION = "session"
    SERVER = "server"


@dataclass
class Recommendation:
    severity: Severity
    category: str
    issue: str
    text: str
    reference: Optional[str] = None


# Connection -------------------------------------------------------------


@dataclass
class ConnectionFailure:
    timestamp: datetime.datetime
    message: str
    error_number: Optional[int] = None
    severity: Optional[int] = None
    server: Optional[str] = None


@dataclass
class ConnectionMetrics:
    total_attempts: int = 0
    successful_attempts: int = 0
    failed_attempts: int = 0
    average_ms: Optional[float] = None
    min_ms: Optional[float] = None
    max_ms: Optional[float] = None
    success_rate: float = 0.0
    failures: List[ConnectionFailure] = field(default_factory=list)


@dataclass
class ConnectionPoolMetrics:
    pooling_enabled: bool
    min_pool_size: Optional[int] = None
    max_pool_size: Optional[int] = None
    sample_window_seconds: Optional[float] = None
    pooled_connections: Optional[int] = None
    active_connections: Optional[int] = None
    free_connections: Optional[int] = None
    reclaimed_connections: Optional[int] = None
    notes: List[str] = field(default_factory=list)


@dataclass
class ConnectionStabilitySample:
    timestamp: datetime.datetime
    succeeded: bool
    latency_ms: float
    error: Optional[str] = None


@dataclass
class ConnectionStabilityReport:
    started_at_utc: datetime.datetime
    completed_at_utc: Optional[datetime.datetime] = None
    samples: List[ConnectionStabilitySample] = field(default_factory=list)
    success_count: int = 0
    failure_count: int = 0
    average_ms: Optional[float] = None
    min_ms: Optional[float] = None
    max_ms: Optional[float] = None


@dataclass
class ConnectionPoolSnapshot:
    timestamp: datetime.datetime
    success: bool
    acquisition_ms: float = 0.0
    active_connections: Optional[int] = None
    free_connections: Optional[int] = None
    pooled_connections: Optional[int] = None
    error: Optional[str] = None


@dataclass
class ConnectionPoolHealthSummary:
    severity: PoolHealth = PoolHealth.HEALTHY
    failure_rate: float = 0.0
    average_acquisition_ms: float = 0.0
    issues: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)


@dataclass
class ConnectionPoolHealthReport:
    target_hash: str
    started_at_utc: datetime.datetime
    completed_at_utc: datetime.datetime
    snapshots: List[ConnectionPoolSnapshot]
    summary: ConnectionPoolHealthSummary


# Network ----------------------------------------------------------------


@dataclass
class LatencySample:
    timestamp: datetime.datetime
    success: bool
    round_trip_ms: float
    error: Optional[str] = None


@dataclass
class LatencyMetrics:
    host: Optional[str] = None
    samples: List[LatencySample] = field(default_factory=list)
    average_ms: Optional[float] = None
    min_ms: Optional[float] = None
    max_ms: Optional[float] = None
    jitter_ms: Optional[float] = None

    @property
    def successful_samples(self) -> int:
        return sum(1 for s in self.samples if s.success)

    @property
    def success(self) -> bool:
        return self.successful_samples > 0


@dataclass
class DnsResolution:
    host: str
    addresses: List[str] = field(default_factory=list)
    elapsed_ms: float = 0.0
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return bool(self.addresses)


@dataclass
class PortConnectivity:
    host: str
    port: int
    success: bool
    elapsed_ms: float = 0.0
    error: Optional[str] = None


# Query ------------------------------------------------------------------


@dataclass
class QueryMetrics:
    total_execution_ms: float
    network_time_ms: Optional[float] = None
    server_time_ms: Optional[float] = None
    bytes_sent: Optional[int] = None
    bytes_received: Optional[int] = None
    rows_returned: Optional[int] = None
    server_roundtrips: Optional[int] = None
    statistics: Dict[str, Any] = field(default_factory=dict)

    def add_statistic(self, key: str, value: Any) -> None:
        if key:
            self.statistics[key] = value


@dataclass
class QueryPlanAnalysis:
    plan_xml: Optional[str] = None
    collection_ms: Optional[float] = None
    warnings: List[str] = field(default_factory=list)


@dataclass
class BlockingSession:
    session_id: Optional[int]
    blocking_session_id: Optional[int]
    wait_type: Optional[str] = None
    wait_time_ms: float = 0.0
    status: Optional[str] = None
    command: Optional[str] = None
    sql_text: Optional[str] = None


@dataclass
class BlockingReport:
    sessions: List[BlockingSession] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def has_blocking(self) -> bool:
        return bool(self.sessions)


@dataclass
class WaitStatisticEntry:
    wait_type: str
    wait_time_ms: int = 0
    signal_wait_time_ms: int = 0
    waiting_tasks: int = 0


@dataclass
class WaitStatistics:
    scope: WaitStatsScope
    waits: List[WaitStatisticEntry] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


# Server / database ------------------------------------------------------


@dataclass
class ServerResourceUsage:
    cpu_percent: Optional[float] = None
    sql_process_percent: Optional[float] = None
    total_memory_mb: Optional[float] = None
    available_memory_mb: Optional[float] = None
    page_life_expectancy_seconds: Optional[float] = None
    io_stall_ms: Optional[int] = None


@dataclass
class PerformanceCounter:
    counter_name: str
    object_name: Optional[str] = None
    instance_name: Optional[str] = None
    value: Optional[float] = None
    counter_type: Optional[int] = None


@dataclass
class ServerConfigurationSetting:
    name: str
    description: Optional[str] = None
    value: Optional[float] = None
    value_in_use: Optional[float] = None
    is_advanced: bool = False


@dataclass
class ServerMetrics:
    resource_usage: ServerResourceUsage = field(default_factory=ServerResourceUsage)
    waits: List[WaitStatisticEntry] = field(default_factory=list)
    performance_counters: List[PerformanceCounter] = field(default_factory=list)
    configuration: List[ServerConfigurationSetting] = field(default_factory=list)
    properties: Dict[str, Any] = field(default_factory=dict)


@dataclass
class DatabaseSnapshot:
    database_id: Optional[int] = None
    name: Optional[str] = None
    state: Optional[str] = None
    recovery_model: Optional[str] = None
    compatibility_level: Optional[int] = None
    containment: Optional[str] = None
    log_reuse_wait: Optional[str] = None
    is_read_only: Optional[bool] = None
    is_auto_close: Optional[bool] = None
    is_auto_shrink: Optional[bool] = None
    data_file_size_mb: Optional[float] = None
    log_file_size_mb: Optional[float] = None
    active_sessions: Optional[int] = None
    running_requests: Optional[int] = None
    aggregate_wait_ms: Optional[float] = None
    total_log_size_mb: Optional[float] = None
    active_log_size_mb: Optional[float] = None
    log_used_percent: Optional[float] = None
    log_since_last_backup_mb: Optional[float] = None
    last_log_backup_time: Optional[datetime.datetime] = None
    last_checkpoint_time: Optional[datetime.datetime] = None
    log_truncation_holdup_reason: Optional[str] = None
    additional_properties: Dict[str, Any] = field(default_factory=dict)


@dataclass
class DatabaseMetrics:
    databases: List[DatabaseSnapshot] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)


# Options ----------------------------------------------------------------


@dataclass
class RecommendationThresholds:
    slow_connection_ms: float = 500.0
    low_success_rate: float = 0.8
    high_jitter_ms: float = 50.0


@dataclass
class DiagnosticOptions:
    categories: DiagnosticCategories = DiagnosticCategories.ALL
    timeout_seconds: float = 30.0
    connection_attempts: int = 5
    connection_delay_seconds: Optional[float] = None
    ping_attempts: int = 5
    ping_timeout_ms: int = 5000
    query_to_profile: Optional[str] = None
    include_query_plans: bool = False
    detect_blocking: bool = False
    capture_wait_statistics: bool = False
    wait_stats_scope: WaitStatsScope = WaitStatsScope.SESSION
    include_connection_pool_analysis: bool = False
    pool_sample_window_seconds: float = 5.0
    monitor_connection_stability: bool = False
    stability_duration_seconds: float = 60.0
    stability_probe_interval_seconds: float = 5.0
    include_dns_resolution: bool = False
    include_port_probe: bool = False
    generate_recommendations: bool = True
    thresholds: RecommendationThresholds = field(default_factory=RecommendationThresholds)
    compare_with_baseline: bool = False
    baseline: Optional["PerformanceBaseline"] = None
    baseline_options: Optional["BaselineOptions"] = None

    def validate(self) -> None:
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        if self.connection_attempts < 1:
            raise ValueError("connection_attempts must be >= 1")
        if self.connection_delay_seconds is not None and self.connection_delay_seconds < 0:
            raise ValueError("connection_delay_seconds must not be negative")
        if self.ping_attempts < 1:
            raise ValueError("ping_attempts must be >= 1")
        if self.ping_timeout_ms <= 0:
            raise ValueError("ping_timeout_ms must be positive")
        if self.pool_sample_window_seconds <= 0:
            raise ValueError("pool_sample_window_seconds must be positive")
        if self.stability_duration_seconds <= 0 or self.stability_probe_interval_seconds <= 0:
            raise ValueError("stability duration and probe interval must be positive")
        if self.baseline_options is not None:
            self.baseline_options.validate()

    def copy(self) -> "DiagnosticOptions":
        return copy.deepcopy(self)


# Baseline ---------------------------------------------------------------


@dataclass
class BaselineOptions:
    sample_count: int = 5
    sample_interval_seconds: float = 2.0
    connection_latency_tolerance: float = 0.2
    network_latency_tolerance: float = 0.5
    success_rate_tolerance: float = 0.1
    critical_over_ratio: float = 0.5

    def validate(self) -> None:
        if self.sample_count < 1:
            raise ValueError("sample_count must be >= 1")
        if self.sample_interval_seconds < 0:
            raise ValueError("sample_interval_seconds must not be negative")
        for name in (
            "connection_latency_tolerance",
            "network_latency_tolerance",
            "success_rate_tolerance",
            "critical_over_ratio",
        ):
            if getattr(self, name) < 0:
                raise ValueError("%s must not be negative" % name)

    def copy(self) -> "BaselineOptions":
        return copy.copy(self)


@dataclass
class ConnectionBaselineMetrics:
    median_ms: Optional[float] = None
    p95_ms: Optional[float] = None
    p99_ms: Optional[float] = None
    success_rate: Optional[float] = None


@dataclass
class NetworkBaselineMetrics:
    median_ms: Optional[float] = None
    p95_ms: Optional[float] = None
    p99_ms: Optional[float] = None


@dataclass
class PerformanceBaseline:
    name: str
    captured_at_utc: datetime.datetime
    target_hash: str
    sample_count: int
    connection: ConnectionBaselineMetrics = field(default_factory=ConnectionBaselineMetrics)
    network: NetworkBaselineMetrics = field(default_factory=NetworkBaselineMetrics)
    machine_name: Optional[str] = None


@dataclass
class RegressionFinding:
    severity: Severity
    category: str
    description: str
    baseline_value: str
    current_value: str
    percentage_change: Optional[float] = None


@dataclass
class RegressionReport:
    success: bool
    message: Optional[str] = None
    baseline_name: Optional[str] = None
    baseline_captured_at_utc: Optional[datetime.datetime] = None
    compared_at_utc: Optional[datetime.datetime] = None
    findings: List[RegressionFinding] = field(default_factory=list)

    @property
    def has_findings(self) -> bool:
        return bool(self.findings)


# Report -----------------------------------------------------------------


@dataclass
class DiagnosticReport:
    target: Optional[str] = None
    generated_at_utc: datetime.datetime = field(default_factory=utcnow)
    connection: Optional[ConnectionMetrics] = None
    network: Optional[LatencyMetrics] = None
    dns: Optional[DnsResolution] = None
    port_connectivity: Optional[PortConnectivity] = None
    query: Optional[QueryMetrics] = None
    query_plan: Optional[QueryPlanAnalysis] = None
    blocking: Optional[BlockingReport] = None
    wait_statistics: Optional[WaitStatistics] = None
    server: Optional[ServerMetrics] = None
    databases: Optional[DatabaseMetrics] = None
    connection_pool: Optional[ConnectionPoolMetrics] = None
    connection_stability: Optional[ConnectionStabilityReport] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    recommendations: List[Recommendation] = field(default_factory=list)
    baseline_comparison: Optional[RegressionReport] = None


@dataclass
class DiagnosticSnapshot:
    timestamp: datetime.datetime
    report: DiagnosticReport


# Triage -----------------------------------------------------------------


@dataclass
class TestResult:
    name: str
    success: bool = False
    duration_ms: float = 0.0
    details: str = ""
    issues: List[str] = field(default_factory=list)
    started_at_utc: Optional[datetime.datetime] = None
    ended_at_utc: Optional[datetime.datetime] = None

    __test__ = False  # keep pytest from collecting this class

    def __post_init__(self) -> None:
        if not self.name or not self.name.strip():
            raise ValueError("Test name must be provided.")

    def add_issue(self, issue: Optional[str]) -> None:
        if issue and issue.strip():
            self.issues.append(issue)

    @classmethod
    def pending(cls, name: str) -> "TestResult":
        return cls(name=name, success=False, details="Not executed.")

    @classmethod
    def failure(cls, name: str, details: str) -> "TestResult":
        return cls(name=name, success=False, details=details)


@dataclass
class Diagnosis:
    category: str
    summary: str
    details: str = ""
    recommendations: List[str] = field(default_factory=list)

    @classmethod
    def unknown(cls) -> "Diagnosis":
        return cls(category="Unknown", summary="Diagnosis has not been computed.")


@dataclass
class TriageResult:
    started_at_utc: datetime.datetime = field(default_factory=utcnow)
    completed_at_utc: Optional[datetime.datetime] = None
    duration_ms: float = 0.0
    network: TestResult = field(default_factory=lambda: TestResult.pending("Network"))
    connection: TestResult = field(default_factory=lambda: TestResult.pending("Connection"))
    query: TestResult = field(default_factory=lambda: TestResult.pending("Query"))
    server: TestResult = field(default_factory=lambda: TestResult.pending("Server"))
    blocking: TestResult = field(default_factory=lambda: TestResult.pending("Blocking"))
    diagnosis: Diagnosis = field(default_factory=Diagnosis.unknown)
