import argparse
import functools
import os
import sys
from typing import Any, Optional

from . import reporting
from .baseline import BaselineEngine
from .cancellation import CancellationToken
from .config import ToolConfig, env_override, load_config
from .db import SqlServerConnection
from .events import EventLog, JsonLinesSink
from .logger import setup_logging
from .models import DiagnosticCategories, DiagnosticReport, Severity
from .monitor import ContinuousMonitor
from .orchestrator import DiagnosticOrchestrator
from .pool_monitor import ConnectionPoolMonitor
from .triage import QuickTriage, TriageOptions


def main(argv: Optional[list] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 0

    cfg = env_override(load_config(args.config))
    log_file = os.path.join(cfg.logging.directory, "sqldiag.log") if cfg.logging.directory else None
    setup_logging(cfg.logging.level, log_file=log_file)
    target = _target(cfg, args)
    factory = functools.partial(
        SqlServerConnection,
        command_timeout=cfg.target.command_timeout,
        odbc_driver=cfg.target.odbc_driver,
    )
    event_log = EventLog([JsonLinesSink(cfg.logging.event_log)]) if cfg.logging.event_log else None
    orchestrator = DiagnosticOrchestrator(connection_factory=factory, event_log=event_log)
    token = CancellationToken()

    try:
        if args.command == "quick":
            report = orchestrator.quick_check(target, cancel_token=token)
            _emit(report, args)
            return _report_exit_code(report)

        if args.command == "full":
            options = cfg.diagnostic_options()
            if args.categories:
                options.categories = DiagnosticCategories.parse(args.categories)
            if args.query:
                options.query_to_profile = args.query
            if args.baseline:
                engine = BaselineEngine(cfg.baseline.directory, orchestrator=orchestrator)
                baseline = engine.load_by_name(args.baseline)
                if baseline is None:
                    print("Baseline not found: %s" % args.baseline, file=sys.stderr)
                    return 1
                options.compare_with_baseline = True
                options.baseline = baseline
                options.baseline_options = cfg.baseline_options()
            report = orchestrator.run_full(target, options, cancel_token=token)
            _emit(report, args)
            return _report_exit_code(report)

        if args.command == "triage":
            return _run_triage(cfg, args, target, factory, event_log, token)

        if args.command == "monitor":
            return _run_monitor(cfg, args, target, orchestrator)

        if args.command == "baseline-capture":
            engine = BaselineEngine(cfg.baseline.directory, orchestrator=orchestrator)
            options = cfg.baseline_options()
            if args.samples is not None:
                options.sample_count = args.samples
            if args.interval is not None:
                options.sample_interval_seconds = args.interval
            baseline = engine.capture_baseline(target, args.name, options, cancel_token=token)
            _emit(baseline, args)
            return 0

        if args.command == "baseline-compare":
            engine = BaselineEngine(cfg.baseline.directory, orchestrator=orchestrator)
            result = engine.compare_to_baseline(target, args.name, cfg.baseline_options(), cancel_token=token)
            _emit(result, args, text=reporting.format_regression(result))
            return 0 if result.success and not result.has_findings else 1

        if args.command == "pool-monitor":
            pool = ConnectionPoolMonitor(
                target,
                connection_factory=factory,
                failure_rate_threshold=cfg.thresholds.pool_failure_rate,
                slow_acquisition_ms=cfg.thresholds.pool_slow_acquisition_ms,
            )
            health = pool.monitor(args.duration, args.interval, cancel_token=token)
            _emit(health, args, text=reporting.format_pool_health(health))
            return 0 if health.summary.severity.rank == 0 else 1
    except KeyboardInterrupt:
        token.cancel()
        print("Interrupted.", file=sys.stderr)
        return 1

    parser.print_help()
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="SQL Server 连接/网络/服务器健康诊断工具",
        formatter_class=argparse.RawTextHelpFormatter,
    )
    parser.add_argument(
        "--config",
        default=os.environ.get("SQLDIAG_CONFIG", "sqldiag.ini"),
        help="Path to INI config (target, diagnostics, thresholds, baseline...). Missing file = defaults.",
    )
    parser.add_argument(
        "--connection",
        help="SQL Server connection string; overrides [target] connection_string and SQLDIAG_CONNECTION_STRING.",
    )
    parser.add_argument(
        "--format",
        choices=reporting.FORMATS,
        default="text",
        help="输出格式：text/json/markdown/html（markdown/html 仅适用于诊断报告）。",
    )
    parser.add_argument("--output", help="写入文件而不是打印到标准输出。")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser(
        "quick",
        help="快速检查：连接 + 网络延迟。",
        formatter_class=argparse.RawTextHelpFormatter,
        epilog="""示例:
  python3 run.py quick
  python3 run.py --connection "Server=db01,1433;Database=master;User Id=sa;Password=..." quick""",
    )

    full = sub.add_parser(
        "full",
        help="完整诊断：连接、网络、查询、服务器、数据库（由 [diagnostics] 控制）。",
        formatter_class=argparse.RawTextHelpFormatter,
        epilog="""示例:
  python3 run.py full
  python3 run.py full --categories connection,server --format markdown --output report.md
  python3 run.py full --baseline prod-morning""",
    )
    full.add_argument("--categories", help="逗号分隔：connection,network,query,server,database。默认全部。")
    full.add_argument("--query", help="要分析的 SQL（默认 SELECT 1）。")
    full.add_argument("--baseline", help="与指定名称的基线比较，回归结果并入建议。")

    sub.add_parser(
        "triage",
        help="五步快速排障（网络/连接/查询/服务器/阻塞），给出单一结论。",
        formatter_class=argparse.RawTextHelpFormatter,
        epilog="""示例:
  python3 run.py triage
  python3 run.py --format json triage""",
    )

    mon = sub.add_parser(
        "monitor",
        help="按固定间隔持续诊断，Ctrl-C 停止。",
        formatter_class=argparse.RawTextHelpFormatter,
        epilog="""示例:
  python3 run.py monitor --interval 30
  python3 run.py monitor --interval 60 --full --count 10""",
    )
    mon.add_argument("--interval", type=float, help="轮询间隔（秒），默认取 [monitor] interval_seconds。")
    mon.add_argument("--full", action="store_true", help="每轮运行完整诊断（默认快速检查）。")
    mon.add_argument("--count", type=int, help="收到 N 个快照后退出。默认一直运行。")

    cap = sub.add_parser(
        "baseline-capture",
        help="多次快速检查，生成百分位基线并保存为 JSON。",
        formatter_class=argparse.RawTextHelpFormatter,
        epilog="""示例:
  python3 run.py baseline-capture --name prod-morning --samples 10 --interval 5""",
    )
    cap.add_argument("--name", required=True, help="基线名称（文件名前缀）。")
    cap.add_argument("--samples", type=int, help="采样次数，默认取 [baseline] sample_count。")
    cap.add_argument("--interval", type=float, help="采样间隔（秒）。")

    cmp_cmd = sub.add_parser(
        "baseline-compare",
        help="与基线比较，报告连接/网络/可靠性回归。",
        formatter_class=argparse.RawTextHelpFormatter,
        epilog="""示例:
  # 按名称
  python3 run.py baseline-compare --name prod-morning
  # 不指定名称：使用同一目标最新的基线
  python3 run.py baseline-compare""",
    )
    cmp_cmd.add_argument("--name", help="基线名称；不填则按连接串哈希查找最新基线。")

    pool = sub.add_parser(
        "pool-monitor",
        help="在时间窗口内采样连接池，给出健康结论。",
        formatter_class=argparse.RawTextHelpFormatter,
        epilog="""示例:
  python3 run.py pool-monitor --duration 60 --interval 5""",
    )
    pool.add_argument("--duration", type=float, default=60.0, help="监控时长（秒）。")
    pool.add_argument("--interval", type=float, default=5.0, help="采样间隔（秒）。")

    return parser


def _target(cfg: ToolConfig, args) -> str:
    target = args.connection or cfg.target.connection_string
    if not target or not target.strip():
        raise SystemExit(
            "Provide --connection, set [target] connection_string, or export SQLDIAG_CONNECTION_STRING."
        )
    return target


def _report_exit_code(report: DiagnosticReport) -> int:
    if any(k.endswith("_error") for k in report.metadata):
        return 1
    if any(r.severity.rank >= Severity.WARNING.rank for r in report.recommendations):
        return 1
    return 0


def _emit(data: Any, args, text: Optional[str] = None) -> None:
    if isinstance(data, DiagnosticReport):
        content = reporting.render(data, args.format)
    elif args.format == "json":
        content = reporting.to_json(data)
    else:
        content = text if text is not None else reporting.to_json(data)

    if args.output:
        directory = os.path.dirname(os.path.abspath(args.output))
        os.makedirs(directory, exist_ok=True)
        with open(args.output, "w", encoding="utf-8") as fp:
            fp.write(content)
        print("Written to %s" % args.output)
        return
    print(content)


def _run_triage(cfg: ToolConfig, args, target, factory, event_log, token) -> int:
    options = TriageOptions(
        connection_factory=factory,
        slow_connection_ms=cfg.triage.slow_connection_ms,
        slow_query_ms=cfg.triage.slow_query_ms,
        high_latency_ms=cfg.triage.high_latency_ms,
        high_cpu_percent=cfg.triage.high_cpu_percent,
    )
    triage = QuickTriage(options, event_log=event_log)
    result = triage.run(target, progress=lambda msg: print(msg, file=sys.stderr), cancel_token=token)
    _emit(result, args, text=reporting.format_triage(result))
    return 0 if result.diagnosis.category == "Healthy" else 1


def _run_monitor(cfg: ToolConfig, args, target, orchestrator) -> int:
    interval = args.interval if args.interval is not None else cfg.monitor.interval_seconds
    options = cfg.diagnostic_options() if (args.full or cfg.monitor.full) else None
    received = 0
    with ContinuousMonitor(orchestrator) as monitor:
        stream = monitor.snapshots()
        monitor.start(target, interval, options)
        try:
            for snapshot in stream:
                received += 1
                if args.format == "json":
                    print(reporting.to_json(snapshot), flush=True)
                else:
                    print("--- %s ---" % snapshot.timestamp.isoformat())
                    print(reporting.format_report(snapshot.report), flush=True)
                if args.count and received >= args.count:
                    break
        except KeyboardInterrupt:
            print("Stopping monitor...", file=sys.stderr)
        finally:
            stream.close()
    return 0
