"""
Point-in-time and continuous health diagnostics for SQL Server.

Probes connection establishment, network reachability, query execution and
server/database state, merges the results into one report, compares it with
captured latency baselines and can repeat the battery on a timer.
"""

__all__ = [
    "config",
    "db",
    "network",
    "connection",
    "query",
    "server",
    "database",
    "orchestrator",
    "monitor",
    "baseline",
    "triage",
    "pool_monitor",
    "events",
    "reporting",
    "cli",
]
