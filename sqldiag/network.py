import platform
import re
import socket
import subprocess
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from .cancellation import CancellationToken, ensure_token
from .errors import OperationCancelled
from .logger import get_logger
from .models import DnsResolution, LatencyMetrics, LatencySample, PortConnectivity, utcnow
from .stats import jitter, mean

log = get_logger("Network")

DEFAULT_SQL_PORT = 1433

_TIME_FIELD = re.compile(r"time[=<]\s*([\d.]+)\s*ms", re.IGNORECASE)


@dataclass
class PingReply:
    success: bool
    round_trip_ms: float = 0.0
    status: str = "Success"


PingFunc = Callable[[str, int], PingReply]


def system_ping(host: str, timeout_ms: int, cancel_token: Optional[CancellationToken] = None) -> PingReply:
    """
    Send one ICMP echo through the platform `ping` binary.
    The child process is killed if the token fires while waiting.
    """
    cmd = _build_ping_command(host, timeout_ms)
    start = time.perf_counter()
    try:
        proc = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
    except OSError as exc:
        return PingReply(success=False, status="PingUnavailable: %s" % exc)

    token = ensure_token(cancel_token)
    deadline = start + timeout_ms / 1000.0 + 2.0
    while proc.poll() is None:
        if token.wait(0.02):
            proc.kill()
            proc.wait()
            raise OperationCancelled("Ping was cancelled.")
        if time.perf_counter() > deadline:
            proc.kill()
            proc.wait()
            return PingReply(success=False, status="TimedOut")

    stdout = proc.stdout.read().decode("utf-8", errors="replace") if proc.stdout else ""
    if proc.stdout:
        proc.stdout.close()
    if proc.stderr:
        proc.stderr.close()
    if proc.returncode != 0:
        timed_out = not stdout or "timed out" in stdout.lower()
        return PingReply(success=False, status="TimedOut" if timed_out else "DestinationUnreachable")
    match = _TIME_FIELD.search(stdout)
    if match:
        return PingReply(success=True, round_trip_ms=float(match.group(1)))
    return PingReply(success=True, round_trip_ms=(time.perf_counter() - start) * 1000.0)


def _build_ping_command(host: str, timeout_ms: int) -> List[str]:
    if platform.system().lower() == "windows":
        return ["ping", "-n", "1", "-w", str(int(timeout_ms)), host]
    seconds = max(1, int(round(timeout_ms / 1000.0)))
    return ["ping", "-c", "1", "-W", str(seconds), host]


class NetworkProbe:
    """
    Sequential ICMP latency sampling plus DNS and TCP port checks.
    """

    def __init__(self, ping: Optional[PingFunc] = None) -> None:
        self._ping = ping

    def measure_latency(
        self,
        host: str,
        attempts: int = 5,
        timeout_ms: int = 5000,
        cancel_token: Optional[CancellationToken] = None,
    ) -> LatencyMetrics:
        if not host or not host.strip():
            raise ValueError("Host must be provided.")
        if attempts < 1:
            raise ValueError("attempts must be >= 1")
        if timeout_ms <= 0:
            raise ValueError("timeout_ms must be positive")

        token = ensure_token(cancel_token)
        metrics = LatencyMetrics(host=host)
        values: List[float] = []

        for attempt in range(1, attempts + 1):
            token.raise_if_cancelled()
            try:
                reply = self._send(host, timeout_ms, token)
            except OperationCancelled:
                raise
            except Exception as exc:  # pylint: disable=broad-except
                metrics.samples.append(LatencySample(utcnow(), False, 0.0, str(exc)))
                log.warning("Ping attempt {} to {} failed: {}", attempt, host, exc)
                continue

            if reply.success:
                metrics.samples.append(LatencySample(utcnow(), True, reply.round_trip_ms))
                values.append(reply.round_trip_ms)
            else:
                metrics.samples.append(LatencySample(utcnow(), False, reply.round_trip_ms, reply.status))
                log.warning("Ping attempt {} to {} returned status {}", attempt, host, reply.status)

        if values:
            metrics.average_ms = mean(values)
            metrics.min_ms = min(values)
            metrics.max_ms = max(values)
            metrics.jitter_ms = jitter(values)
        return metrics

    def resolve_dns(self, host: str) -> DnsResolution:
        if not host or not host.strip():
            raise ValueError("Host must be provided.")
        result = DnsResolution(host=host)
        start = time.perf_counter()
        try:
            infos = socket.getaddrinfo(host, None)
            seen: List[str] = []
            for info in infos:
                address = info[4][0]
                if address not in seen:
                    seen.append(address)
            result.addresses = seen
        except OSError as exc:
            result.error = str(exc)
            log.warning("DNS resolution for {} failed: {}", host, exc)
        result.elapsed_ms = (time.perf_counter() - start) * 1000.0
        return result

    def probe_port(
        self,
        host: str,
        port: Optional[int] = None,
        timeout: float = 5.0,
    ) -> PortConnectivity:
        if not host or not host.strip():
            raise ValueError("Host must be provided.")
        port = port or DEFAULT_SQL_PORT
        start = time.perf_counter()
        try:
            with socket.create_connection((host, port), timeout=timeout):
                pass
            return PortConnectivity(
                host=host,
                port=port,
                success=True,
                elapsed_ms=(time.perf_counter() - start) * 1000.0,
            )
        except OSError as exc:
            log.warning("TCP probe to {}:{} failed: {}", host, port, exc)
            return PortConnectivity(
                host=host,
                port=port,
                success=False,
                elapsed_ms=(time.perf_counter() - start) * 1000.0,
                error=str(exc),
            )

    def _send(self, host: str, timeout_ms: int, token: CancellationToken) -> PingReply:
        if self._ping is not None:
            return self._ping(host, timeout_ms)
        return system_ping(host, timeout_ms, token)
