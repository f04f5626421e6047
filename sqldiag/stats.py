import math
import statistics
from dataclasses import dataclass
from typing import Iterable, List, Optional


@dataclass
class LatencySummary:
    count: int
    average_ms: Optional[float] = None
    min_ms: Optional[float] = None
    max_ms: Optional[float] = None
    jitter_ms: Optional[float] = None
    median_ms: Optional[float] = None
    p95_ms: Optional[float] = None
    p99_ms: Optional[float] = None


def percentile(data: Iterable[float], fraction: float) -> Optional[float]:
    """
    Nearest-rank percentile: index = round((n - 1) * fraction) with halves
    rounded away from zero, clamped to the valid range. `fraction` is in 0..1.
    Returns None for an empty series.
    """
    ordered = sorted(data)
    if not ordered:
        return None
    k = (len(ordered) - 1) * fraction
    index = int(math.floor(k + 0.5)) if k >= 0 else -int(math.floor(-k + 0.5))
    index = max(0, min(index, len(ordered) - 1))
    return ordered[index]


def mean(data: Iterable[float]) -> Optional[float]:
    values = list(data)
    if not values:
        return None
    return statistics.mean(values)


def jitter(data: Iterable[float]) -> Optional[float]:
    """
    Population standard deviation of the samples.
    """
    values = list(data)
    if not values:
        return None
    return statistics.pstdev(values)


def summarize(samples_ms: List[float]) -> LatencySummary:
    if not samples_ms:
        return LatencySummary(count=0)
    return LatencySummary(
        count=len(samples_ms),
        average_ms=mean(samples_ms),
        min_ms=min(samples_ms),
        max_ms=max(samples_ms),
        jitter_ms=jitter(samples_ms),
        median_ms=percentile(samples_ms, 0.5),
        p95_ms=percentile(samples_ms, 0.95),
        p99_ms=percentile(samples_ms, 0.99),
    )
