"""
Client Metrics
--------------
Rolling request metrics for one API client.

Design:
- Counters (total / success / error / cached) update live
- Latency samples kept in a bounded window (last 1000 calls)
- Percentiles, rate-limit and circuit snapshots recomputed by aggregate(),
  which the maintenance timer calls periodically
- Callers only ever see immutable APIMetrics snapshots
"""

from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Any, Deque, Dict, List, Optional
import logging
import threading

MAX_LATENCY_SAMPLES = 1000


@dataclass(frozen=True)
class RequestCounters:
    total: int = 0
    success: int = 0
    error: int = 0
    cached: int = 0


@dataclass(frozen=True)
class LatencyStats:
    """Latency over the sample window, in milliseconds."""
    min: float = 0.0
    max: float = 0.0
    avg: float = 0.0
    p50: float = 0.0
    p95: float = 0.0
    p99: float = 0.0
    samples: int = 0


@dataclass(frozen=True)
class RateLimitSnapshot:
    remaining: Optional[int] = None
    reset_at: Optional[float] = None
    limit: Optional[int] = None


@dataclass(frozen=True)
class CircuitSnapshot:
    state: str = "closed"
    failures: int = 0
    last_failure: Optional[float] = None


@dataclass(frozen=True)
class APIMetrics:
    """Read-only metrics snapshot."""
    requests: RequestCounters = field(default_factory=RequestCounters)
    latency: LatencyStats = field(default_factory=LatencyStats)
    rate_limit: RateLimitSnapshot = field(default_factory=RateLimitSnapshot)
    circuit: CircuitSnapshot = field(default_factory=CircuitSnapshot)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def percentile(sorted_values: List[float], fraction: float) -> float:
    """Nearest-rank percentile of an already sorted list."""
    if not sorted_values:
        return 0.0
    idx = int(len(sorted_values) * fraction)
    return sorted_values[min(idx, len(sorted_values) - 1)]


def compute_latency(samples: List[float]) -> LatencyStats:
    if not samples:
        return LatencyStats()
    ordered = sorted(samples)
    return LatencyStats(
        min=ordered[0],
        max=ordered[-1],
        avg=sum(ordered) / len(ordered),
        p50=percentile(ordered, 0.50),
        p95=percentile(ordered, 0.95),
        p99=percentile(ordered, 0.99),
        samples=len(ordered),
    )


class MetricsCollector:
    """
    Thread-safe metrics recorder.

    Written from the event loop, aggregated from the maintenance thread.
    """

    def __init__(self, name: str = "default", max_samples: int = MAX_LATENCY_SAMPLES):
        self.name = name
        self._lock = threading.Lock()
        self._total = 0
        self._success = 0
        self._error = 0
        self._cached = 0
        self._latencies: Deque[float] = deque(maxlen=max_samples)
        self._rate_limit = RateLimitSnapshot()
        self._latency = LatencyStats()
        self._circuit = CircuitSnapshot()
        self._logger = logging.getLogger(f"apiclient.metrics.{name}")

    def record_success(self, duration_ms: float) -> None:
        with self._lock:
            self._total += 1
            self._success += 1
            self._latencies.append(duration_ms)

    def record_error(self, duration_ms: Optional[float] = None) -> None:
        with self._lock:
            self._total += 1
            self._error += 1
            if duration_ms is not None:
                self._latencies.append(duration_ms)

    def record_cached(self) -> None:
        with self._lock:
            self._total += 1
            self._cached += 1

    def record_rate_limit(self, remaining: int, reset_at: float, limit: int) -> None:
        with self._lock:
            self._rate_limit = RateLimitSnapshot(remaining=remaining, reset_at=reset_at, limit=limit)

    def aggregate(self, circuit_stats: Optional[Dict[str, Any]] = None) -> None:
        """Recompute latency percentiles and the circuit snapshot."""
        with self._lock:
            samples = list(self._latencies)

        latency = compute_latency(samples)
        circuit = self._circuit
        if circuit_stats is not None:
            circuit = CircuitSnapshot(
                state=circuit_stats["state"],
                failures=circuit_stats["failures"],
                last_failure=circuit_stats["last_failure"],
            )

        with self._lock:
            self._latency = latency
            self._circuit = circuit

    def snapshot(self) -> APIMetrics:
        with self._lock:
            return APIMetrics(
                requests=RequestCounters(
                    total=self._total,
                    success=self._success,
                    error=self._error,
                    cached=self._cached,
                ),
                latency=self._latency,
                rate_limit=self._rate_limit,
                circuit=self._circuit,
            )

    def reset(self) -> None:
        with self._lock:
            self._total = self._success = self._error = self._cached = 0
            self._latencies.clear()
            self._latency = LatencyStats()
