from __future__ import annotations

import math
import threading
import time
from collections import Counter
from dataclasses import dataclass
from typing import Any, Optional

from loadgen import (
    OUTCOME_STATUSES,
    STATUS_ABANDONED,
    RequestOutcome,
    now_unix_ms,
    percentile_of_sorted,
)

DEFAULT_EXACT_SAMPLE_LIMIT = 100_000
DEFAULT_RELATIVE_ACCURACY = 0.01
# Distinct request names tracked per endpoint; later names share OVERFLOW_ENDPOINT.
DEFAULT_MAX_ENDPOINTS = 200
OVERFLOW_ENDPOINT = "other"

DROP_CAPACITY = "capacity"
DROP_SCHEDULE_LAG = "schedule_lag"
DROP_REASONS = (DROP_CAPACITY, DROP_SCHEDULE_LAG)

REPORTED_PERCENTILES = (50.0, 90.0, 95.0, 99.0)

# Values at or below this are counted in the zero bucket.
_MIN_INDEXABLE_MS = 1e-6


class LatencySketch:
    """
    Mergeable quantile sketch over logarithmic buckets.

    Bucket ``k`` holds values in ``(gamma**(k-1), gamma**k]`` and reports
    ``2 * gamma**k / (gamma + 1)``, which keeps every quantile within
    ``relative_accuracy`` of a true sample value. The bucket count grows with
    the dynamic range of the data, not with the number of samples.
    """

    def __init__(self, relative_accuracy: float = DEFAULT_RELATIVE_ACCURACY) -> None:
        if not 0.0 < relative_accuracy < 1.0:
            raise ValueError(f"relative_accuracy must be in (0, 1), got {relative_accuracy}")
        if max_endpoints < 1:
            raise ValueError(f"max_endpoints must be >= 1, got {max_endpoints}")
        self.relative_accuracy = relative_accuracy
        self.max_endpoints = max_endpoints
        self._gamma = (1.0 + relative_accuracy) / (1.0 - relative_accuracy)
        self._log_gamma = math.log(self._gamma)
        self._buckets: dict[int, int] = {}
        self._zero_count = 0
        self.count = 0

    def add(self, value: float) -> None:
        if value <= _MIN_INDEXABLE_MS:
            self._zero_count += 1
        else:
            key = math.ceil(math.log(value) / self._log_gamma)
            self._buckets[key] = self._buckets.get(key, 0) + 1
        self.count += 1

    def merge(self, other: "LatencySketch") -> None:
        if not math.isclose(self._gamma, other._gamma):
            raise ValueError("Cannot merge sketches with different relative accuracy")
        for key, bucket_count in other._buckets.items():
            self._buckets[key] = self._buckets.get(key, 0) + bucket_count
        self._zero_count += other._zero_count
        self.count += other.count

    def copy(self) -> "LatencySketch":
        clone = LatencySketch(self.relative_accuracy)
        clone._buckets = dict(self._buckets)
        clone._zero_count = self._zero_count
        clone.count = self.count
        return clone

    @property
    def bucket_count(self) -> int:
        return len(self._buckets) + (1 if self._zero_count else 0)

    def quantile(self, q: float) -> Optional[float]:
        if self.count == 0:
            return None
        q = min(max(q, 0.0), 1.0)
        rank = q * (self.count - 1)
        if rank < self._zero_count:
            return 0.0
        running = self._zero_count
        ordered_keys = sorted(self._buckets)
        for key in ordered_keys:
            running += self._buckets[key]
            if running > rank:
                return self._value_of(key)
        return self._value_of(ordered_keys[-1])

    def _value_of(self, key: int) -> float:
        return 2.0 * (self._gamma ** key) / (self._gamma + 1.0)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, LatencySketch):
            return NotImplemented
        return (
            math.isclose(self._gamma, other._gamma)
            and self._buckets == other._buckets
            and self._zero_count == other._zero_count
        )


@dataclass(frozen=True)
class EndpointCounts:
    total: int
    errors: int

    @property
    def error_rate(self) -> float:
        return float(self.errors / self.total) if self.total else 0.0


@dataclass(frozen=True)
class RunningStats:
    total: int
    error_count: int
    status_counts: dict[str, int]
    http_status_counts: dict[int, int]
    endpoints: dict[str, EndpointCounts]
    latency_count: int
    latency_min_ms: Optional[float]
    latency_max_ms: Optional[float]
    latency_sum_ms: float
    bytes_received: int
    bytes_sent: int
    checks_passed: int
    checks_failed: int
    iterations: int
    iteration_errors: int
    dropped_iterations: dict[str, int]
    started_unix_ms: Optional[int]
    elapsed_s: float
    latency_samples: tuple[float, ...] = ()
    latency_sketch: Optional[LatencySketch] = None

    @property
    def ok_count(self) -> int:
        return self.total - self.error_count

    @property
    def error_rate(self) -> float:
        return float(self.error_count / self.total) if self.total else 0.0

    @property
    def check_count(self) -> int:
        return self.checks_passed + self.checks_failed

    @property
    def check_rate(self) -> Optional[float]:
        if not self.check_count:
            return None
        return float(self.checks_passed / self.check_count)

    @property
    def abandoned_requests(self) -> int:
        return self.status_counts.get(STATUS_ABANDONED, 0)

    @property
    def dropped_total(self) -> int:
        return sum(self.dropped_iterations.values())

    @property
    def capacity_exhausted(self) -> int:
        return self.dropped_iterations.get(DROP_CAPACITY, 0)

    @property
    def is_approximate(self) -> bool:
        return self.latency_sketch is not None

    @property
    def latency_avg_ms(self) -> Optional[float]:
        if not self.latency_count:
            return None
        return float(self.latency_sum_ms / self.latency_count)

    @property
    def requests_per_second(self) -> Optional[float]:
        if self.elapsed_s <= 0:
            return None
        return float(self.total / self.elapsed_s)

    def latency_percentile(self, pct: float) -> Optional[float]:
        if not self.latency_count:
            return None
        if pct <= 0:
            return self.latency_min_ms
        if pct >= 100:
            return self.latency_max_ms
        if self.latency_sketch is not None:
            value = self.latency_sketch.quantile(pct / 100.0)
            if value is None:
                return None
            # Sketch buckets can overshoot the observed range slightly.
            assert self.latency_min_ms is not None and self.latency_max_ms is not None
            return min(max(value, self.latency_min_ms), self.latency_max_ms)
        return percentile_of_sorted(self.latency_samples, pct)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "total": self.total,
            "ok_count": self.ok_count,
            "error_count": self.error_count,
            "error_rate": self.error_rate,
            "status_counts": dict(self.status_counts),
            "http_status_counts": {str(code): count for code, count in self.http_status_counts.items()},
            "endpoints": {
                name: {"total": counts.total, "errors": counts.errors}
                for name, counts in self.endpoints.items()
            },
            "latency_min_ms": self.latency_min_ms,
            "latency_avg_ms": self.latency_avg_ms,
            "latency_max_ms": self.latency_max_ms,
            "latency_approximate": self.is_approximate,
            "bytes_received": self.bytes_received,
            "bytes_sent": self.bytes_sent,
            "checks_passed": self.checks_passed,
            "checks_failed": self.checks_failed,
            "check_rate": self.check_rate,
            "iterations": self.iterations,
            "iteration_errors": self.iteration_errors,
            "dropped_iterations": dict(self.dropped_iterations),
            "abandoned_requests": self.abandoned_requests,
            "started_unix_ms": self.started_unix_ms,
            "elapsed_s": self.elapsed_s,
            "requests_per_second": self.requests_per_second,
        }
        for pct in REPORTED_PERCENTILES:
            payload[f"latency_p{pct:g}_ms"] = self.latency_percentile(pct)
        return payload


class MetricsCollector:
    """Thread-safe aggregator; the only owner of raw latency samples."""

    def __init__(
        self,
        exact_sample_limit: int = DEFAULT_EXACT_SAMPLE_LIMIT,
        relative_accuracy: float = DEFAULT_RELATIVE_ACCURACY,
        max_endpoints: int = DEFAULT_MAX_ENDPOINTS,
    ) -> None:
        if exact_sample_limit < 0:
            raise ValueError(f"exact_sample_limit must be >= 0, got {exact_sample_limit}")
        if max_endpoints < 1:
            raise ValueError(f"max_endpoints must be >= 1, got {max_endpoints}")
        self.exact_sample_limit = exact_sample_limit
        self.relative_accuracy = relative_accuracy
        self.max_endpoints = max_endpoints
        self._lock = threading.Lock()

        self._total = 0
        self._errors = 0
        self._status_counts: Counter[str] = Counter()
        self._http_status_counts: Counter[int] = Counter()
        self._endpoint_totals: Counter[str] = Counter()
        self._endpoint_errors: Counter[str] = Counter()
        self._latency_count = 0
        self._latency_min: Optional[float] = None
        self._latency_max: Optional[float] = None
        self._latency_sum = 0.0
        self._samples: list[float] = []
        self._sketch: Optional[LatencySketch] = None
        self._bytes_received = 0
        self._bytes_sent = 0
        self._checks_passed = 0
        self._checks_failed = 0
        self._iterations = 0
        self._iteration_errors = 0
        self._dropped: Counter[str] = Counter()

        self._started_monotonic: Optional[float] = None
        self._finished_monotonic: Optional[float] = None
        self._started_unix_ms: Optional[int] = None

    def mark_started(self) -> None:
        with self._lock:
            self._started_monotonic = time.monotonic()
            self._started_unix_ms = now_unix_ms()
            self._finished_monotonic = None

    def mark_finished(self) -> None:
        with self._lock:
            self._finished_monotonic = time.monotonic()

    def record(self, outcome: RequestOutcome) -> None:
        with self._lock:
            self._total += 1
            self._status_counts[outcome.status] += 1
            self._http_status_counts[outcome.http_status] += 1
            endpoint = self._endpoint_key(outcome.name)
            self._endpoint_totals[endpoint] += 1
            if outcome.is_error:
                self._errors += 1
                self._endpoint_errors[endpoint] += 1
            self._bytes_received += outcome.bytes_received
            self._bytes_sent += outcome.bytes_sent
            if outcome.check_passed is True:
                self._checks_passed += 1
            elif outcome.check_passed is False:
                self._checks_failed += 1
            if outcome.responded:
                self._observe_latency(outcome.latency_ms)

    def _endpoint_key(self, name: str) -> str:
        if name in self._endpoint_totals or len(self._endpoint_totals) < self.max_endpoints:
            return name
        return OVERFLOW_ENDPOINT

    def _observe_latency(self, latency_ms: float) -> None:
        self._latency_count += 1
        self._latency_sum += latency_ms
        if self._latency_min is None or latency_ms < self._latency_min:
            self._latency_min = latency_ms
        if self._latency_max is None or latency_ms > self._latency_max:
            self._latency_max = latency_ms

        if self._sketch is not None:
            self._sketch.add(latency_ms)
            return
        self._samples.append(latency_ms)
        if len(self._samples) > self.exact_sample_limit:
            sketch = LatencySketch(self.relative_accuracy)
            for sample in self._samples:
                sketch.add(sample)
            self._sketch = sketch
            self._samples = []

    def record_iteration(self) -> None:
        with self._lock:
            self._iterations += 1

    def record_iteration_error(self) -> None:
        with self._lock:
            self._iterations += 1
            self._iteration_errors += 1

    def record_dropped_iteration(self, reason: str, count: int = 1) -> None:
        if reason not in DROP_REASONS:
            raise ValueError(f"Unknown drop reason: {reason}")
        with self._lock:
            self._dropped[reason] += count

    def snapshot(self) -> RunningStats:
        with self._lock:
            samples = list(self._samples)
            sketch = self._sketch.copy() if self._sketch is not None else None
            if self._started_monotonic is None:
                elapsed_s = 0.0
            else:
                end = self._finished_monotonic if self._finished_monotonic is not None else time.monotonic()
                elapsed_s = max(0.0, end - self._started_monotonic)
            endpoints = {
                name: EndpointCounts(total=count, errors=self._endpoint_errors.get(name, 0))
                for name, count in self._endpoint_totals.items()
            }
            status_counts = {status: self._status_counts.get(status, 0) for status in OUTCOME_STATUSES}
            stats_kwargs: dict[str, Any] = {
                "total": self._total,
                "error_count": self._errors,
                "status_counts": status_counts,
                "http_status_counts": dict(self._http_status_counts),
                "endpoints": endpoints,
                "latency_count": self._latency_count,
                "latency_min_ms": self._latency_min,
                "latency_max_ms": self._latency_max,
                "latency_sum_ms": self._latency_sum,
                "bytes_received": self._bytes_received,
                "bytes_sent": self._bytes_sent,
                "checks_passed": self._checks_passed,
                "checks_failed": self._checks_failed,
                "iterations": self._iterations,
                "iteration_errors": self._iteration_errors,
                "dropped_iterations": {reason: self._dropped.get(reason, 0) for reason in DROP_REASONS},
                "started_unix_ms": self._started_unix_ms,
                "elapsed_s": elapsed_s,
            }
        samples.sort()
        return RunningStats(
            latency_samples=tuple(samples),
            latency_sketch=sketch,
            **stats_kwargs,
        )
