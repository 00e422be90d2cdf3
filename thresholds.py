from __future__ import annotations

import math
import operator
import re
from dataclasses import asdict, dataclass
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence

from collector import RunningStats
from config import ConfigurationError, parse_duration
from scheduler import SchedulerSummary


OPERATORS: dict[str, Callable[[float, float], bool]] = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "==": lambda observed, bound: math.isclose(observed, bound, rel_tol=1e-9, abs_tol=1e-12),
}

RATE_METRICS = ("error_rate", "check_rate")
DURATION_METRICS = ("latency_avg", "latency_min", "latency_max", "latency_med")
COUNT_METRICS = (
    "requests",
    "iterations",
    "dropped_iterations",
    "capacity_exhausted",
    "abandoned_requests",
)
THROUGHPUT_METRICS = ("requests_per_second",)

_LATENCY_PERCENTILE = re.compile(r"latency_p(\d+(?:\.\d+)?)")
_EXPRESSION = re.compile(r"\s*([A-Za-z_][A-Za-z0-9_.]*)\s*(<=|>=|==|<|>)\s*(-?\d+(?:\.\d+)?(?:[eE][-+]?\d+)?)\s*")
_K6_AGGREGATE = re.compile(r"\s*(rate|avg|min|max|med|count|p\((\d+(?:\.\d+)?)\))\s*(<=|>=|==|<|>)\s*(-?\d+(?:\.\d+)?)\s*")

# k6 metric/aggregation pairs understood by parse_k6_thresholds.
_K6_METRICS: dict[tuple[str, str], str] = {
    ("http_req_failed", "rate"): "error_rate",
    ("checks", "rate"): "check_rate",
    ("http_req_duration", "avg"): "latency_avg",
    ("http_req_duration", "min"): "latency_min",
    ("http_req_duration", "max"): "latency_max",
    ("http_req_duration", "med"): "latency_med",
    ("http_reqs", "count"): "requests",
    ("http_reqs", "rate"): "requests_per_second",
    ("iterations", "count"): "iterations",
    ("dropped_iterations", "count"): "dropped_iterations",
}


def _latency_percentile(metric: str) -> Optional[float]:
    match = _LATENCY_PERCENTILE.fullmatch(metric)
    if match is None:
        return None
    return float(match.group(1))


def is_supported_metric(metric: str) -> bool:
    if metric in RATE_METRICS or metric in DURATION_METRICS:
        return True
    if metric in COUNT_METRICS or metric in THROUGHPUT_METRICS:
        return True
    pct = _latency_percentile(metric)
    return pct is not None and 0.0 < pct < 100.0


@dataclass(frozen=True)
class ThresholdSpec:
    metric: str
    op: str
    bound: float
    abort_on_fail: bool = False
    delay_abort_eval_s: float = 0.0

    def __post_init__(self) -> None:
        if not is_supported_metric(self.metric):
            raise ConfigurationError(f"Unknown threshold metric: {self.metric!r}")
        if self.op not in OPERATORS:
            raise ConfigurationError(
                f"Unsupported threshold operator {self.op!r} for {self.metric}. "
                f"Expected one of {', '.join(OPERATORS)}."
            )
        if isinstance(self.bound, bool) or not isinstance(self.bound, (int, float)):
            raise ConfigurationError(f"Threshold bound must be a number, got {self.bound!r}")
        if not math.isfinite(self.bound):
            raise ConfigurationError(f"Threshold bound must be finite, got {self.bound}")
        if self.metric in RATE_METRICS and not 0.0 <= self.bound <= 1.0:
            raise ConfigurationError(
                f"Rate threshold {self.metric} needs a bound in [0, 1], got {self.bound}"
            )
        if self.metric not in RATE_METRICS and self.bound < 0:
            raise ConfigurationError(f"Threshold {self.metric} needs a bound >= 0, got {self.bound}")
        if self.delay_abort_eval_s < 0:
            raise ConfigurationError(
                f"delay_abort_eval_s must be >= 0, got {self.delay_abort_eval_s}"
            )

    @property
    def expression(self) -> str:
        return f"{self.metric}{self.op}{self.bound:g}"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ThresholdResult:
    spec: ThresholdSpec
    observed: Optional[float]
    passed: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "metric": self.spec.metric,
            "op": self.spec.op,
            "expected": self.spec.bound,
            "observed": self.observed,
            "passed": self.passed,
            "expression": self.spec.expression,
        }


@dataclass(frozen=True)
class RunVerdict:
    passed: bool
    results: tuple[ThresholdResult, ...]
    stats: RunningStats
    cancelled: bool = False
    aborted_by: Optional[str] = None
    scheduler: Optional[SchedulerSummary] = None

    @property
    def violations(self) -> tuple[ThresholdResult, ...]:
        return tuple(result for result in self.results if not result.passed)

    @property
    def exit_code(self) -> int:
        return 0 if self.passed else 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "passed": self.passed,
            "cancelled": self.cancelled,
            "aborted_by": self.aborted_by,
            "thresholds": [result.to_dict() for result in self.results],
            "violations": [result.to_dict() for result in self.violations],
            "stats": self.stats.to_dict(),
            "scheduler": self.scheduler.to_dict() if self.scheduler else None,
        }


def observe_metric(stats: RunningStats, metric: str) -> Optional[float]:
    if metric == "error_rate":
        return stats.error_rate
    if metric == "check_rate":
        return stats.check_rate
    if metric == "latency_avg":
        return stats.latency_avg_ms
    if metric == "latency_min":
        return stats.latency_min_ms
    if metric == "latency_max":
        return stats.latency_max_ms
    if metric == "latency_med":
        return stats.latency_percentile(50.0)
    if metric == "requests":
        return float(stats.total)
    if metric == "iterations":
        return float(stats.iterations)
    if metric == "dropped_iterations":
        return float(stats.dropped_total)
    if metric == "capacity_exhausted":
        return float(stats.capacity_exhausted)
    if metric == "abandoned_requests":
        return float(stats.abandoned_requests)
    if metric == "requests_per_second":
        return stats.requests_per_second
    pct = _latency_percentile(metric)
    if pct is not None:
        return stats.latency_percentile(pct)
    raise ConfigurationError(f"Unknown threshold metric: {metric!r}")


def check_threshold(stats: RunningStats, spec: ThresholdSpec) -> ThresholdResult:
    observed = observe_metric(stats, spec.metric)
    # No observation means the condition cannot be shown to hold.
    passed = observed is not None and OPERATORS[spec.op](observed, spec.bound)
    return ThresholdResult(spec=spec, observed=observed, passed=passed)


def evaluate(
    stats: RunningStats,
    thresholds: Iterable[ThresholdSpec],
    *,
    cancelled: bool = False,
    aborted_by: Optional[str] = None,
    scheduler: Optional[SchedulerSummary] = None,
) -> RunVerdict:
    results = tuple(check_threshold(stats, spec) for spec in thresholds)
    return RunVerdict(
        passed=all(result.passed for result in results),
        results=results,
        stats=stats,
        cancelled=cancelled,
        aborted_by=aborted_by,
        scheduler=scheduler,
    )


class ThresholdEvaluator:
    def __init__(self, thresholds: Iterable[ThresholdSpec | Mapping[str, Any] | str] = ()) -> None:
        self.thresholds: tuple[ThresholdSpec, ...] = tuple(
            coerce_threshold(item) for item in thresholds
        )

    @property
    def has_abort_thresholds(self) -> bool:
        return any(spec.abort_on_fail for spec in self.thresholds)

    def evaluate(
        self,
        stats: RunningStats,
        *,
        cancelled: bool = False,
        aborted_by: Optional[str] = None,
        scheduler: Optional[SchedulerSummary] = None,
    ) -> RunVerdict:
        return evaluate(
            stats,
            self.thresholds,
            cancelled=cancelled,
            aborted_by=aborted_by,
            scheduler=scheduler,
        )

    def abort_violations(self, stats: RunningStats, elapsed_s: float) -> list[ThresholdResult]:
        """Failing abort-on-fail thresholds whose evaluation delay has passed."""
        violations: list[ThresholdResult] = []
        for spec in self.thresholds:
            if not spec.abort_on_fail or elapsed_s < spec.delay_abort_eval_s:
                continue
            result = check_threshold(stats, spec)
            # Live checks skip metrics that have nothing to report yet.
            if result.observed is not None and not result.passed:
                violations.append(result)
        return violations


def parse_threshold(text: str, abort_on_fail: bool = False) -> ThresholdSpec:
    match = _EXPRESSION.fullmatch(text)
    if match is None:
        raise ConfigurationError(
            f"Invalid threshold expression: {text!r}. Expected e.g. error_rate<0.01 or latency_p95<300."
        )
    metric, op, bound = match.groups()
    return ThresholdSpec(metric=metric, op=op, bound=float(bound), abort_on_fail=abort_on_fail)


def parse_k6_thresholds(
    thresholds: Mapping[str, Sequence[str | Mapping[str, Any]]],
) -> list[ThresholdSpec]:
    """Translate k6-style ``{"http_req_duration": ["p(95)<300"]}`` thresholds."""
    specs: list[ThresholdSpec] = []
    for k6_metric, expressions in thresholds.items():
        if isinstance(expressions, (str, Mapping)):
            expressions = [expressions]
        for entry in expressions:
            abort_on_fail = False
            delay_s = 0.0
            if isinstance(entry, Mapping):
                expression = str(entry.get("threshold", ""))
                abort_on_fail = bool(entry.get("abortOnFail", False))
                if entry.get("delayAbortEval") is not None:
                    delay_s = parse_duration(entry["delayAbortEval"], "delayAbortEval")
            else:
                expression = entry
            match = _K6_AGGREGATE.fullmatch(expression)
            if match is None:
                raise ConfigurationError(f"Invalid k6 threshold for {k6_metric}: {expression!r}")
            aggregate, pct, op, bound = match.groups()
            if pct is not None:
                if k6_metric != "http_req_duration":
                    raise ConfigurationError(f"Percentile thresholds need http_req_duration, got {k6_metric}")
                metric = f"latency_p{pct}"
            else:
                key = (k6_metric, aggregate)
                if key not in _K6_METRICS:
                    raise ConfigurationError(f"Unsupported k6 threshold: {k6_metric} {aggregate}")
                metric = _K6_METRICS[key]
            specs.append(
                ThresholdSpec(
                    metric=metric,
                    op=op,
                    bound=float(bound),
                    abort_on_fail=abort_on_fail,
                    delay_abort_eval_s=delay_s,
                )
            )
    return specs


def coerce_threshold(item: ThresholdSpec | Mapping[str, Any] | str) -> ThresholdSpec:
    if isinstance(item, ThresholdSpec):
        return item
    if isinstance(item, str):
        return parse_threshold(item)
    if isinstance(item, Mapping):
        unknown = sorted(set(item) - {"metric", "op", "bound", "abortOnFail", "delayAbortEval"})
        if unknown:
            raise ConfigurationError(f"Unknown threshold options: {', '.join(unknown)}")
        missing = [key for key in ("metric", "op", "bound") if key not in item]
        if missing:
            raise ConfigurationError(f"Threshold is missing {', '.join(missing)}")
        try:
            bound = float(item["bound"])
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Threshold bound must be a number, got {item['bound']!r}") from exc
        delay_s = 0.0
        if item.get("delayAbortEval") is not None:
            delay_s = parse_duration(item["delayAbortEval"], "delayAbortEval")
        return ThresholdSpec(
            metric=str(item["metric"]),
            op=str(item["op"]),
            bound=bound,
            abort_on_fail=bool(item.get("abortOnFail", False)),
            delay_abort_eval_s=delay_s,
        )
    raise ConfigurationError(f"Unsupported threshold definition: {item!r}")
