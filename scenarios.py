from __future__ import annotations

from typing import Any, Iterable, Optional

from config import CLOSED_LOOP, OPEN_LOOP, ConfigurationError, ScenarioConfig, parse_duration
from runner import RunConfig
from thresholds import ThresholdSpec
from workloads import Workload, get_workload


DEFAULT_BASE_URL = "http://localhost:8080"
DEFAULT_THINK_TIME_S = 0.1

BASELINE_THRESHOLDS = (
    ThresholdSpec("error_rate", "<", 0.01),
    ThresholdSpec("latency_p95", "<", 300.0),
)
SPIKE_THRESHOLDS = (
    ThresholdSpec("error_rate", "<", 0.01),
    ThresholdSpec("latency_p95", "<", 500.0),
)


def courses_baseline_config(
    base_url: str = DEFAULT_BASE_URL,
    vus: int = 100,
    duration: Any = "30s",
    thresholds: Optional[Iterable[ThresholdSpec]] = None,
    **run_options: Any,
) -> RunConfig:
    scenario = ScenarioConfig(
        execution_model=CLOSED_LOOP,
        duration_s=parse_duration(duration),
        workers=vus,
        think_time_s=run_options.pop("think_time_s", DEFAULT_THINK_TIME_S),
        graceful_stop_s=run_options.pop("graceful_stop_s", 30.0),
    )
    return RunConfig(
        base_url=base_url,
        scenario=scenario,
        thresholds=tuple(BASELINE_THRESHOLDS if thresholds is None else thresholds),
        **run_options,
    )


def enroll_spike_config(
    base_url: str = DEFAULT_BASE_URL,
    rate: float = 200.0,
    duration: Any = "60s",
    vus: int = 100,
    max_vus: Optional[int] = 500,
    time_unit: Any = "1s",
    course_id: int = 1,
    thresholds: Optional[Iterable[ThresholdSpec]] = None,
    **run_options: Any,
) -> RunConfig:
    scenario = ScenarioConfig(
        execution_model=OPEN_LOOP,
        duration_s=parse_duration(duration),
        rate=float(rate),
        time_unit_s=parse_duration(time_unit, "time unit"),
        min_workers=vus,
        max_workers=max_vus,
        think_time_s=run_options.pop("think_time_s", DEFAULT_THINK_TIME_S),
        graceful_stop_s=run_options.pop("graceful_stop_s", 30.0),
    )
    variables = dict(run_options.pop("vars", {}))
    variables.setdefault("course_id", course_id)
    return RunConfig(
        base_url=base_url,
        scenario=scenario,
        thresholds=tuple(SPIKE_THRESHOLDS if thresholds is None else thresholds),
        vars=variables,
        **run_options,
    )


SCENARIO_WORKLOADS = {
    "baseline": "courses-baseline",
    "spike": "enroll-spike",
}


def workload_for(scenario_name: str, course_id: int = 1) -> Workload:
    if scenario_name not in SCENARIO_WORKLOADS:
        raise ConfigurationError(f"Unknown scenario: {scenario_name!r}")
    if scenario_name == "spike":
        return get_workload(SCENARIO_WORKLOADS[scenario_name], course_id=course_id)
    return get_workload(SCENARIO_WORKLOADS[scenario_name])
