from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Any, Mapping, Optional


CLOSED_LOOP = "closed-loop"
OPEN_LOOP = "open-loop"
EXECUTION_MODELS = (CLOSED_LOOP, OPEN_LOOP)

# k6 executor names map onto the two execution models.
EXECUTOR_ALIASES = {
    "constant-vus": CLOSED_LOOP,
    "constant-arrival-rate": OPEN_LOOP,
}

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"

_DURATION_TEXT = re.compile(r"(?:\d+(?:\.\d+)?(?:ms|s|m|h))+")
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


class ConfigurationError(ValueError):
    """Invalid scenario, run or threshold configuration, raised before a run starts."""


def parse_duration(value: Any, label: str = "duration") -> float:
    """Return seconds for a number or a duration string like ``500ms`` or ``1m30s``."""
    if isinstance(value, bool) or value is None:
        raise ConfigurationError(f"{label} must be a number or duration string, got {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = str(value).strip().lower()
        try:
            seconds = float(text)
        except ValueError:
            if not _DURATION_TEXT.fullmatch(text):
                raise ConfigurationError(
                    f"Invalid {label}: {value!r}. Expected e.g. 500ms, 30s, 1m30s."
                ) from None
            seconds = sum(
                float(amount) * _UNIT_SECONDS[unit]
                for amount, unit in _DURATION_PART.findall(text)
            )
    if not math.isfinite(seconds) or seconds < 0:
        raise ConfigurationError(f"{label} must be a finite value >= 0, got {value!r}")
    return seconds


def optional_int(options: Mapping[str, Any], key: str) -> Optional[int]:
    value = options.get(key)
    if value is None:
        return None
    if isinstance(value, bool):
        raise ConfigurationError(f"{key} must be an integer, got {value!r}")
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{key} must be an integer, got {value!r}") from exc
    if parsed != float(value):
        raise ConfigurationError(f"{key} must be an integer, got {value!r}")
    return parsed


@dataclass(frozen=True)
class ScenarioConfig:
    execution_model: str
    duration_s: float
    workers: int = 1
    rate: Optional[float] = None
    time_unit_s: float = 1.0
    min_workers: int = 1
    max_workers: Optional[int] = None
    think_time_s: float = 0.0
    graceful_stop_s: float = 30.0
    idle_reclaim_s: float = 5.0
    max_catchup_ticks: Optional[int] = None

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        if self.execution_model not in EXECUTION_MODELS:
            raise ConfigurationError(
                f"Unsupported execution model: {self.execution_model!r}. "
                f"Expected one of {', '.join(EXECUTION_MODELS)}."
            )
        if not math.isfinite(self.duration_s) or self.duration_s <= 0:
            raise ConfigurationError(f"duration must be > 0, got {self.duration_s}")
        if self.think_time_s < 0:
            raise ConfigurationError(f"think time must be >= 0, got {self.think_time_s}")
        if self.graceful_stop_s <= 0:
            raise ConfigurationError(
                f"graceful stop must be > 0, got {self.graceful_stop_s}"
            )
        if self.idle_reclaim_s < 0:
            raise ConfigurationError(
                f"idle reclaim period must be >= 0, got {self.idle_reclaim_s}"
            )

        if self.execution_model == CLOSED_LOOP:
            if self.workers < 1:
                raise ConfigurationError(f"workers must be >= 1, got {self.workers}")
            return

        if self.rate is None or not math.isfinite(self.rate) or self.rate <= 0:
            raise ConfigurationError(f"rate must be > 0 for open-loop, got {self.rate}")
        if not math.isfinite(self.time_unit_s) or self.time_unit_s <= 0:
            raise ConfigurationError(f"time unit must be > 0, got {self.time_unit_s}")
        if self.min_workers < 0:
            raise ConfigurationError(f"minWorkers must be >= 0, got {self.min_workers}")
        if self.max_workers is not None:
            if self.max_workers < 1:
                raise ConfigurationError(f"maxWorkers must be >= 1, got {self.max_workers}")
            if self.min_workers > self.max_workers:
                raise ConfigurationError(
                    f"minWorkers must be <= maxWorkers, got {self.min_workers} > {self.max_workers}"
                )
        if self.max_catchup_ticks is not None and self.max_catchup_ticks < 0:
            raise ConfigurationError(
                f"max catch-up ticks must be >= 0, got {self.max_catchup_ticks}"
            )

    @property
    def is_open_loop(self) -> bool:
        return self.execution_model == OPEN_LOOP

    @property
    def tick_interval_s(self) -> Optional[float]:
        if not self.is_open_loop:
            return None
        assert self.rate is not None
        return self.time_unit_s / self.rate

    @property
    def total_ticks(self) -> Optional[int]:
        """Number of scheduled arrivals over the whole duration (open-loop only)."""
        interval = self.tick_interval_s
        if interval is None:
            return None
        # Tolerate float noise so 1s at 200/s is 200 ticks rather than 201.
        return max(1, math.ceil(self.duration_s / interval - 1e-9))

    @property
    def peak_concurrency(self) -> Optional[int]:
        if self.is_open_loop:
            return self.max_workers
        return self.workers

    @classmethod
    def from_dict(cls, options: Mapping[str, Any]) -> "ScenarioConfig":
        """Build from the options object, accepting camelCase and k6 option names."""
        known = {
            "executionModel", "executor", "workers", "vus", "rate", "timeUnit",
            "minWorkers", "preAllocatedVUs", "maxWorkers", "maxVUs", "duration",
            "thinkTime", "gracefulStop", "idleReclaim", "maxCatchupTicks",
        }
        unknown = sorted(set(options) - known)
        if unknown:
            raise ConfigurationError(f"Unknown scenario options: {', '.join(unknown)}")

        model = options.get("executionModel")
        if model is None and "executor" in options:
            executor = options["executor"]
            if executor not in EXECUTOR_ALIASES:
                raise ConfigurationError(f"Unsupported executor: {executor!r}")
            model = EXECUTOR_ALIASES[executor]
        if model is None:
            raise ConfigurationError("executionModel is required")
        if "duration" not in options:
            raise ConfigurationError("duration is required")

        workers = optional_int(options, "workers")
        if workers is None:
            workers = optional_int(options, "vus")
        min_workers = optional_int(options, "minWorkers")
        if min_workers is None:
            min_workers = optional_int(options, "preAllocatedVUs")
        max_workers = optional_int(options, "maxWorkers")
        if max_workers is None:
            max_workers = optional_int(options, "maxVUs")

        rate = options.get("rate")
        if rate is not None:
            try:
                rate = float(rate)
            except (TypeError, ValueError) as exc:
                raise ConfigurationError(f"rate must be a number, got {rate!r}") from exc

        kwargs: dict[str, Any] = {
            "execution_model": model,
            "duration_s": parse_duration(options["duration"], "duration"),
            "rate": rate,
            "max_workers": max_workers,
            "max_catchup_ticks": optional_int(options, "maxCatchupTicks"),
        }
        if workers is not None:
            kwargs["workers"] = workers
        if min_workers is not None:
            kwargs["min_workers"] = min_workers
        if "timeUnit" in options:
            kwargs["time_unit_s"] = parse_duration(options["timeUnit"], "timeUnit")
        if "thinkTime" in options:
            kwargs["think_time_s"] = parse_duration(options["thinkTime"], "thinkTime")
        if "gracefulStop" in options:
            kwargs["graceful_stop_s"] = parse_duration(options["gracefulStop"], "gracefulStop")
        if "idleReclaim" in options:
            kwargs["idle_reclaim_s"] = parse_duration(options["idleReclaim"], "idleReclaim")
        return cls(**kwargs)
