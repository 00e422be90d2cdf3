from __future__ import annotations

import random
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Iterable, Mapping

from config import ConfigurationError
from loadgen import RequestSpec


@dataclass(frozen=True)
class WorkloadContext:
    worker_id: int
    iteration: int
    rng: random.Random
    vars: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))


Workload = Callable[[WorkloadContext], Iterable[RequestSpec]]


def courses_baseline(ctx: WorkloadContext) -> list[RequestSpec]:
    return [RequestSpec.build("GET", "/lb/courses", name="courses")]


class EnrollSpike:
    """POST an enrollment with a random user and priority, sometimes polling the queue."""

    def __init__(
        self,
        course_id: int = 1,
        max_user_id: int = 100_000,
        priority_levels: int = 100,
        status_check_probability: float = 0.05,
    ) -> None:
        if course_id < 1:
            raise ConfigurationError(f"course_id must be >= 1, got {course_id}")
        if max_user_id < 1:
            raise ConfigurationError(f"max_user_id must be >= 1, got {max_user_id}")
        if priority_levels < 1:
            raise ConfigurationError(f"priority_levels must be >= 1, got {priority_levels}")
        if not 0.0 <= status_check_probability <= 1.0:
            raise ConfigurationError(
                f"status_check_probability must be in [0, 1], got {status_check_probability}"
            )
        self.course_id = course_id
        self.max_user_id = max_user_id
        self.priority_levels = priority_levels
        self.status_check_probability = status_check_probability

    def __call__(self, ctx: WorkloadContext) -> list[RequestSpec]:
        course_id = int(ctx.vars.get("course_id", self.course_id))
        payload = {
            "userId": ctx.rng.randint(1, self.max_user_id),
            "courseId": course_id,
            "priority": ctx.rng.randrange(self.priority_levels),
        }
        specs = [
            RequestSpec.build(
                "POST",
                "/lb/enroll",
                body=payload,
                headers={"Content-Type": "application/json"},
                name="enroll",
                expected_status=200,
            )
        ]
        if ctx.rng.random() < self.status_check_probability:
            specs.append(RequestSpec.build("GET", "/lb/queue/status", name="queue_status"))
        return specs


class CourseBrowse:
    def __init__(self, course_count: int = 10) -> None:
        if course_count < 1:
            raise ConfigurationError(f"course_count must be >= 1, got {course_count}")
        self.course_count = course_count

    def __call__(self, ctx: WorkloadContext) -> list[RequestSpec]:
        course_id = ctx.rng.randint(1, self.course_count)
        return [RequestSpec.build("GET", f"/lb/courses/{course_id}", name="course_detail")]


WORKLOADS: dict[str, Callable[..., Workload]] = {
    "courses-baseline": lambda: courses_baseline,
    "enroll-spike": EnrollSpike,
    "course-browse": CourseBrowse,
}


def get_workload(name: str, **options: Any) -> Workload:
    factory = WORKLOADS.get(name)
    if factory is None:
        raise ConfigurationError(
            f"Unknown workload: {name!r}. Expected one of {', '.join(sorted(WORKLOADS))}."
        )
    try:
        return factory(**options)
    except TypeError as exc:
        raise ConfigurationError(f"Invalid options for workload {name!r}: {exc}") from exc
