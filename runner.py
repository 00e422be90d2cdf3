from __future__ import annotations

import asyncio
import logging
import math
import threading
from dataclasses import asdict, dataclass, field
from typing import Any, Mapping, Optional

import httpx

from collector import DEFAULT_EXACT_SAMPLE_LIMIT, MetricsCollector, RunningStats
from config import ConfigurationError, ScenarioConfig, optional_int, parse_duration
from loadgen import RequestIssuer, create_client
from metrics_prometheus import serve_live_metrics
from scheduler import STATE_RUNNING, ScenarioScheduler
from status_poller import QueueStatusPoller
from thresholds import RunVerdict, ThresholdEvaluator, ThresholdSpec, coerce_threshold, parse_k6_thresholds
from workloads import Workload


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunConfig:
    base_url: str
    scenario: ScenarioConfig
    thresholds: tuple[ThresholdSpec, ...] = ()
    request_timeout_s: float = 10.0
    seed: Optional[int] = None
    exact_sample_limit: int = DEFAULT_EXACT_SAMPLE_LIMIT
    evaluation_interval_s: float = 1.0
    vars: Mapping[str, Any] = field(default_factory=dict)
    status_poll_path: Optional[str] = None
    status_poll_interval_s: float = 1.0

    def __post_init__(self) -> None:
        if not self.base_url.startswith(("http://", "https://")):
            raise ConfigurationError(f"base URL must be http(s), got {self.base_url!r}")
        if not math.isfinite(self.request_timeout_s) or self.request_timeout_s <= 0:
            raise ConfigurationError(f"request timeout must be > 0, got {self.request_timeout_s}")
        if self.request_timeout_s >= self.scenario.graceful_stop_s:
            raise ConfigurationError(
                f"request timeout ({self.request_timeout_s}s) must be shorter than "
                f"the graceful stop period ({self.scenario.graceful_stop_s}s)"
            )
        if self.seed is not None and (isinstance(self.seed, bool) or not isinstance(self.seed, int)):
            raise ConfigurationError(f"seed must be an integer, got {self.seed!r}")
        if isinstance(self.exact_sample_limit, bool) or not isinstance(self.exact_sample_limit, int):
            raise ConfigurationError(
                f"exact sample limit must be an integer, got {self.exact_sample_limit!r}"
            )
        if self.exact_sample_limit < 0:
            raise ConfigurationError(
                f"exact sample limit must be >= 0, got {self.exact_sample_limit}"
            )
        if self.evaluation_interval_s <= 0:
            raise ConfigurationError(
                f"evaluation interval must be > 0, got {self.evaluation_interval_s}"
            )
        if self.status_poll_interval_s <= 0:
            raise ConfigurationError(
                f"status poll interval must be > 0, got {self.status_poll_interval_s}"
            )
        for spec in self.thresholds:
            if not isinstance(spec, ThresholdSpec):
                raise ConfigurationError(f"thresholds must be ThresholdSpec, got {spec!r}")

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["vars"] = dict(self.vars)
        return payload

    @classmethod
    def from_dict(cls, options: Mapping[str, Any]) -> "RunConfig":
        """
        Build a run configuration from the options object.

        ``baseUrl`` and ``thresholds`` sit beside the scenario options. Thresholds
        may be a list of ``{metric, op, bound}`` objects or expression strings,
        or a k6-style mapping such as ``{"http_req_failed": ["rate<0.01"]}``.
        """
        run_keys = {
            "baseUrl", "thresholds", "requestTimeout", "seed", "exactSampleLimit",
            "evaluationInterval", "vars", "statusPollPath", "statusPollInterval",
        }
        if "baseUrl" not in options:
            raise ConfigurationError("baseUrl is required")
        scenario = ScenarioConfig.from_dict(
            {key: value for key, value in options.items() if key not in run_keys}
        )

        raw_thresholds = options.get("thresholds") or []
        if isinstance(raw_thresholds, Mapping):
            thresholds = tuple(parse_k6_thresholds(raw_thresholds))
        else:
            thresholds = tuple(coerce_threshold(item) for item in raw_thresholds)

        kwargs: dict[str, Any] = {
            "base_url": str(options["baseUrl"]),
            "scenario": scenario,
            "thresholds": thresholds,
            "seed": optional_int(options, "seed"),
            "vars": dict(options.get("vars") or {}),
            "status_poll_path": options.get("statusPollPath"),
        }
        if "requestTimeout" in options:
            kwargs["request_timeout_s"] = parse_duration(options["requestTimeout"], "requestTimeout")
        if "exactSampleLimit" in options:
            kwargs["exact_sample_limit"] = optional_int(options, "exactSampleLimit")
        if "evaluationInterval" in options:
            kwargs["evaluation_interval_s"] = parse_duration(
                options["evaluationInterval"], "evaluationInterval"
            )
        if "statusPollInterval" in options:
            kwargs["status_poll_interval_s"] = parse_duration(
                options["statusPollInterval"], "statusPollInterval"
            )
        return cls(**kwargs)


class RunController:
    """
    Runs one scenario end to end and returns its verdict.

    Thresholds are validated here, so configuration errors surface before any
    request is sent. ``cancel()`` may be called from any thread.
    """

    def __init__(
        self,
        config: RunConfig,
        workload: Workload,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        status_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.config = config
        self.workload = workload
        self._transport = transport
        self._status_transport = status_transport if status_transport is not None else transport
        self._evaluator = ThresholdEvaluator(config.thresholds)
        self._metrics = MetricsCollector(exact_sample_limit=config.exact_sample_limit)
        self._scheduler: Optional[ScenarioScheduler] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._poller: Optional[QueueStatusPoller] = None
        self._status_rows: list[dict[str, Any]] = []
        self._cancel_lock = threading.Lock()
        self._cancelled = False
        self._aborted_by: Optional[str] = None
        self._verdict: Optional[RunVerdict] = None

    @property
    def metrics(self) -> MetricsCollector:
        return self._metrics

    @property
    def scheduler(self) -> Optional[ScenarioScheduler]:
        return self._scheduler

    @property
    def verdict(self) -> Optional[RunVerdict]:
        return self._verdict

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.state == STATE_RUNNING

    def current_snapshot(self) -> RunningStats:
        return self._metrics.snapshot()

    def status_rows(self) -> list[dict[str, Any]]:
        return list(self._status_rows)

    def cancel(self) -> None:
        """Request a graceful stop. Safe from other threads and signal handlers."""
        with self._cancel_lock:
            self._cancelled = True
            loop = self._loop
            scheduler = self._scheduler
        if loop is None or scheduler is None or loop.is_closed():
            return
        try:
            running_loop = asyncio.get_running_loop()
        except RuntimeError:
            running_loop = None
        if running_loop is loop:
            scheduler.request_stop()
        else:
            loop.call_soon_threadsafe(scheduler.request_stop)

    def serve_metrics(self, port: int, addr: str = "127.0.0.1") -> Any:
        return serve_live_metrics(self.current_snapshot, port=port, addr=addr)

    def run_sync(self) -> RunVerdict:
        return asyncio.run(self.run())

    async def run(self) -> RunVerdict:
        if self._verdict is not None or self._scheduler is not None:
            raise RuntimeError("RunController instances run once; create a new controller")
        config = self.config
        scenario = config.scenario
        logger.info(
            "Starting %s run against %s for %.1fs",
            scenario.execution_model,
            config.base_url,
            scenario.duration_s,
        )

        async with create_client(
            scenario.peak_concurrency, config.request_timeout_s, transport=self._transport
        ) as client:
            issuer = RequestIssuer(client, config.base_url, config.request_timeout_s)
            scheduler = ScenarioScheduler(
                scenario,
                self.workload,
                issuer,
                self._metrics,
                seed=config.seed,
                vars=config.vars,
            )
            with self._cancel_lock:
                self._loop = asyncio.get_running_loop()
                self._scheduler = scheduler

            if config.status_poll_path:
                self._poller = QueueStatusPoller(
                    config.base_url,
                    path=config.status_poll_path,
                    poll_interval_s=config.status_poll_interval_s,
                    request_timeout_s=min(config.request_timeout_s, 5.0),
                    transport=self._status_transport,
                )
                await self._poller.start()

            self._metrics.mark_started()
            await scheduler.start()
            try:
                if self._cancelled:
                    scheduler.request_stop()
                else:
                    await self._supervise(scheduler)
            finally:
                summary = await scheduler.drain()
                self._metrics.mark_finished()
                if self._poller is not None:
                    await self._poller.stop()
                    self._status_rows = await self._poller.rows()

        stats = self._metrics.snapshot()
        verdict = self._evaluator.evaluate(
            stats,
            cancelled=self._cancelled,
            aborted_by=self._aborted_by,
            scheduler=summary,
        )
        self._verdict = verdict
        if verdict.passed:
            logger.info("Run passed: %d requests, error rate %.4f", stats.total, stats.error_rate)
        else:
            logger.info(
                "Run failed: %s",
                ", ".join(
                    f"{result.spec.expression} (observed {result.observed})"
                    for result in verdict.violations
                ),
            )
        return verdict

    async def _supervise(self, scheduler: ScenarioScheduler) -> None:
        loop = asyncio.get_running_loop()
        started = loop.time()
        deadline = started + self.config.scenario.duration_s
        live_eval = self._evaluator.has_abort_thresholds

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            timeout = min(remaining, self.config.evaluation_interval_s) if live_eval else remaining
            if await scheduler.wait_stop_requested(timeout):
                logger.info("Run cancelled after %.2fs", loop.time() - started)
                break
            if live_eval:
                violations = self._evaluator.abort_violations(
                    self._metrics.snapshot(), loop.time() - started
                )
                if violations:
                    self._aborted_by = violations[0].spec.expression
                    logger.warning(
                        "Aborting run: threshold %s failed with observed %s",
                        self._aborted_by,
                        violations[0].observed,
                    )
                    break
        scheduler.request_stop()
