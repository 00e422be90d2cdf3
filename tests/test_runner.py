"""End-to-end tests for RunController against a mock enrollment service."""

import asyncio
import itertools
import json
import threading
import time

import httpx
import pytest

from config import CLOSED_LOOP, ConfigurationError, ScenarioConfig
from runner import RunConfig, RunController
from scenarios import courses_baseline_config, enroll_spike_config, workload_for
from thresholds import ThresholdSpec
from workloads import courses_baseline


BASE_URL = "http://target.test"


def _closed_loop_config(duration_s=0.5, workers=2, graceful_stop_s=1.0, **kwargs):
    scenario = ScenarioConfig(
        execution_model=CLOSED_LOOP,
        duration_s=duration_s,
        workers=workers,
        think_time_s=0.0,
        graceful_stop_s=graceful_stop_s,
    )
    kwargs.setdefault("request_timeout_s", 0.5)
    return RunConfig(base_url=BASE_URL, scenario=scenario, **kwargs)


def enrollment_service(delay_s=0.005):
    """Mock of the enrollment load balancer."""

    async def handler(request):
        await asyncio.sleep(delay_s)
        if request.url.path == "/lb/enroll":
            body = json.loads(request.content)
            return httpx.Response(200, json={"enrolled": True, "userId": body["userId"]})
        if request.url.path == "/lb/queue/status":
            return httpx.Response(
                200,
                json={
                    "queueSize": 4,
                    "currentProcessing": 2,
                    "maxConcurrentRequests": 10,
                    "emaLatencyMs": 12.5,
                    "processedCount": 100,
                    "serverPort": 8081,
                },
            )
        return httpx.Response(200, json=[])

    return handler


def every_tenth_fails():
    counter = itertools.count(1)

    async def handler(request):
        await asyncio.sleep(0.001)
        if next(counter) % 10 == 0:
            return httpx.Response(500)
        return httpx.Response(200)

    return handler


class TestRunConfig:
    def test_request_timeout_must_fit_in_grace(self):
        scenario = ScenarioConfig(execution_model=CLOSED_LOOP, duration_s=1.0, graceful_stop_s=5.0)

        with pytest.raises(ConfigurationError, match="graceful stop"):
            RunConfig(base_url=BASE_URL, scenario=scenario, request_timeout_s=5.0)

    def test_base_url_must_be_http(self):
        scenario = ScenarioConfig(execution_model=CLOSED_LOOP, duration_s=1.0)

        with pytest.raises(ConfigurationError, match="base URL"):
            RunConfig(base_url="ftp://target.test", scenario=scenario)

    def test_from_dict_with_k6_thresholds(self):
        config = RunConfig.from_dict(
            {
                "baseUrl": BASE_URL,
                "executor": "constant-arrival-rate",
                "rate": 200,
                "timeUnit": "1s",
                "duration": "1m",
                "preAllocatedVUs": 100,
                "maxVUs": 500,
                "requestTimeout": "5s",
                "thresholds": {
                    "http_req_failed": ["rate<0.01"],
                    "http_req_duration": ["p(95)<500"],
                },
                "vars": {"course_id": 2},
            }
        )

        assert config.scenario.max_workers == 500
        assert config.request_timeout_s == 5.0
        assert config.thresholds == (
            ThresholdSpec("error_rate", "<", 0.01),
            ThresholdSpec("latency_p95", "<", 500.0),
        )
        assert config.vars == {"course_id": 2}
        assert config.to_dict()["scenario"]["rate"] == 200.0

    def test_from_dict_with_threshold_list(self):
        config = RunConfig.from_dict(
            {
                "baseUrl": BASE_URL,
                "executionModel": "closed-loop",
                "workers": 3,
                "duration": "10s",
                "thresholds": ["error_rate<0.05", {"metric": "latency_avg", "op": "<", "bound": 100}],
            }
        )

        assert [spec.metric for spec in config.thresholds] == ["error_rate", "latency_avg"]

    def test_from_dict_requires_base_url(self):
        with pytest.raises(ConfigurationError, match="baseUrl"):
            RunConfig.from_dict({"executor": "constant-vus", "duration": "1s"})

    def test_unknown_threshold_metric(self):
        with pytest.raises(ConfigurationError, match="cpu_usage"):
            RunConfig.from_dict(
                {
                    "baseUrl": BASE_URL,
                    "executor": "constant-vus",
                    "duration": "1s",
                    "thresholds": ["cpu_usage<0.5"],
                }
            )

    def test_thresholds_must_be_parsed_specs(self):
        with pytest.raises(ConfigurationError, match="ThresholdSpec"):
            _closed_loop_config(thresholds=("error_rate<0.01",))

    @pytest.mark.parametrize("seed", ["abc", 1.5, True, [1]])
    def test_seed_must_be_an_integer(self, seed):
        options = {"baseUrl": BASE_URL, "executor": "constant-vus", "duration": "1s", "seed": seed}

        with pytest.raises(ConfigurationError, match="seed"):
            RunConfig.from_dict(options)

    def test_seed_accepted_from_options(self):
        config = RunConfig.from_dict(
            {"baseUrl": BASE_URL, "executor": "constant-vus", "duration": "1s", "seed": "42"}
        )

        assert config.seed == 42

    def test_seed_checked_on_direct_construction(self):
        with pytest.raises(ConfigurationError, match="seed"):
            _closed_loop_config(seed="abc")

    @pytest.mark.parametrize("limit", ["lots", 2.5, False])
    def test_exact_sample_limit_must_be_an_integer(self, limit):
        options = {"baseUrl": BASE_URL, "executor": "constant-vus", "duration": "1s", "exactSampleLimit": limit}

        with pytest.raises(ConfigurationError, match="exactSampleLimit"):
            RunConfig.from_dict(options)

    def test_exact_sample_limit_from_options(self):
        config = RunConfig.from_dict(
            {"baseUrl": BASE_URL, "executor": "constant-vus", "duration": "1s", "exactSampleLimit": 500}
        )

        assert config.exact_sample_limit == 500


class TestScenarioPresets:
    def test_baseline_preset(self):
        config = courses_baseline_config(BASE_URL, vus=100, duration="30s")

        assert config.scenario.execution_model == CLOSED_LOOP
        assert config.scenario.workers == 100
        assert config.scenario.think_time_s == pytest.approx(0.1)
        assert [spec.expression for spec in config.thresholds] == [
            "error_rate<0.01",
            "latency_p95<300",
        ]

    def test_spike_preset(self):
        config = enroll_spike_config(BASE_URL, rate=200, duration="60s", course_id=4)

        assert config.scenario.is_open_loop
        assert config.scenario.min_workers == 100
        assert config.scenario.max_workers == 500
        assert config.scenario.total_ticks == 12_000
        assert config.vars == {"course_id": 4}
        assert [spec.expression for spec in config.thresholds] == [
            "error_rate<0.01",
            "latency_p95<500",
        ]

    def test_unknown_scenario(self):
        with pytest.raises(ConfigurationError):
            workload_for("soak")


class TestRunController:
    @pytest.mark.anyio
    async def test_enrollment_spike_passes(self):
        config = enroll_spike_config(
            BASE_URL,
            rate=200,
            duration=1.0,
            vus=100,
            max_vus=500,
            think_time_s=0.0,
            graceful_stop_s=2.0,
            request_timeout_s=1.0,
            seed=42,
        )
        controller = RunController(config, workload_for("spike"), transport=httpx.MockTransport(enrollment_service()))

        verdict = await controller.run()

        stats = verdict.stats
        assert verdict.passed
        assert not verdict.cancelled
        assert verdict.exit_code == 0
        assert stats.endpoints["enroll"].total >= 190
        assert stats.error_rate == 0.0
        assert stats.check_rate == 1.0
        assert stats.capacity_exhausted == 0
        assert verdict.scheduler.peak_workers <= 500
        assert controller.verdict is verdict

    @pytest.mark.anyio
    async def test_error_rate_violation(self):
        config = _closed_loop_config(
            duration_s=0.5,
            workers=1,
            thresholds=(ThresholdSpec("error_rate", "<", 0.01),),
        )
        controller = RunController(config, courses_baseline, transport=httpx.MockTransport(every_tenth_fails()))

        verdict = await controller.run()

        assert not verdict.passed
        assert verdict.exit_code == 1
        assert verdict.stats.total >= 50
        [violation] = verdict.violations
        assert violation.spec.metric == "error_rate"
        assert violation.observed == pytest.approx(0.1, abs=0.02)

    @pytest.mark.anyio
    async def test_cancel_stops_within_grace(self):
        config = _closed_loop_config(duration_s=30.0, workers=4, graceful_stop_s=1.0)
        controller = RunController(
            config, courses_baseline, transport=httpx.MockTransport(enrollment_service(delay_s=0.01))
        )

        task = asyncio.create_task(controller.run())
        await asyncio.sleep(0.2)
        assert controller.is_running
        started = time.monotonic()
        controller.cancel()
        verdict = await asyncio.wait_for(task, timeout=5.0)

        assert time.monotonic() - started < 1.5
        assert verdict.cancelled
        assert verdict.stats.total > 0
        assert verdict.stats.abandoned_requests == 0
        assert not controller.is_running

    def test_cancel_from_another_thread(self):
        config = _closed_loop_config(duration_s=30.0, workers=2, graceful_stop_s=1.0)
        controller = RunController(
            config, courses_baseline, transport=httpx.MockTransport(enrollment_service(delay_s=0.01))
        )
        timer = threading.Timer(0.3, controller.cancel)
        timer.start()
        started = time.monotonic()
        try:
            verdict = controller.run_sync()
        finally:
            timer.cancel()

        assert time.monotonic() - started < 5.0
        assert verdict.cancelled

    @pytest.mark.anyio
    async def test_abort_on_fail_stops_early(self):
        def failing(request):
            return httpx.Response(503)

        config = _closed_loop_config(
            duration_s=30.0,
            thresholds=(ThresholdSpec("error_rate", "<", 0.01, abort_on_fail=True),),
            evaluation_interval_s=0.05,
        )
        controller = RunController(config, courses_baseline, transport=httpx.MockTransport(failing))

        started = time.monotonic()
        verdict = await controller.run()

        assert time.monotonic() - started < 5.0
        assert verdict.aborted_by == "error_rate<0.01"
        assert not verdict.passed
        assert not verdict.cancelled

    @pytest.mark.anyio
    async def test_snapshot_while_running(self):
        config = _closed_loop_config(duration_s=30.0, workers=2)
        controller = RunController(
            config, courses_baseline, transport=httpx.MockTransport(enrollment_service(delay_s=0.005))
        )

        task = asyncio.create_task(controller.run())
        await asyncio.sleep(0.3)
        first = controller.current_snapshot()
        await asyncio.sleep(0.1)
        second = controller.current_snapshot()
        controller.cancel()
        verdict = await asyncio.wait_for(task, timeout=5.0)

        assert 0 < first.total <= second.total <= verdict.stats.total
        assert first.elapsed_s > 0

    @pytest.mark.anyio
    async def test_controller_runs_once(self):
        config = _closed_loop_config(duration_s=0.1)
        controller = RunController(config, courses_baseline, transport=httpx.MockTransport(enrollment_service()))
        await controller.run()

        with pytest.raises(RuntimeError):
            await controller.run()

    @pytest.mark.anyio
    async def test_queue_status_polling(self):
        config = _closed_loop_config(
            duration_s=0.3,
            status_poll_path="/lb/queue/status",
            status_poll_interval_s=0.05,
        )
        controller = RunController(config, courses_baseline, transport=httpx.MockTransport(enrollment_service()))

        await controller.run()
        rows = controller.status_rows()

        assert len(rows) >= 2
        assert all(row["poll_ok"] for row in rows)
        assert rows[0]["queue_size"] == 4.0
        assert rows[0]["server_port"] == 8081

    @pytest.mark.anyio
    async def test_unreachable_target_is_reported_not_raised(self):
        def refused(request):
            raise httpx.ConnectError("connection refused", request=request)

        config = _closed_loop_config(duration_s=0.2, workers=1)
        controller = RunController(config, courses_baseline, transport=httpx.MockTransport(refused))

        verdict = await controller.run()

        assert verdict.stats.total > 0
        assert verdict.stats.status_counts["transport_error"] == verdict.stats.total
        assert verdict.stats.http_status_counts == {0: verdict.stats.total}
