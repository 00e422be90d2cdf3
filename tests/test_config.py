"""Tests for duration parsing and scenario configuration."""

import math

import pytest

from config import CLOSED_LOOP, OPEN_LOOP, ConfigurationError, ScenarioConfig, parse_duration


class TestParseDuration:
    @pytest.mark.parametrize(
        "value, expected",
        [
            (2, 2.0),
            (0.25, 0.25),
            ("1.5", 1.5),
            ("500ms", 0.5),
            ("30s", 30.0),
            ("1m30s", 90.0),
            ("2h", 7200.0),
            (" 10S ", 10.0),
        ],
    )
    def test_accepts_numbers_and_duration_strings(self, value, expected):
        assert parse_duration(value) == pytest.approx(expected)

    @pytest.mark.parametrize("value", ["abc", "10 seconds", "-1s", -1, True, None, float("inf")])
    def test_rejects_invalid_values(self, value):
        with pytest.raises(ConfigurationError):
            parse_duration(value)

    def test_error_names_the_option(self):
        with pytest.raises(ConfigurationError, match="gracefulStop"):
            parse_duration("soon", "gracefulStop")


class TestScenarioConfig:
    def test_closed_loop_defaults(self):
        config = ScenarioConfig(execution_model=CLOSED_LOOP, duration_s=30.0, workers=100)

        assert not config.is_open_loop
        assert config.tick_interval_s is None
        assert config.total_ticks is None
        assert config.peak_concurrency == 100

    def test_open_loop_tick_schedule(self):
        config = ScenarioConfig(
            execution_model=OPEN_LOOP,
            duration_s=1.0,
            rate=200.0,
            time_unit_s=1.0,
            min_workers=100,
            max_workers=500,
        )

        assert config.tick_interval_s == pytest.approx(0.005)
        assert config.total_ticks == 200
        assert config.peak_concurrency == 500

    def test_open_loop_rate_per_time_unit(self):
        config = ScenarioConfig(
            execution_model=OPEN_LOOP, duration_s=60.0, rate=30.0, time_unit_s=60.0
        )

        assert config.tick_interval_s == pytest.approx(2.0)
        assert config.total_ticks == 30

    def test_partial_interval_still_gets_a_tick(self):
        config = ScenarioConfig(execution_model=OPEN_LOOP, duration_s=1.01, rate=1.0)

        assert config.total_ticks == 2

    def test_unbounded_pool_has_no_peak(self):
        config = ScenarioConfig(execution_model=OPEN_LOOP, duration_s=1.0, rate=10.0)

        assert config.max_workers is None
        assert config.peak_concurrency is None

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"execution_model": "ramping", "duration_s": 1.0},
            {"execution_model": CLOSED_LOOP, "duration_s": 0.0},
            {"execution_model": CLOSED_LOOP, "duration_s": math.inf},
            {"execution_model": CLOSED_LOOP, "duration_s": 1.0, "workers": 0},
            {"execution_model": CLOSED_LOOP, "duration_s": 1.0, "graceful_stop_s": 0.0},
            {"execution_model": CLOSED_LOOP, "duration_s": 1.0, "think_time_s": -0.1},
            {"execution_model": OPEN_LOOP, "duration_s": 1.0},
            {"execution_model": OPEN_LOOP, "duration_s": 1.0, "rate": 0.0},
            {"execution_model": OPEN_LOOP, "duration_s": 1.0, "rate": 5.0, "time_unit_s": 0.0},
            {
                "execution_model": OPEN_LOOP,
                "duration_s": 1.0,
                "rate": 5.0,
                "min_workers": 10,
                "max_workers": 5,
            },
            {
                "execution_model": OPEN_LOOP,
                "duration_s": 1.0,
                "rate": 5.0,
                "max_catchup_ticks": -1,
            },
        ],
    )
    def test_invalid_configurations_raise(self, kwargs):
        with pytest.raises(ConfigurationError):
            ScenarioConfig(**kwargs)


class TestScenarioFromDict:
    def test_k6_option_names(self):
        config = ScenarioConfig.from_dict(
            {
                "executor": "constant-arrival-rate",
                "rate": 200,
                "timeUnit": "1s",
                "duration": "1m",
                "preAllocatedVUs": 100,
                "maxVUs": 500,
                "gracefulStop": "10s",
            }
        )

        assert config.execution_model == OPEN_LOOP
        assert config.rate == 200.0
        assert config.time_unit_s == 1.0
        assert config.duration_s == 60.0
        assert config.min_workers == 100
        assert config.max_workers == 500
        assert config.graceful_stop_s == 10.0

    def test_camel_case_names(self):
        config = ScenarioConfig.from_dict(
            {
                "executionModel": "closed-loop",
                "workers": 4,
                "duration": "30s",
                "thinkTime": "100ms",
            }
        )

        assert config.execution_model == CLOSED_LOOP
        assert config.workers == 4
        assert config.think_time_s == pytest.approx(0.1)

    def test_unknown_options_are_rejected(self):
        with pytest.raises(ConfigurationError, match="stages"):
            ScenarioConfig.from_dict({"executor": "constant-vus", "duration": "1s", "stages": []})

    def test_unknown_executor(self):
        with pytest.raises(ConfigurationError, match="ramping-vus"):
            ScenarioConfig.from_dict({"executor": "ramping-vus", "duration": "1s"})

    def test_missing_duration(self):
        with pytest.raises(ConfigurationError, match="duration"):
            ScenarioConfig.from_dict({"executor": "constant-vus", "vus": 1})

    def test_fractional_worker_count(self):
        with pytest.raises(ConfigurationError, match="vus"):
            ScenarioConfig.from_dict({"executor": "constant-vus", "vus": 1.5, "duration": "1s"})
