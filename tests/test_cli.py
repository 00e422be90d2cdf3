"""Tests for the enroll-loadtest command line."""

import json

import httpx
import pytest

import enroll_loadtest
from enroll_loadtest import EXIT_CONFIG_ERROR, EXIT_FAIL, EXIT_PASS, build_parser, build_run_config, main
from runner import RunController


def _patch_target(monkeypatch, handler):
    class MockedController(RunController):
        def __init__(self, config, workload):
            super().__init__(config, workload, transport=httpx.MockTransport(handler))

    monkeypatch.setattr(enroll_loadtest, "RunController", MockedController)


FAST_RUN = ["--duration", "0.3", "--think-time", "0", "--graceful-stop", "2s", "--timeout", "1s"]


class TestParser:
    def test_environment_defaults(self, monkeypatch):
        monkeypatch.setenv("BASE_URL", "http://lb.internal:9000")
        monkeypatch.setenv("VUS", "7")

        args = build_parser().parse_args(["baseline"])

        assert args.base_url == "http://lb.internal:9000"
        assert args.vus == 7

    def test_spike_options(self, monkeypatch):
        monkeypatch.delenv("DURATION", raising=False)
        args = build_parser().parse_args(
            ["spike", "--rate", "50", "--course-id", "3", "--threshold", "latency_p99<800"]
        )

        config = build_run_config(args)

        assert config.scenario.is_open_loop
        assert config.scenario.rate == 50.0
        assert config.scenario.duration_s == 60.0
        assert config.vars == {"course_id": 3}
        assert [spec.expression for spec in config.thresholds] == [
            "error_rate<0.01",
            "latency_p95<500",
            "latency_p99<800",
        ]

    def test_no_default_thresholds(self):
        args = build_parser().parse_args(["baseline", "--no-default-thresholds"])

        assert build_run_config(args).thresholds == ()

    def test_bad_threshold_is_a_usage_error(self):
        with pytest.raises(SystemExit) as excinfo:
            build_parser().parse_args(["baseline", "--threshold", "cpu<1"])

        assert excinfo.value.code == 2


class TestMain:
    def test_passing_run_writes_outputs(self, monkeypatch, tmp_path, capsys):
        _patch_target(monkeypatch, lambda request: httpx.Response(200, json=[]))

        code = main(
            ["baseline", "--vus", "2", *FAST_RUN, "--output-dir", str(tmp_path), "--run-name", "smoke", "--json"]
        )

        assert code == EXIT_PASS
        payload = json.loads(capsys.readouterr().out)
        assert payload["passed"] is True
        assert payload["stats"]["total"] > 0
        [run_dir] = list(tmp_path.glob("smoke_*"))
        assert (run_dir / "verdict.json").exists()
        assert "Verdict: **PASS**" in (run_dir / "summary.md").read_text(encoding="utf-8")

    def test_failing_run_exits_nonzero(self, monkeypatch, capsys):
        _patch_target(monkeypatch, lambda request: httpx.Response(500))

        code = main(["baseline", "--vus", "1", *FAST_RUN])

        assert code == EXIT_FAIL
        assert "run FAILED" in capsys.readouterr().out

    def test_spike_run(self, monkeypatch, capsys):
        _patch_target(monkeypatch, lambda request: httpx.Response(200, json={"ok": True}))

        code = main(["spike", "--rate", "50", "--vus", "5", "--max-vus", "20", "--seed", "3", *FAST_RUN])

        assert code == EXIT_PASS
        assert "✓ error_rate<0.01" in capsys.readouterr().out

    def test_configuration_error(self, capsys):
        code = main(["baseline", "--timeout", "40s"])

        assert code == EXIT_CONFIG_ERROR
        assert "graceful stop" in capsys.readouterr().err
