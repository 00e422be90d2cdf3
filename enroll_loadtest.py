from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from config import LOG_FORMAT, ConfigurationError, parse_duration
from report import format_verdict_text, verdict_to_dict, write_summary_markdown, write_verdict_json
from runner import RunConfig, RunController
from scenarios import DEFAULT_BASE_URL, courses_baseline_config, enroll_spike_config, workload_for
from thresholds import RunVerdict, ThresholdSpec, parse_threshold
from workloads import WORKLOADS, get_workload


logger = logging.getLogger(__name__)

EXIT_PASS = 0
EXIT_FAIL = 1
EXIT_CONFIG_ERROR = 2


def _positive_int(value: str) -> int:
    try:
        parsed = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Expected an integer, got {value!r}") from exc
    if parsed <= 0:
        raise argparse.ArgumentTypeError(f"Expected an integer > 0, got {parsed}")
    return parsed


def _positive_float(value: str) -> float:
    try:
        parsed = float(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Expected a number, got {value!r}") from exc
    if parsed <= 0:
        raise argparse.ArgumentTypeError(f"Expected a number > 0, got {parsed}")
    return parsed


def _duration(value: str) -> float:
    try:
        return parse_duration(value)
    except ConfigurationError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def _threshold(value: str) -> ThresholdSpec:
    try:
        return parse_threshold(value)
    except ConfigurationError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Load test the course-enrollment service with threshold-based verdicts."
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--base-url", default=os.environ.get("BASE_URL", DEFAULT_BASE_URL))
    common.add_argument(
        "--vus",
        type=_positive_int,
        default=os.environ.get("VUS", "100"),
        help="Workers for the baseline, pre-allocated workers for the spike.",
    )
    common.add_argument("--duration", type=_duration, default=None)
    common.add_argument("--think-time", type=_duration, default=_duration("0.1"))
    common.add_argument("--graceful-stop", type=_duration, default=_duration("30s"))
    common.add_argument("--timeout", type=_duration, default=_duration("10s"))
    common.add_argument(
        "--threshold",
        dest="thresholds",
        action="append",
        type=_threshold,
        default=[],
        help="Extra threshold such as error_rate<0.01 or latency_p99<800. Repeatable.",
    )
    common.add_argument(
        "--no-default-thresholds",
        action="store_true",
        help="Drop the scenario's built-in thresholds.",
    )
    common.add_argument(
        "--workload",
        choices=sorted(WORKLOADS),
        default=None,
        help="Replace the scenario's workload.",
    )
    common.add_argument("--seed", type=int, default=None)
    common.add_argument(
        "--poll-queue-status",
        action="store_true",
        help="Poll /lb/queue/status in the background during the run.",
    )
    common.add_argument("--metrics-port", type=int, default=None)
    common.add_argument("--output-dir", type=Path, default=None)
    common.add_argument("--run-name", default=None)
    common.add_argument("--json", action="store_true", help="Print the verdict as JSON.")
    common.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )

    subparsers = parser.add_subparsers(dest="scenario", required=True)
    subparsers.add_parser(
        "baseline",
        parents=[common],
        help="Closed-loop GET /lb/courses baseline.",
    )
    spike = subparsers.add_parser(
        "spike",
        parents=[common],
        help="Open-loop enrollment spike at a constant arrival rate.",
    )
    spike.add_argument("--rate", type=_positive_float, default=os.environ.get("RATE", "200"))
    spike.add_argument("--time-unit", type=_duration, default=_duration("1s"))
    spike.add_argument(
        "--max-vus", type=_positive_int, default=os.environ.get("MAX_VUS", "500")
    )
    spike.add_argument(
        "--course-id", type=_positive_int, default=os.environ.get("COURSE_ID", "1")
    )
    return parser


def build_run_config(args: argparse.Namespace) -> RunConfig:
    options: dict[str, Any] = {
        "think_time_s": args.think_time,
        "graceful_stop_s": args.graceful_stop,
        "request_timeout_s": args.timeout,
        "seed": args.seed,
    }
    if args.poll_queue_status:
        options["status_poll_path"] = "/lb/queue/status"

    if args.scenario == "baseline":
        duration = args.duration if args.duration is not None else os.environ.get("DURATION", "30s")
        config = courses_baseline_config(
            base_url=args.base_url,
            vus=args.vus,
            duration=duration,
            thresholds=[] if args.no_default_thresholds else None,
            **options,
        )
    else:
        duration = args.duration if args.duration is not None else os.environ.get("DURATION", "60s")
        config = enroll_spike_config(
            base_url=args.base_url,
            rate=args.rate,
            duration=duration,
            vus=args.vus,
            max_vus=args.max_vus,
            time_unit=args.time_unit,
            course_id=args.course_id,
            thresholds=[] if args.no_default_thresholds else None,
            **options,
        )
    if args.thresholds:
        config = replace(config, thresholds=config.thresholds + tuple(args.thresholds))
    return config


def _ensure_output_dir(base_output_dir: Path, run_name: Optional[str]) -> Path:
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    normalized_run_name = (run_name or "run").strip().replace(" ", "_")
    output_dir = base_output_dir / f"{normalized_run_name}_{timestamp}"
    output_dir.mkdir(parents=True, exist_ok=True)
    return output_dir


async def _run_controller(controller: RunController, metrics_port: Optional[int]) -> RunVerdict:
    loop = asyncio.get_running_loop()
    handled_signals: list[signal.Signals] = []
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, controller.cancel)
            handled_signals.append(signum)
        except (NotImplementedError, RuntimeError, ValueError):
            logger.debug("Cannot install handler for %s", signum)
    if metrics_port is not None:
        controller.serve_metrics(metrics_port)
        logger.info("Serving live metrics on port %d", metrics_port)
    try:
        return await controller.run()
    finally:
        for signum in handled_signals:
            loop.remove_signal_handler(signum)


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format=LOG_FORMAT)

    try:
        config = build_run_config(args)
        if args.workload is not None:
            workload = get_workload(args.workload)
        else:
            workload = workload_for(args.scenario, course_id=getattr(args, "course_id", 1))
        controller = RunController(config, workload)
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    verdict = asyncio.run(_run_controller(controller, args.metrics_port))
    status_rows = controller.status_rows()

    if args.output_dir is not None:
        output_dir = _ensure_output_dir(args.output_dir, args.run_name or args.scenario)
        write_verdict_json(output_dir / "verdict.json", verdict, status_rows)
        write_summary_markdown(
            output_path=output_dir / "summary.md",
            run_name=args.run_name or args.scenario,
            resolved_config=config.to_dict(),
            verdict=verdict,
            status_rows=status_rows,
        )
        logger.info("Outputs written to: %s", output_dir)

    if args.json:
        print(json.dumps(verdict_to_dict(verdict, status_rows), indent=2))
    else:
        print(format_verdict_text(verdict), end="")
    return verdict.exit_code


if __name__ == "__main__":
    sys.exit(main())
