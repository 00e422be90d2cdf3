from __future__ import annotations

import json
import math
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from collector import REPORTED_PERCENTILES, RunningStats
from status_poller import QUEUE_STATUS_FIELDS, summarize_queue_rows
from thresholds import RunVerdict


def _fmt(value: Optional[float], digits: int = 2) -> str:
    if value is None or math.isnan(value):
        return "-"
    return f"{value:.{digits}f}"


def _ms(value: Optional[float]) -> str:
    if value is None:
        return "-"
    return f"{value:.2f}ms"


def verdict_to_dict(
    verdict: RunVerdict,
    status_rows: Optional[list[dict[str, Any]]] = None,
) -> dict[str, Any]:
    payload = verdict.to_dict()
    payload["exit_code"] = verdict.exit_code
    if status_rows:
        payload["queue_status"] = summarize_queue_rows(status_rows)
    return payload


def write_verdict_json(
    output_path: Path,
    verdict: RunVerdict,
    status_rows: Optional[list[dict[str, Any]]] = None,
) -> None:
    output_path.write_text(
        json.dumps(verdict_to_dict(verdict, status_rows), indent=2), encoding="utf-8"
    )


def _latency_line(stats: RunningStats) -> str:
    parts = [
        f"avg={_ms(stats.latency_avg_ms)}",
        f"min={_ms(stats.latency_min_ms)}",
        f"med={_ms(stats.latency_percentile(50.0))}",
        f"max={_ms(stats.latency_max_ms)}",
    ]
    for pct in REPORTED_PERCENTILES:
        if pct == 50.0:
            continue
        parts.append(f"p({pct:g})={_ms(stats.latency_percentile(pct))}")
    suffix = " (approx)" if stats.is_approximate else ""
    return " ".join(parts) + suffix


def format_verdict_text(verdict: RunVerdict) -> str:
    """End-of-run summary in the spirit of a k6 console report."""
    stats = verdict.stats
    lines: list[str] = []
    status = "PASSED" if verdict.passed else "FAILED"
    if verdict.aborted_by:
        status += f" (aborted by {verdict.aborted_by})"
    elif verdict.cancelled:
        status += " (cancelled)"
    lines.append(f"run {status}")
    lines.append("")

    for result in verdict.results:
        marker = "✓" if result.passed else "✗"
        lines.append(
            f"  {marker} {result.spec.expression:<28} observed={_fmt(result.observed, 4)}"
        )
    if verdict.results:
        lines.append("")

    rps = stats.requests_per_second
    lines.append(
        f"  requests.............: {stats.total} ({_fmt(rps)}/s)"
    )
    lines.append(
        f"  failed...............: {_fmt(stats.error_rate * 100.0)}% ({stats.error_count} of {stats.total})"
    )
    if stats.check_count:
        lines.append(
            f"  checks...............: {_fmt((stats.check_rate or 0.0) * 100.0)}% "
            f"({stats.checks_passed} of {stats.check_count})"
        )
    lines.append(f"  latency..............: {_latency_line(stats)}")
    lines.append(
        f"  iterations...........: {stats.iterations} ({stats.iteration_errors} failed)"
    )
    lines.append(
        "  dropped_iterations...: "
        + ", ".join(f"{reason}={count}" for reason, count in stats.dropped_iterations.items())
    )
    lines.append(f"  abandoned_requests...: {stats.abandoned_requests}")
    if verdict.scheduler is not None:
        summary = verdict.scheduler
        lines.append(
            f"  workers..............: peak {summary.peak_workers}, "
            f"peak busy {summary.peak_busy_workers}, spawned {summary.workers_spawned}, "
            f"reclaimed {summary.workers_reclaimed}"
        )
    lines.append(f"  duration.............: {_fmt(stats.elapsed_s)}s")
    return "\n".join(lines) + "\n"


def write_summary_markdown(
    output_path: Path,
    run_name: str,
    resolved_config: dict[str, Any],
    verdict: RunVerdict,
    status_rows: Optional[list[dict[str, Any]]] = None,
) -> None:
    generated_at = datetime.now(timezone.utc).isoformat()
    stats = verdict.stats
    lines: list[str] = []
    lines.append(f"# Load Test Summary - {run_name}")
    lines.append("")
    lines.append(f"Generated at (UTC): `{generated_at}`")
    lines.append("")
    lines.append(f"Verdict: **{'PASS' if verdict.passed else 'FAIL'}**")
    lines.append("")
    lines.append("## Configuration")
    lines.append("")
    lines.append("```json")
    lines.append(json.dumps(resolved_config, indent=2, default=str))
    lines.append("```")
    lines.append("")
    lines.append("## Thresholds")
    lines.append("")
    lines.append("| Threshold | Observed | Result |")
    lines.append("|---|---:|---|")
    for result in verdict.results:
        lines.append(
            f"| `{result.spec.expression}` | {_fmt(result.observed, 4)} | "
            f"{'pass' if result.passed else 'FAIL'} |"
        )
    lines.append("")
    lines.append("## Requests")
    lines.append("")
    lines.append(
        "| Req | Error % | Req/s | Avg ms | p50 ms | p90 ms | p95 ms | p99 ms | Max ms | Dropped | Abandoned |"
    )
    lines.append("|---:|---:|---:|---:|---:|---:|---:|---:|---:|---:|---:|")
    lines.append(
        "| "
        f"{stats.total} | "
        f"{_fmt(stats.error_rate * 100.0)} | "
        f"{_fmt(stats.requests_per_second)} | "
        f"{_fmt(stats.latency_avg_ms)} | "
        f"{_fmt(stats.latency_percentile(50.0))} | "
        f"{_fmt(stats.latency_percentile(90.0))} | "
        f"{_fmt(stats.latency_percentile(95.0))} | "
        f"{_fmt(stats.latency_percentile(99.0))} | "
        f"{_fmt(stats.latency_max_ms)} | "
        f"{stats.dropped_total} | "
        f"{stats.abandoned_requests} |"
    )
    lines.append("")
    lines.append("## Endpoints")
    lines.append("")
    lines.append("| Name | Req | Errors | Error % |")
    lines.append("|---|---:|---:|---:|")
    for name, counts in sorted(stats.endpoints.items()):
        lines.append(
            f"| {name} | {counts.total} | {counts.errors} | {_fmt(counts.error_rate * 100.0)} |"
        )

    if status_rows:
        queue = summarize_queue_rows(status_rows)
        lines.append("")
        lines.append("## Queue Stats")
        lines.append("")
        lines.append("| Field | min | mean | max |")
        lines.append("|---|---:|---:|---:|")
        for attribute in QUEUE_STATUS_FIELDS.values():
            lines.append(
                f"| {attribute} | {_fmt(queue[f'{attribute}_min'])} | "
                f"{_fmt(queue[f'{attribute}_mean'])} | {_fmt(queue[f'{attribute}_max'])} |"
            )
        lines.append("")
        lines.append(
            f"Polls: {int(queue['polls'] or 0)} ({int(queue['failed_polls'] or 0)} failed)"
        )

    output_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
