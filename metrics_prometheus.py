from __future__ import annotations

from typing import Any, Callable, Iterator

from prometheus_client import CollectorRegistry, generate_latest, start_http_server
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily, Metric

from collector import REPORTED_PERCENTILES, RunningStats


class RunningStatsCollector:
    """Exposes the collector's live snapshot in Prometheus exposition format."""

    def __init__(self, snapshot_fn: Callable[[], RunningStats], namespace: str = "loadtest") -> None:
        self._snapshot_fn = snapshot_fn
        self.namespace = namespace

    def _name(self, suffix: str) -> str:
        return f"{self.namespace}_{suffix}"

    def collect(self) -> Iterator[Metric]:
        stats = self._snapshot_fn()

        requests = CounterMetricFamily(
            self._name("requests"), "Requests issued, by outcome status.", labels=["status"]
        )
        for status, count in stats.status_counts.items():
            requests.add_metric([status], float(count))
        yield requests

        responses = CounterMetricFamily(
            self._name("http_responses"), "Responses by HTTP status code, 0 for transport errors.", labels=["code"]
        )
        for code, count in sorted(stats.http_status_counts.items()):
            responses.add_metric([str(code)], float(count))
        yield responses

        yield GaugeMetricFamily(
            self._name("error_rate"), "Fraction of failed requests.", value=stats.error_rate
        )

        latency = GaugeMetricFamily(
            self._name("latency_ms"), "Request latency percentiles in milliseconds.", labels=["quantile"]
        )
        for pct in REPORTED_PERCENTILES:
            value = stats.latency_percentile(pct)
            if value is not None:
                latency.add_metric([f"{pct / 100.0:g}"], value)
        yield latency

        yield CounterMetricFamily(
            self._name("iterations"), "Workload iterations completed.", value=float(stats.iterations)
        )

        dropped = CounterMetricFamily(
            self._name("dropped_iterations"), "Scheduled iterations that were not run.", labels=["reason"]
        )
        for reason, count in stats.dropped_iterations.items():
            dropped.add_metric([reason], float(count))
        yield dropped

        checks = CounterMetricFamily(
            self._name("checks"), "Response checks by result.", labels=["result"]
        )
        checks.add_metric(["pass"], float(stats.checks_passed))
        checks.add_metric(["fail"], float(stats.checks_failed))
        yield checks

        yield CounterMetricFamily(
            self._name("data_received_bytes"), "Response bytes received.", value=float(stats.bytes_received)
        )
        yield CounterMetricFamily(
            self._name("data_sent_bytes"), "Request body bytes sent.", value=float(stats.bytes_sent)
        )
        yield GaugeMetricFamily(
            self._name("elapsed_seconds"), "Seconds since the run started.", value=stats.elapsed_s
        )


def build_registry(snapshot_fn: Callable[[], RunningStats], namespace: str = "loadtest") -> CollectorRegistry:
    registry = CollectorRegistry()
    registry.register(RunningStatsCollector(snapshot_fn, namespace=namespace))
    return registry


def render_latest(snapshot_fn: Callable[[], RunningStats], namespace: str = "loadtest") -> str:
    return generate_latest(build_registry(snapshot_fn, namespace)).decode("utf-8")


def serve_live_metrics(
    snapshot_fn: Callable[[], RunningStats],
    port: int,
    addr: str = "127.0.0.1",
    namespace: str = "loadtest",
) -> Any:
    return start_http_server(port, addr=addr, registry=build_registry(snapshot_fn, namespace))
