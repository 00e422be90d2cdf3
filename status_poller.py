from __future__ import annotations

import asyncio
import logging
import statistics
import time
from dataclasses import asdict, dataclass
from typing import Any, Optional

import httpx

from loadgen import now_unix_ms, resolve_url


logger = logging.getLogger(__name__)

# Fields reported by the target's GET /lb/queue/status.
QUEUE_STATUS_FIELDS = {
    "queueSize": "queue_size",
    "currentProcessing": "current_processing",
    "maxConcurrentRequests": "max_concurrent_requests",
    "emaLatencyMs": "ema_latency_ms",
    "processedCount": "processed_count",
}


def _to_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


@dataclass
class QueueStatusSnapshot:
    timestamp_unix_ms: int
    source: str
    poll_ok: bool
    poll_error: Optional[str]
    queue_size: Optional[float] = None
    current_processing: Optional[float] = None
    max_concurrent_requests: Optional[float] = None
    ema_latency_ms: Optional[float] = None
    processed_count: Optional[float] = None
    server_port: Optional[int] = None

    def to_row(self) -> dict[str, Any]:
        return asdict(self)


def parse_queue_status(payload: Any, source: str, timestamp_unix_ms: int) -> QueueStatusSnapshot:
    if not isinstance(payload, dict):
        return QueueStatusSnapshot(
            timestamp_unix_ms=timestamp_unix_ms,
            source=source,
            poll_ok=False,
            poll_error="queue status is not a JSON object",
        )
    values = {
        attribute: _to_float(payload.get(key)) for key, attribute in QUEUE_STATUS_FIELDS.items()
    }
    port = payload.get("serverPort")
    return QueueStatusSnapshot(
        timestamp_unix_ms=timestamp_unix_ms,
        source=source,
        poll_ok=True,
        poll_error=None,
        server_port=port if isinstance(port, int) and not isinstance(port, bool) else None,
        **values,
    )


def summarize_queue_rows(rows: list[dict[str, Any]]) -> dict[str, Optional[float]]:
    """min/mean/max of every queue field over the successful polls."""
    summary: dict[str, Optional[float]] = {}
    ok_rows = [row for row in rows if row.get("poll_ok")]
    summary["polls"] = float(len(rows))
    summary["failed_polls"] = float(len(rows) - len(ok_rows))
    for attribute in QUEUE_STATUS_FIELDS.values():
        values = [float(row[attribute]) for row in ok_rows if row.get(attribute) is not None]
        if values:
            summary[f"{attribute}_min"] = float(min(values))
            summary[f"{attribute}_mean"] = float(statistics.fmean(values))
            summary[f"{attribute}_max"] = float(max(values))
        else:
            summary[f"{attribute}_min"] = None
            summary[f"{attribute}_mean"] = None
            summary[f"{attribute}_max"] = None
    return summary


class QueueStatusPoller:
    """Polls the target's queue status in the background; failures become rows, not errors."""

    def __init__(
        self,
        base_url: str,
        path: str = "/lb/queue/status",
        poll_interval_s: float = 1.0,
        request_timeout_s: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = resolve_url(base_url, path)
        self.poll_interval_s = poll_interval_s
        self.request_timeout_s = request_timeout_s
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._task: Optional[asyncio.Task[None]] = None
        self._rows: list[dict[str, Any]] = []
        self._lock = asyncio.Lock()
        self._stop_event = asyncio.Event()

    async def start(self) -> None:
        if self._task is not None:
            return
        self._client = httpx.AsyncClient(timeout=self.request_timeout_s, transport=self._transport)
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def snapshot(self, source: str = "snapshot") -> QueueStatusSnapshot:
        snapshot = await self._poll_once(source=source)
        async with self._lock:
            self._rows.append(snapshot.to_row())
        return snapshot

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            loop_started = time.monotonic()
            await self.snapshot(source="poll")
            elapsed = time.monotonic() - loop_started
            sleep_for = max(0.0, self.poll_interval_s - elapsed)
            if sleep_for <= 0.0:
                continue
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=sleep_for)
            except asyncio.TimeoutError:
                pass

    async def _poll_once(self, source: str) -> QueueStatusSnapshot:
        timestamp_unix_ms = now_unix_ms()
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.request_timeout_s, transport=self._transport)

        try:
            response = await self._client.get(self.url, timeout=self.request_timeout_s)
            if response.status_code != 200:
                return QueueStatusSnapshot(
                    timestamp_unix_ms=timestamp_unix_ms,
                    source=source,
                    poll_ok=False,
                    poll_error=f"HTTP {response.status_code}",
                )
            return parse_queue_status(response.json(), source, timestamp_unix_ms)
        except Exception as exc:  # noqa: BLE001
            logger.debug("Queue status poll failed: %s", exc)
            return QueueStatusSnapshot(
                timestamp_unix_ms=timestamp_unix_ms,
                source=source,
                poll_ok=False,
                poll_error=str(exc) or exc.__class__.__name__,
            )

    async def rows(self) -> list[dict[str, Any]]:
        async with self._lock:
            return list(self._rows)
