from __future__ import annotations

import json
import logging
import math
import time
from dataclasses import asdict, dataclass
from typing import Any, Mapping, Optional

import httpx


logger = logging.getLogger(__name__)

STATUS_OK = "ok"
STATUS_HTTP_ERROR = "http_error"
STATUS_TRANSPORT_ERROR = "transport_error"
STATUS_TIMEOUT = "timeout"
STATUS_ABANDONED = "abandoned"
OUTCOME_STATUSES = (
    STATUS_OK,
    STATUS_HTTP_ERROR,
    STATUS_TRANSPORT_ERROR,
    STATUS_TIMEOUT,
    STATUS_ABANDONED,
)
# Statuses where a response arrived and the latency is meaningful.
RESPONDED_STATUSES = (STATUS_OK, STATUS_HTTP_ERROR)

TRANSPORT_ERROR_HTTP_STATUS = 0


def now_unix_ms() -> int:
    return int(time.time() * 1000)


def percentile_of_sorted(ordered: list[float] | tuple[float, ...], pct: float) -> Optional[float]:
    """Linear-interpolated percentile of an already sorted sequence."""
    if not ordered:
        return None
    if pct <= 0:
        return float(ordered[0])
    if pct >= 100:
        return float(ordered[-1])
    index = (len(ordered) - 1) * (pct / 100.0)
    low = math.floor(index)
    high = math.ceil(index)
    if low == high:
        return float(ordered[low])
    fraction = index - low
    return float((ordered[low] * (1.0 - fraction)) + (ordered[high] * fraction))


def resolve_url(base_url: str, url: str) -> str:
    if url.startswith(("http://", "https://")):
        return url
    return f"{base_url.rstrip('/')}/{url.lstrip('/')}"


@dataclass(frozen=True)
class RequestSpec:
    method: str
    url: str
    body: Any = None
    headers: tuple[tuple[str, str], ...] = ()
    name: Optional[str] = None
    expected_status: Optional[int] = None

    @classmethod
    def build(
        cls,
        method: str,
        url: str,
        body: Any = None,
        headers: Optional[Mapping[str, str]] = None,
        name: Optional[str] = None,
        expected_status: Optional[int] = None,
    ) -> "RequestSpec":
        return cls(
            method=method.upper(),
            url=url,
            body=body,
            headers=tuple((headers or {}).items()),
            name=name,
            expected_status=expected_status,
        )

    @property
    def tag(self) -> str:
        return self.name or f"{self.method} {self.url}"

    def encoded_body(self) -> Optional[bytes]:
        if self.body is None:
            return None
        if isinstance(self.body, bytes):
            return self.body
        if isinstance(self.body, str):
            return self.body.encode("utf-8")
        return json.dumps(self.body, separators=(",", ":")).encode("utf-8")

    def header_dict(self) -> dict[str, str]:
        headers = dict(self.headers)
        if self.body is not None and not isinstance(self.body, (bytes, str)):
            if not any(key.lower() == "content-type" for key in headers):
                headers["Content-Type"] = "application/json"
        return headers


@dataclass(frozen=True)
class RequestOutcome:
    name: str
    method: str
    url: str
    status: str
    http_status: int
    latency_ms: float
    timestamp_unix_ms: int
    bytes_received: int = 0
    bytes_sent: int = 0
    error: Optional[str] = None
    check_passed: Optional[bool] = None

    @property
    def is_error(self) -> bool:
        return self.status != STATUS_OK

    @property
    def responded(self) -> bool:
        return self.status in RESPONDED_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def classify_http_status(http_status: int) -> str:
    if 200 <= http_status < 300:
        return STATUS_OK
    return STATUS_HTTP_ERROR


def abandoned_outcome(
    spec: RequestSpec,
    base_url: str,
    started_monotonic: float,
    timestamp_unix_ms: int,
) -> RequestOutcome:
    """Terminal outcome for a request still in flight when the drain grace expired."""
    body = spec.encoded_body()
    return RequestOutcome(
        name=spec.tag,
        method=spec.method,
        url=resolve_url(base_url, spec.url),
        status=STATUS_ABANDONED,
        http_status=TRANSPORT_ERROR_HTTP_STATUS,
        latency_ms=(time.monotonic() - started_monotonic) * 1000.0,
        timestamp_unix_ms=timestamp_unix_ms,
        bytes_sent=len(body) if body else 0,
        error="abandoned at end of drain grace period",
        check_passed=False if spec.expected_status is not None else None,
    )


def create_client(
    peak_concurrency: Optional[int],
    timeout_s: float,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    if peak_concurrency:
        max_connections = max(peak_concurrency, 16)
        limits = httpx.Limits(
            max_connections=max_connections,
            max_keepalive_connections=max_connections,
        )
    else:
        limits = httpx.Limits(max_connections=None, max_keepalive_connections=256)
    return httpx.AsyncClient(limits=limits, timeout=timeout_s, transport=transport)


class RequestIssuer:
    """Issues one request per call on a shared client and turns every failure into data."""

    def __init__(self, client: httpx.AsyncClient, base_url: str, timeout_s: float) -> None:
        self.client = client
        self.base_url = base_url
        self.timeout_s = timeout_s

    async def issue(self, spec: RequestSpec) -> RequestOutcome:
        url = resolve_url(self.base_url, spec.url)
        content = spec.encoded_body()
        timestamp_ms = now_unix_ms()
        started = time.monotonic()

        http_status = TRANSPORT_ERROR_HTTP_STATUS
        bytes_received = 0
        error_text: Optional[str] = None
        try:
            response = await self.client.request(
                spec.method,
                url,
                content=content,
                headers=spec.header_dict(),
                timeout=self.timeout_s,
            )
            http_status = int(response.status_code)
            bytes_received = len(response.content)
            status = classify_http_status(http_status)
            if status != STATUS_OK:
                error_text = f"HTTP {http_status}"
        except httpx.TimeoutException as exc:
            status = STATUS_TIMEOUT
            error_text = str(exc) or exc.__class__.__name__
        except httpx.HTTPError as exc:
            status = STATUS_TRANSPORT_ERROR
            error_text = str(exc) or exc.__class__.__name__
        except Exception as exc:  # noqa: BLE001
            status = STATUS_TRANSPORT_ERROR
            error_text = str(exc) or exc.__class__.__name__

        latency_ms = (time.monotonic() - started) * 1000.0
        if status in (STATUS_TIMEOUT, STATUS_TRANSPORT_ERROR):
            logger.debug("%s %s failed: %s", spec.method, url, error_text)

        check_passed: Optional[bool] = None
        if spec.expected_status is not None:
            check_passed = http_status == spec.expected_status

        return RequestOutcome(
            name=spec.tag,
            method=spec.method,
            url=url,
            status=status,
            http_status=http_status,
            latency_ms=latency_ms,
            timestamp_unix_ms=timestamp_ms,
            bytes_received=bytes_received,
            bytes_sent=len(content) if content else 0,
            error=error_text,
            check_passed=check_passed,
        )
