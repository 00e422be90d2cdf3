"""Shared fixtures for the load test suite."""

import sys
from pathlib import Path

import pytest

# Modules live at the project root, not in a package.
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from loadgen import RequestOutcome  # noqa: E402


BASE_URL = "http://target.test"


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def make_outcome():
    """Factory for RequestOutcome with sensible defaults."""

    def _make(
        status="ok",
        http_status=200,
        latency_ms=10.0,
        name="courses",
        check_passed=None,
        bytes_received=0,
        bytes_sent=0,
    ):
        return RequestOutcome(
            name=name,
            method="GET",
            url=f"{BASE_URL}/lb/courses",
            status=status,
            http_status=http_status,
            latency_ms=latency_ms,
            timestamp_unix_ms=1_700_000_000_000,
            bytes_received=bytes_received,
            bytes_sent=bytes_sent,
            check_passed=check_passed,
        )

    return _make
