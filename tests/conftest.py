"""Shared fakes standing in for the target service and the host probe."""

from __future__ import annotations

import asyncio
import time
from typing import Optional

import pytest
import structlog

from loadgen import IssueResult, RequestOutcome
from metrics_host import ResourceSample


class FakeIssuer:
    def __init__(self, latency_s: float = 0.0, status: str = "ok", error: Optional[str] = None) -> None:
        self.latency_s = latency_s
        self.status = status
        self.error = error
        self.calls: list[tuple[str, str, float]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def send(self, workload_id: str, prompt: str) -> IssueResult:
        self.calls.append((workload_id, prompt, time.monotonic()))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.latency_s)
        finally:
            self.in_flight -= 1
        return IssueResult(self.status, self.latency_s * 1000.0, error=self.error)


class FakeProbe:
    def __init__(self, sample: Optional[ResourceSample] = None, delay_s: float = 0.0) -> None:
        self.value = sample or ResourceSample(cpu_load_pct=50.0, memory_used_pct=60.0)
        self.delay_s = delay_s
        self.calls = 0

    async def sample(self) -> ResourceSample:
        self.calls += 1
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        return self.value


def make_outcome(elapsed_ms: float, status: str = "ok", worker_id: int = 0) -> RequestOutcome:
    return RequestOutcome(
        request_id=f"req-{worker_id}-{elapsed_ms}",
        workload_id="w1",
        worker_id=worker_id,
        start_time_unix_ms=0,
        elapsed_ms=elapsed_ms,
        status=status,
        error=None if status == "ok" else status,
        http_status=200 if status == "ok" else None,
        prompt_chars=5,
        response_chars=10 if status == "ok" else 0,
    )


@pytest.fixture(autouse=True)
def reset_structlog():
    yield
    structlog.reset_defaults()

