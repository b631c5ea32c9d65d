from __future__ import annotations

import asyncio
import csv
import json
import math
import statistics
import sys
from collections import Counter
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping, Optional, TextIO

from loadgen import RequestOutcome, now_unix_ms
from metrics_host import RESOURCE_FIELDS, ResourceSample


def percentile(values: list[float], pct: float) -> Optional[float]:
    if not values:
        return None
    if pct <= 0:
        return float(min(values))
    if pct >= 100:
        return float(max(values))
    ordered = sorted(values)
    index = (len(ordered) - 1) * (pct / 100.0)
    low = math.floor(index)
    high = math.ceil(index)
    if low == high:
        return float(ordered[low])
    fraction = index - low
    return float((ordered[low] * (1.0 - fraction)) + (ordered[high] * fraction))


@dataclass(frozen=True)
class TrialConfig:
    workload_id: str
    concurrency: int
    index: int = 1

    def __post_init__(self) -> None:
        if not self.workload_id:
            raise ValueError("workload_id cannot be empty")
        if self.concurrency <= 0:
            raise ValueError(f"concurrency must be > 0, got {self.concurrency}")

    @property
    def name(self) -> str:
        safe_workload = self.workload_id.replace("/", "_").replace(":", "-")
        return f"trial_{self.index}_{safe_workload}_c{self.concurrency}"


@dataclass(frozen=True)
class TrialResult:
    config: TrialConfig
    peak_resources: ResourceSample
    avg_latency_ms: float
    max_latency_ms: float
    min_latency_ms: float
    success_rate_pct: float
    total_requests: int
    success_count: int
    sample_count: int = 0
    timeout_count: int = 0
    p50_latency_ms: Optional[float] = None
    p90_latency_ms: Optional[float] = None
    p99_latency_ms: Optional[float] = None
    requests_per_s: float = 0.0
    started_at_unix_ms: int = 0
    ended_at_unix_ms: int = 0
    duration_s: float = 0.0
    fault: Optional[str] = None
    errors_by_status: Mapping[str, int] = field(default_factory=lambda: MappingProxyType({}))

    def __post_init__(self) -> None:
        if not isinstance(self.errors_by_status, MappingProxyType):
            object.__setattr__(
                self, "errors_by_status", MappingProxyType(dict(self.errors_by_status))
            )

    @property
    def failure_count(self) -> int:
        return self.total_requests - self.success_count

    @property
    def resources_measured(self) -> bool:
        return self.sample_count > 0

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "trial": self.config.name,
            "workload_id": self.config.workload_id,
            "concurrency": self.config.concurrency,
        }
        for name in RESOURCE_FIELDS:
            payload[f"peak_{name}"] = getattr(self.peak_resources, name)
        payload.update(
            {
                item.name: getattr(self, item.name)
                for item in fields(self)
                if item.name not in {"config", "peak_resources"}
            }
        )
        payload["errors_by_status"] = dict(self.errors_by_status)
        payload["failure_count"] = self.failure_count
        return payload


class TrialAggregator:
    """Accumulates outcomes and resource samples of one trial.

    ``record_outcome`` and ``record_sample`` may be awaited from any number of
    concurrent tasks. ``reduce`` must run once, after every producer stopped.
    """

    def __init__(self, config: TrialConfig) -> None:
        self.config = config
        self._lock = asyncio.Lock()
        self._total_requests = 0
        self._success_latencies_ms: list[float] = []
        self._status_counts: Counter[str] = Counter()
        self._peak = ResourceSample()
        self._sample_count = 0
        self._reduced = False
        self.started_at_unix_ms = now_unix_ms()

    async def record_outcome(self, outcome: RequestOutcome) -> None:
        async with self._lock:
            self._total_requests += 1
            self._status_counts[outcome.status] += 1
            if outcome.succeeded:
                self._success_latencies_ms.append(float(outcome.elapsed_ms))

    async def record_sample(self, sample: ResourceSample) -> None:
        async with self._lock:
            self._sample_count += 1
            self._peak = self._peak.peak_with(sample)

    def reduce(self, fault: Optional[str] = None) -> TrialResult:
        if self._reduced:
            raise RuntimeError(f"{self.config.name} was already reduced")
        self._reduced = True

        ended_at_unix_ms = now_unix_ms()
        duration_s = max(0.0, (ended_at_unix_ms - self.started_at_unix_ms) / 1000.0)
        latencies = self._success_latencies_ms
        success_count = len(latencies)
        total = self._total_requests
        if latencies:
            avg_ms = float(statistics.fmean(latencies))
            max_ms = float(max(latencies))
            min_ms = float(min(latencies))
        else:
            avg_ms = max_ms = min_ms = 0.0
        success_rate = float(success_count / total * 100.0) if total else 0.0

        return TrialResult(
            config=self.config,
            peak_resources=self._peak,
            avg_latency_ms=avg_ms,
            max_latency_ms=max_ms,
            min_latency_ms=min_ms,
            success_rate_pct=success_rate,
            total_requests=total,
            success_count=success_count,
            sample_count=self._sample_count,
            timeout_count=self._status_counts.get("timeout", 0),
            p50_latency_ms=percentile(latencies, 50.0),
            p90_latency_ms=percentile(latencies, 90.0),
            p99_latency_ms=percentile(latencies, 99.0),
            requests_per_s=float(total / duration_s) if duration_s > 0 else 0.0,
            started_at_unix_ms=self.started_at_unix_ms,
            ended_at_unix_ms=ended_at_unix_ms,
            duration_s=duration_s,
            fault=fault,
            errors_by_status=MappingProxyType(
                {status: count for status, count in self._status_counts.items() if status != "ok"}
            ),
        )


def _fmt(value: Optional[float], digits: int = 1) -> str:
    if value is None or math.isnan(value):
        return "-"
    return f"{value:.{digits}f}"


TABLE_HEADERS = [
    "Model",
    "Concurrency",
    "CPU load %",
    "GPU load %",
    "GPU mem MiB",
    "Mem used %",
    "Avg ms",
    "Max ms",
    "Min ms",
    "Success %",
    "Requests",
]


def _table_row(result: TrialResult) -> list[str]:
    peak = result.peak_resources
    return [
        result.config.workload_id,
        str(result.config.concurrency),
        _fmt(peak.cpu_load_pct),
        _fmt(peak.accelerator_load_pct),
        _fmt(peak.accelerator_memory_used_mib, 0),
        _fmt(peak.memory_used_pct),
        _fmt(result.avg_latency_ms),
        _fmt(result.max_latency_ms),
        _fmt(result.min_latency_ms),
        _fmt(result.success_rate_pct),
        str(result.total_requests),
    ]


def render_table(results: list[TrialResult]) -> str:
    rows = [TABLE_HEADERS] + [_table_row(result) for result in results]
    widths = [max(len(row[column]) for row in rows) for column in range(len(TABLE_HEADERS))]
    lines = ["  ".join(cell.ljust(width) for cell, width in zip(row, widths)).rstrip() for row in rows]
    return "\n".join(lines) + "\n"


def print_results(results: list[TrialResult], stream: Optional[TextIO] = None) -> None:
    (stream or sys.stdout).write(render_table(results))


def write_results_json(output_path: Path, results: list[TrialResult]) -> None:
    output_path.write_text(
        json.dumps([result.to_dict() for result in results], indent=2, ensure_ascii=False),
        encoding="utf-8",
    )


def write_results_csv(output_path: Path, results: list[TrialResult]) -> None:
    rows = [result.to_dict() for result in results]
    if not rows:
        output_path.write_text("", encoding="utf-8")
        return
    with output_path.open("w", encoding="utf-8", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=list(rows[0].keys()))
        writer.writeheader()
        for row in rows:
            row["errors_by_status"] = json.dumps(row["errors_by_status"], sort_keys=True)
            writer.writerow(row)


def write_summary_markdown(
    output_path: Path,
    run_name: str,
    resolved_config: dict[str, Any],
    results: list[TrialResult],
) -> None:
    generated_at = datetime.now(timezone.utc).isoformat()
    lines: list[str] = []
    lines.append(f"# Matrix Load Test Summary - {run_name}")
    lines.append("")
    lines.append(f"Generated at (UTC): `{generated_at}`")
    lines.append("")
    lines.append("## Configuration")
    lines.append("")
    lines.append("```json")
    lines.append(json.dumps(resolved_config, indent=2, ensure_ascii=False))
    lines.append("```")
    lines.append("")
    lines.append("## Trial Results")
    lines.append("")
    lines.append("| " + " | ".join(TABLE_HEADERS) + " |")
    lines.append("|---|" + "---:|" * (len(TABLE_HEADERS) - 1))
    for result in results:
        lines.append("| " + " | ".join(_table_row(result)) + " |")

    lines.append("")
    lines.append("## Latency Percentiles (successful requests)")
    lines.append("")
    lines.append("| Model | Concurrency | p50 ms | p90 ms | p99 ms | Req/s | Samples |")
    lines.append("|---|---:|---:|---:|---:|---:|---:|")
    for result in results:
        lines.append(
            "| "
            f"{result.config.workload_id} | "
            f"{result.config.concurrency} | "
            f"{_fmt(result.p50_latency_ms)} | "
            f"{_fmt(result.p90_latency_ms)} | "
            f"{_fmt(result.p99_latency_ms)} | "
            f"{_fmt(result.requests_per_s, 2)} | "
            f"{result.sample_count} |"
        )

    faulted = [result for result in results if result.fault or result.errors_by_status]
    if faulted:
        lines.append("")
        lines.append("## Failures")
        lines.append("")
        for result in faulted:
            statuses = ", ".join(
                f"{status}={count}" for status, count in sorted(result.errors_by_status.items())
            )
            detail = f"- `{result.config.name}`: {statuses or 'no failed requests'}"
            if result.fault:
                detail += f"; trial fault: {result.fault}"
            lines.append(detail)

    output_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
