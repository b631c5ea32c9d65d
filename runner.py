from __future__ import annotations

import asyncio
import csv
import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Sequence

import httpx
import structlog

from loadgen import (
    SUPPORTED_APIS,
    HTTPRequestIssuer,
    PromptSet,
    RequestIssuer,
    RequestOutcome,
    RequestSettings,
    WorkloadGenerator,
)
from metrics_host import HostResourceProbe, ResourceProbe, ResourceSample, ResourceSampler
from report import (
    TrialAggregator,
    TrialConfig,
    TrialResult,
    write_results_csv,
    write_results_json,
    write_summary_markdown,
)

logger = structlog.get_logger()

DEFAULT_MODELS = [
    "deepseek-r1:1.5b",
    "deepseek-r1:7b",
    "deepseek-r1:8b",
    "deepseek-r1:14b",
    "deepseek-r1:32b",
]


class ConfigurationError(ValueError):
    """Invalid run configuration; raised before any trial starts."""


@dataclass
class RunConfig:
    base_url: str = "http://localhost:11434"
    api: str = "ollama"
    api_key: Optional[str] = None
    models: list[str] = field(default_factory=lambda: list(DEFAULT_MODELS))
    concurrencies: list[int] = field(default_factory=lambda: [1, 2, 3, 4, 5, 6])
    trial_duration_s: float = 30.0
    cooldown_s: float = 10.0
    sample_interval_s: float = 1.0
    request_timeout_s: float = 60.0
    drain_timeout_s: Optional[float] = None
    prompts: list[str] = field(default_factory=list)
    prompt_file: Optional[Path] = None
    query_gpu: bool = True
    seed: int = 42
    output_dir: Path = Path("runs")
    run_name: Optional[str] = None
    write_artifacts: bool = True

    @property
    def effective_drain_timeout_s(self) -> float:
        if self.drain_timeout_s is None:
            return float(self.request_timeout_s)
        return float(self.drain_timeout_s)

    def validate(self) -> None:
        if not self.models:
            raise ConfigurationError("at least one model (workload identifier) is required")
        if not self.concurrencies:
            raise ConfigurationError("at least one concurrency level is required")
        if any(level <= 0 for level in self.concurrencies):
            raise ConfigurationError(f"concurrency levels must be > 0, got {self.concurrencies}")
        if self.api not in SUPPORTED_APIS:
            raise ConfigurationError(f"api must be one of {', '.join(SUPPORTED_APIS)}, got {self.api}")
        if self.trial_duration_s <= 0:
            raise ConfigurationError("trial duration must be > 0")
        if self.cooldown_s < 0:
            raise ConfigurationError("cool-down must be >= 0")
        if self.sample_interval_s <= 0:
            raise ConfigurationError("sample interval must be > 0")
        if self.request_timeout_s <= 0:
            raise ConfigurationError("request timeout must be > 0")
        if self.drain_timeout_s is not None and self.drain_timeout_s < 0:
            raise ConfigurationError("drain timeout must be >= 0")


def build_matrix(models: Sequence[str], concurrencies: Sequence[int]) -> list[TrialConfig]:
    """Cross product in run order: workload outer, concurrency inner."""
    configs: list[TrialConfig] = []
    for model in models:
        for concurrency in concurrencies:
            configs.append(
                TrialConfig(workload_id=model, concurrency=concurrency, index=len(configs) + 1)
            )
    return configs


class TrialController:
    """Runs trials one at a time and collects their results in matrix order."""

    def __init__(
        self,
        generator: WorkloadGenerator,
        probe: ResourceProbe,
        trial_duration_s: float = 30.0,
        cooldown_s: float = 10.0,
        sample_interval_s: float = 1.0,
        on_outcome: Optional[Callable[[TrialConfig, RequestOutcome], Awaitable[None]]] = None,
        on_sample: Optional[Callable[[TrialConfig, ResourceSample], Awaitable[None]]] = None,
        on_result: Optional[Callable[[TrialResult], None]] = None,
    ) -> None:
        self.generator = generator
        self.probe = probe
        self.trial_duration_s = trial_duration_s
        self.cooldown_s = cooldown_s
        self.sample_interval_s = sample_interval_s
        self.on_outcome = on_outcome
        self.on_sample = on_sample
        self.on_result = on_result

    async def run_all(self, configs: Sequence[TrialConfig]) -> list[TrialResult]:
        if not configs:
            raise ConfigurationError("configuration matrix is empty")

        results: list[TrialResult] = []
        for position, config in enumerate(configs):
            if position > 0 and self.cooldown_s > 0:
                logger.info("cooldown", seconds=self.cooldown_s)
                await asyncio.sleep(self.cooldown_s)
            result = await self.run_trial(config)
            results.append(result)
            if self.on_result is not None:
                self.on_result(result)
        return results

    async def run_trial(self, config: TrialConfig) -> TrialResult:
        logger.info(
            "trial_started",
            trial=config.name,
            workload_id=config.workload_id,
            concurrency=config.concurrency,
            duration_s=self.trial_duration_s,
        )
        aggregator = TrialAggregator(config)
        fault: Optional[str] = None
        try:
            await self._execute(config, aggregator)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            fault = f"{type(exc).__name__}: {exc}"
            logger.error("trial_failed", trial=config.name, exc_info=True)

        result = aggregator.reduce(fault=fault)
        logger.info(
            "trial_finished",
            trial=config.name,
            total_requests=result.total_requests,
            success_rate_pct=round(result.success_rate_pct, 2),
            avg_latency_ms=round(result.avg_latency_ms, 1),
            samples=result.sample_count,
        )
        return result

    async def _execute(self, config: TrialConfig, aggregator: TrialAggregator) -> None:
        async def record_outcome(outcome: RequestOutcome) -> None:
            await aggregator.record_outcome(outcome)
            if self.on_outcome is not None:
                await self.on_outcome(config, outcome)

        async def record_sample(sample: ResourceSample) -> None:
            await aggregator.record_sample(sample)
            if self.on_sample is not None:
                await self.on_sample(config, sample)

        stop_event = asyncio.Event()
        sampler = ResourceSampler(self.probe, record_sample, interval_s=self.sample_interval_s)
        deadline = asyncio.get_running_loop().time() + self.trial_duration_s

        await sampler.start()
        try:
            await self.generator.run(
                workload_id=config.workload_id,
                concurrency=config.concurrency,
                deadline=deadline,
                stop_event=stop_event,
                on_outcome=record_outcome,
                trial_index=config.index,
            )
        finally:
            stop_event.set()
            await sampler.stop()


class AsyncJSONLWriter:
    def __init__(self, output_path: Path) -> None:
        self.output_path = output_path
        self._file = output_path.open("w", encoding="utf-8", buffering=1)
        self._lock = asyncio.Lock()

    async def write(self, payload: dict[str, Any]) -> None:
        line = json.dumps(payload, ensure_ascii=False)
        async with self._lock:
            self._file.write(line + "\n")

    def close(self) -> None:
        self._file.close()


def _ensure_output_dir(base_output_dir: Path, run_name: Optional[str]) -> Path:
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    normalized_run_name = (run_name or "run").strip().replace(" ", "_")
    output_dir = base_output_dir / f"{normalized_run_name}_{timestamp}"
    output_dir.mkdir(parents=True, exist_ok=True)
    return output_dir


def _write_json(path: Path, payload: Any) -> None:
    path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")


def _write_csv(path: Path, rows: list[dict[str, Any]]) -> None:
    if not rows:
        path.write_text("", encoding="utf-8")
        return
    fieldnames: list[str] = []
    for row in rows:
        for key in row.keys():
            if key not in fieldnames:
                fieldnames.append(key)
    with path.open("w", encoding="utf-8", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=fieldnames)
        writer.writeheader()
        for row in rows:
            writer.writerow(row)


def _resolved_config_dict(config: RunConfig, output_dir: Optional[Path]) -> dict[str, Any]:
    payload = asdict(config)
    payload["output_dir"] = str(config.output_dir)
    payload["prompt_file"] = str(config.prompt_file) if config.prompt_file else None
    payload["resolved_run_dir"] = str(output_dir) if output_dir else None
    payload["started_at_utc"] = datetime.now(timezone.utc).isoformat()
    return payload


async def run_load_test(
    config: RunConfig,
    issuer: Optional[RequestIssuer] = None,
    probe: Optional[ResourceProbe] = None,
    on_result: Optional[Callable[[TrialResult], None]] = None,
) -> tuple[Optional[Path], list[TrialResult]]:
    """Run the whole matrix; returns the run directory (if artifacts are written) and results.

    ``issuer`` and ``probe`` default to the HTTP issuer and the host probe.
    """
    config.validate()
    configs = build_matrix(config.models, config.concurrencies)
    prompt_set = PromptSet.from_sources(config.prompts, config.prompt_file)

    output_dir = (
        _ensure_output_dir(config.output_dir, config.run_name) if config.write_artifacts else None
    )
    resolved_config = _resolved_config_dict(config, output_dir)

    request_writer: Optional[AsyncJSONLWriter] = None
    sample_rows: list[dict[str, Any]] = []
    if output_dir is not None:
        _write_json(output_dir / "config.json", resolved_config)
        request_writer = AsyncJSONLWriter(output_dir / "requests.jsonl")

    async def log_outcome(trial: TrialConfig, outcome: RequestOutcome) -> None:
        if request_writer is not None:
            await request_writer.write({"trial": trial.name, **outcome.to_dict()})

    async def log_sample(trial: TrialConfig, sample: ResourceSample) -> None:
        sample_rows.append({"trial": trial.name, **sample.to_row()})

    max_connections = max(max(config.concurrencies) * 2, 16)
    limits = httpx.Limits(
        max_connections=max_connections,
        max_keepalive_connections=max_connections,
    )
    try:
        async with httpx.AsyncClient(limits=limits) as client:
            if issuer is None:
                issuer = HTTPRequestIssuer(
                    client,
                    RequestSettings(
                        base_url=config.base_url,
                        api=config.api,
                        api_key=config.api_key,
                        timeout_s=float(config.request_timeout_s),
                    ),
                )
            controller = TrialController(
                generator=WorkloadGenerator(
                    issuer=issuer,
                    prompt_set=prompt_set,
                    drain_timeout_s=config.effective_drain_timeout_s,
                    seed=config.seed,
                ),
                probe=probe if probe is not None else HostResourceProbe(query_gpu=config.query_gpu),
                trial_duration_s=float(config.trial_duration_s),
                cooldown_s=float(config.cooldown_s),
                sample_interval_s=float(config.sample_interval_s),
                on_outcome=log_outcome,
                on_sample=log_sample,
                on_result=on_result,
            )
            results = await controller.run_all(configs)
    finally:
        if request_writer is not None:
            request_writer.close()

    if output_dir is not None:
        _write_csv(output_dir / "resource_samples.csv", sample_rows)
        write_results_json(output_dir / "trial_results.json", results)
        write_results_csv(output_dir / "trial_results.csv", results)
        write_summary_markdown(
            output_path=output_dir / "summary.md",
            run_name=config.run_name or "run",
            resolved_config=resolved_config,
            results=results,
        )
    return output_dir, results
