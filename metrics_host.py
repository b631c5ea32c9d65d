from __future__ import annotations

import asyncio
import csv
import io
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Optional, Protocol

import psutil
import structlog

logger = structlog.get_logger()

GPU_QUERY_FIELDS = [
    "utilization.gpu",
    "memory.used",
]

RESOURCE_FIELDS = (
    "cpu_load_pct",
    "memory_used_pct",
    "accelerator_load_pct",
    "accelerator_memory_used_mib",
)


@dataclass(frozen=True)
class ResourceSample:
    cpu_load_pct: float = 0.0
    memory_used_pct: float = 0.0
    accelerator_load_pct: float = 0.0
    accelerator_memory_used_mib: float = 0.0
    timestamp_unix_ms: int = 0
    probe_errors: tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        for name in RESOURCE_FIELDS:
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0, got {getattr(self, name)}")

    def peak_with(self, other: "ResourceSample") -> "ResourceSample":
        """Element-wise maximum of the resource dimensions."""
        return ResourceSample(
            **{name: max(getattr(self, name), getattr(other, name)) for name in RESOURCE_FIELDS},
            timestamp_unix_ms=max(self.timestamp_unix_ms, other.timestamp_unix_ms),
        )

    def to_row(self) -> dict[str, Any]:
        row = asdict(self)
        row["probe_errors"] = ",".join(self.probe_errors)
        return row


class ResourceProbe(Protocol):
    async def sample(self) -> ResourceSample:
        ...


class GPUProbeError(RuntimeError):
    pass


def _to_float(value: str) -> Optional[float]:
    normalized = value.strip()
    if not normalized:
        return None
    if normalized.upper() in {"N/A", "NA", "[N/A]"}:
        return None
    try:
        return float(normalized)
    except ValueError:
        return None


def parse_nvidia_smi_output(output: str) -> tuple[float, float]:
    """Return (max utilization %, total memory used MiB) across all listed GPUs."""
    utilizations: list[float] = []
    memory_used: list[float] = []
    reader = csv.reader(io.StringIO(output.strip()))
    for parsed in reader:
        if not parsed:
            continue
        if len(parsed) != len(GPU_QUERY_FIELDS):
            raise GPUProbeError(f"Unexpected nvidia-smi row with {len(parsed)} fields")
        utilization = _to_float(parsed[0])
        memory = _to_float(parsed[1])
        if utilization is None or memory is None:
            raise GPUProbeError(f"Unparseable nvidia-smi row: {','.join(parsed)}")
        utilizations.append(utilization)
        memory_used.append(memory)
    if not utilizations:
        raise GPUProbeError("nvidia-smi returned empty output")
    return max(utilizations), sum(memory_used)


async def _reap(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        try:
            process.kill()
        except ProcessLookupError:
            pass
    await process.wait()


class HostResourceProbe:
    """CPU and memory through psutil, GPU through ``nvidia-smi``.

    Each dimension fails independently; a failed dimension reads 0 and its
    name is listed in ``ResourceSample.probe_errors``.
    """

    def __init__(self, query_gpu: bool = True, gpu_timeout_s: float = 5.0) -> None:
        self.query_gpu = query_gpu
        self.gpu_timeout_s = gpu_timeout_s
        self._gpu_disabled = not query_gpu
        self._warned: set[str] = set()
        # first call only primes psutil's counters and always reports 0.0
        psutil.cpu_percent(interval=None)

    def _warn_once(self, dimension: str, error: str) -> None:
        if dimension in self._warned:
            return
        self._warned.add(dimension)
        logger.warning("resource_probe_dimension_failed", dimension=dimension, error=error)

    async def _query_gpu(self) -> tuple[float, float]:
        command = [
            "nvidia-smi",
            f"--query-gpu={','.join(GPU_QUERY_FIELDS)}",
            "--format=csv,noheader,nounits",
        ]
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            self._gpu_disabled = True
            raise GPUProbeError("nvidia-smi command not found") from exc
        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.gpu_timeout_s
            )
        except asyncio.TimeoutError as exc:
            await _reap(process)
            raise GPUProbeError(f"nvidia-smi timed out after {self.gpu_timeout_s}s") from exc
        except asyncio.CancelledError:
            await _reap(process)
            raise

        if process.returncode != 0:
            stderr_text = stderr.decode("utf-8", errors="replace").strip()
            raise GPUProbeError(f"nvidia-smi exited with {process.returncode}: {stderr_text}")
        return parse_nvidia_smi_output(stdout.decode("utf-8", errors="replace"))

    async def sample(self) -> ResourceSample:
        timestamp_unix_ms = int(time.time() * 1000)
        errors: list[str] = []
        values = dict.fromkeys(RESOURCE_FIELDS, 0.0)

        try:
            values["cpu_load_pct"] = float(psutil.cpu_percent(interval=None))
        except (psutil.Error, OSError) as exc:
            errors.append("cpu_load_pct")
            self._warn_once("cpu_load_pct", str(exc))

        try:
            values["memory_used_pct"] = float(psutil.virtual_memory().percent)
        except (psutil.Error, OSError) as exc:
            errors.append("memory_used_pct")
            self._warn_once("memory_used_pct", str(exc))

        if self._gpu_disabled:
            if self.query_gpu:
                errors.extend(["accelerator_load_pct", "accelerator_memory_used_mib"])
        else:
            try:
                load, memory = await self._query_gpu()
                values["accelerator_load_pct"] = load
                values["accelerator_memory_used_mib"] = memory
            except (GPUProbeError, OSError) as exc:
                errors.extend(["accelerator_load_pct", "accelerator_memory_used_mib"])
                self._warn_once("accelerator", str(exc))

        return ResourceSample(
            **{name: max(0.0, value) for name, value in values.items()},
            timestamp_unix_ms=timestamp_unix_ms,
            probe_errors=tuple(errors),
        )


class ResourceSampler:
    """Ticks every ``interval_s`` and hands each probe sample to ``on_sample``.

    ``stop()`` lets a sample already in flight finish and be delivered, and
    no new sample starts after it.
    """

    def __init__(
        self,
        probe: ResourceProbe,
        on_sample: Callable[[ResourceSample], Awaitable[None]],
        interval_s: float = 1.0,
    ) -> None:
        if interval_s <= 0:
            raise ValueError(f"interval_s must be > 0, got {interval_s}")
        self.probe = probe
        self.on_sample = on_sample
        self.interval_s = interval_s
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task[None]] = None
        self.samples_taken = 0

    @property
    def running(self) -> bool:
        return self._task is not None

    async def start(self) -> None:
        if self._task is not None:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task is not None:
            task, self._task = self._task, None
            await task

    async def _run_loop(self) -> None:
        next_tick = time.monotonic() + self.interval_s
        while True:
            wait_for = max(0.0, next_tick - time.monotonic())
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=wait_for)
            except asyncio.TimeoutError:
                pass
            if self._stop_event.is_set():
                return
            try:
                sample = await self.probe.sample()
            except asyncio.CancelledError:
                raise
            except Exception:  # noqa: BLE001
                logger.warning("resource_probe_failed", exc_info=True)
            else:
                self.samples_taken += 1
                await self.on_sample(sample)
            next_tick += self.interval_s
            # a slow probe skips missed ticks instead of bursting to catch up
            now = time.monotonic()
            if next_tick <= now:
                next_tick = now + self.interval_s
