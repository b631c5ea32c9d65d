"""Tests for the host probe and the periodic resource sampler."""

from __future__ import annotations

import asyncio
import time

import pytest

import metrics_host
from metrics_host import (
    GPUProbeError,
    HostResourceProbe,
    ResourceSample,
    ResourceSampler,
    parse_nvidia_smi_output,
)
from tests.conftest import FakeProbe


class SampleSink:
    def __init__(self) -> None:
        self.samples: list[ResourceSample] = []

    async def __call__(self, sample: ResourceSample) -> None:
        self.samples.append(sample)


class TestResourceSample:
    def test_negative_values_rejected(self) -> None:
        with pytest.raises(ValueError):
            ResourceSample(cpu_load_pct=-1.0)

    def test_peak_with(self) -> None:
        peak = ResourceSample(10.0, 80.0, 0.0, 512.0).peak_with(ResourceSample(40.0, 20.0, 3.0, 256.0))
        assert (
            peak.cpu_load_pct,
            peak.memory_used_pct,
            peak.accelerator_load_pct,
            peak.accelerator_memory_used_mib,
        ) == (40.0, 80.0, 3.0, 512.0)


class TestParseNvidiaSmi:
    def test_multi_gpu_takes_max_load_and_total_memory(self) -> None:
        assert parse_nvidia_smi_output("35, 1024\n80, 2048\n") == (80.0, 3072.0)

    def test_empty_output(self) -> None:
        with pytest.raises(GPUProbeError):
            parse_nvidia_smi_output("")

    def test_not_available_values(self) -> None:
        with pytest.raises(GPUProbeError):
            parse_nvidia_smi_output("[N/A], 100\n")

    def test_wrong_field_count(self) -> None:
        with pytest.raises(GPUProbeError):
            parse_nvidia_smi_output("35\n")


class _FakeProcess:
    def __init__(self, stdout: bytes, stderr: bytes = b"", returncode: int = 0) -> None:
        self._stdout = stdout
        self._stderr = stderr
        self.returncode = returncode

    async def communicate(self):
        return self._stdout, self._stderr


class TestHostResourceProbe:
    @pytest.mark.asyncio
    async def test_without_gpu_query(self) -> None:
        sample = await HostResourceProbe(query_gpu=False).sample()

        assert sample.cpu_load_pct >= 0.0
        assert 0.0 < sample.memory_used_pct <= 100.0
        assert sample.accelerator_load_pct == 0.0
        assert sample.accelerator_memory_used_mib == 0.0
        assert sample.probe_errors == ()
        assert sample.timestamp_unix_ms > 0

    @pytest.mark.asyncio
    async def test_reads_gpu_from_nvidia_smi(self, monkeypatch) -> None:
        async def fake_exec(*command, **kwargs):
            assert command[0] == "nvidia-smi"
            return _FakeProcess(b"42, 1536\n")

        monkeypatch.setattr(metrics_host.asyncio, "create_subprocess_exec", fake_exec)
        sample = await HostResourceProbe().sample()

        assert sample.accelerator_load_pct == 42.0
        assert sample.accelerator_memory_used_mib == 1536.0
        assert sample.probe_errors == ()

    @pytest.mark.asyncio
    async def test_missing_nvidia_smi_zeroes_gpu_and_disables_it(self, monkeypatch) -> None:
        calls = []

        async def missing(*command, **kwargs):
            calls.append(command)
            raise FileNotFoundError("nvidia-smi")

        monkeypatch.setattr(metrics_host.asyncio, "create_subprocess_exec", missing)
        probe = HostResourceProbe()
        first = await probe.sample()
        second = await probe.sample()

        for sample in (first, second):
            assert sample.accelerator_load_pct == 0.0
            assert sample.accelerator_memory_used_mib == 0.0
            assert "accelerator_load_pct" in sample.probe_errors
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_failing_nvidia_smi_exit_code(self, monkeypatch) -> None:
        async def failing(*command, **kwargs):
            return _FakeProcess(b"", b"driver mismatch", returncode=9)

        monkeypatch.setattr(metrics_host.asyncio, "create_subprocess_exec", failing)
        sample = await HostResourceProbe().sample()

        assert sample.accelerator_load_pct == 0.0
        assert sample.probe_errors == ("accelerator_load_pct", "accelerator_memory_used_mib")

    @pytest.mark.asyncio
    async def test_cancelled_query_kills_nvidia_smi(self, monkeypatch) -> None:
        class HangingProcess:
            def __init__(self) -> None:
                self.returncode = None
                self.killed = False
                self.reaped = False

            async def communicate(self):
                await asyncio.sleep(10)
                return b"", b""

            def kill(self) -> None:
                self.killed = True
                self.returncode = -9

            async def wait(self) -> int:
                self.reaped = True
                return self.returncode

        process = HangingProcess()

        async def fake_exec(*command, **kwargs):
            return process

        monkeypatch.setattr(metrics_host.asyncio, "create_subprocess_exec", fake_exec)
        task = asyncio.create_task(HostResourceProbe().sample())
        await asyncio.sleep(0.05)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert process.killed
        assert process.reaped

    @pytest.mark.asyncio
    async def test_memory_failure_only_zeroes_memory(self, monkeypatch) -> None:
        def broken_memory():
            raise OSError("no /proc/meminfo")

        monkeypatch.setattr(metrics_host.psutil, "virtual_memory", broken_memory)
        sample = await HostResourceProbe(query_gpu=False).sample()

        assert sample.memory_used_pct == 0.0
        assert sample.probe_errors == ("memory_used_pct",)


class TestResourceSampler:
    def test_interval_must_be_positive(self) -> None:
        with pytest.raises(ValueError):
            ResourceSampler(FakeProbe(), SampleSink(), interval_s=0)

    @pytest.mark.asyncio
    async def test_ticks_until_stopped(self) -> None:
        probe = FakeProbe(ResourceSample(50.0, 60.0, 0.0, 0.0))
        sink = SampleSink()
        sampler = ResourceSampler(probe, sink, interval_s=0.05)

        await sampler.start()
        await asyncio.sleep(0.28)
        await sampler.stop()

        assert 3 <= len(sink.samples) <= 8
        assert all(sample == probe.value for sample in sink.samples)
        assert sampler.samples_taken == len(sink.samples)
        assert not sampler.running

    @pytest.mark.asyncio
    async def test_in_flight_sample_delivered_and_none_started_after_stop(self) -> None:
        probe = FakeProbe(delay_s=0.2)
        sink = SampleSink()
        sampler = ResourceSampler(probe, sink, interval_s=0.01)

        await sampler.start()
        await asyncio.sleep(0.05)
        await sampler.stop()

        assert probe.calls == 1
        assert len(sink.samples) == 1
        await asyncio.sleep(0.1)
        assert probe.calls == 1

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self) -> None:
        sampler = ResourceSampler(FakeProbe(), SampleSink(), interval_s=0.05)
        await sampler.stop()
        await sampler.start()
        await sampler.stop()
        await sampler.stop()
        assert not sampler.running

    @pytest.mark.asyncio
    async def test_first_sample_waits_one_interval(self) -> None:
        class TimedProbe:
            def __init__(self) -> None:
                self.called_at: list[float] = []

            async def sample(self) -> ResourceSample:
                self.called_at.append(time.monotonic())
                return ResourceSample(cpu_load_pct=1.0)

        probe = TimedProbe()
        sampler = ResourceSampler(probe, SampleSink(), interval_s=0.2)

        started = time.monotonic()
        await sampler.start()
        await asyncio.sleep(0.3)
        await sampler.stop()

        assert probe.called_at
        assert probe.called_at[0] - started >= 0.18

    @pytest.mark.asyncio
    async def test_stop_before_first_tick_takes_no_sample(self) -> None:
        probe = FakeProbe()
        sink = SampleSink()
        sampler = ResourceSampler(probe, sink, interval_s=0.5)

        await sampler.start()
        await asyncio.sleep(0.05)
        await sampler.stop()

        assert probe.calls == 0
        assert sink.samples == []

    @pytest.mark.asyncio
    async def test_probe_exception_does_not_stop_sampling(self) -> None:
        class FlakyProbe:
            def __init__(self) -> None:
                self.calls = 0

            async def sample(self) -> ResourceSample:
                self.calls += 1
                if self.calls == 1:
                    raise RuntimeError("probe unavailable")
                return ResourceSample(cpu_load_pct=5.0)

        probe = FlakyProbe()
        sink = SampleSink()
        sampler = ResourceSampler(probe, sink, interval_s=0.03)

        await sampler.start()
        await asyncio.sleep(0.15)
        await sampler.stop()

        assert probe.calls >= 2
        assert sink.samples
        assert sampler.samples_taken == probe.calls - 1
