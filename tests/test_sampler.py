"""Tests for the sampling loop and CPU-share attribution."""

import asyncio
from pathlib import Path
from unittest.mock import patch

import pytest

from energy_agent.energy import EnergyCounterReader, EnergySample, probe_energy_sources
from energy_agent.hostcpu import HostCpuSample, HostCpuTimeReader
from energy_agent.proccpu import ProcessCpuSample, ReadError
from energy_agent.sampler import (
    HostEnergy,
    SamplingLoop,
    SharedState,
    Telemetry,
    compute_attribution,
)

from tests.conftest import make_rapl_node, set_energy


class FakeEnergy:
    """Energy reader returning a fixed power, optionally slow or failing."""

    def __init__(self, watts: float = 10.0, interval: float = 1.0, delay: float = 0.0):
        self.watts = watts
        self.interval = interval
        self.delay = delay
        self.fail_with: Exception | None = None
        self.calls = 0
        self.active = 0
        self.max_active = 0

    async def sample(self, now_ns: int) -> EnergySample:
        self.calls += 1
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.fail_with is not None:
                raise self.fail_with
            return EnergySample(
                ok=True,
                interval_seconds=self.interval,
                delta_microjoules=int(self.watts * self.interval * 1e6),
                delta_joules=self.watts * self.interval,
                average_power_watts=self.watts,
                source_packages=("intel-rapl:0",),
            )
        finally:
            self.active -= 1


class FakeHost:
    def __init__(self, active_seconds: float = 2.0):
        self.active_seconds = active_seconds

    async def sample(self, now_ns: int) -> HostCpuSample:
        return HostCpuSample(ok=True, interval_seconds=1.0, active_seconds=self.active_seconds)


class FakeProcess:
    def __init__(self, app_seconds: float = 0.5, pid: int = 4242):
        self.app_seconds = app_seconds
        self.pid = pid
        self.ok = True
        self.restarted = False

    async def sample(self) -> ProcessCpuSample:
        if not self.ok:
            return ProcessCpuSample(
                ok=False, pid=self.pid, error=ReadError(code="ENOENT", message="gone")
            )
        return ProcessCpuSample(
            ok=True,
            pid=self.pid,
            app_cpu_seconds=0.0 if self.restarted else self.app_seconds,
            restarted=self.restarted,
        )


def _loop(energy=None, host=None, process=None, **kwargs) -> SamplingLoop:
    return SamplingLoop(
        energy=energy or FakeEnergy(),
        host=host or FakeHost(),
        process=process,
        shared=SharedState(),
        **kwargs,
    )


class TestComputeAttribution:
    def test_proportional_share(self):
        result = compute_attribution(0.5, 2.0, 10.0, 1.0, logical_cores=4)
        assert result.cpu_share == pytest.approx(0.25)
        assert result.power_watts == pytest.approx(2.5)
        assert result.energy_joules == pytest.approx(2.5)

    def test_energy_scales_with_interval(self):
        result = compute_attribution(1.0, 2.0, 10.0, 0.5, logical_cores=4)
        assert result.energy_joules == pytest.approx(2.5)

    def test_zero_host_active_clamped_to_cores(self):
        result = compute_attribution(0.1, 0.0, 10.0, 1.0, logical_cores=8)
        assert result.cpu_share == 8.0
        assert result.power_watts == pytest.approx(80.0)

    def test_zero_app(self):
        assert compute_attribution(0.0, 0.0, 10.0, 1.0, logical_cores=2).cpu_share == 0.0

    def test_negative_app_floored(self):
        assert compute_attribution(-1.0, 2.0, 10.0, 1.0, logical_cores=2).cpu_share == 0.0


class TestTick:
    @pytest.mark.asyncio
    async def test_publishes_host_only(self):
        loop = _loop()
        assert await loop.tick() is True

        latest = loop.shared.latest
        assert latest is not None
        assert latest.host_energy.average_power_watts == 10.0
        assert latest.host_energy.energy_joules_interval == pytest.approx(10.0)
        assert latest.cpu_distribution is None
        assert latest.app_energy is None
        assert latest.tick == 1

    @pytest.mark.asyncio
    async def test_publishes_attribution(self):
        loop = _loop(process=FakeProcess(app_seconds=0.5), logical_cores=4)
        await loop.tick()

        latest = loop.shared.latest
        assert latest.cpu_distribution.target_pid == 4242
        assert latest.cpu_distribution.host_cpu_seconds_interval == 2.0
        assert latest.cpu_distribution.app_share_ratio == pytest.approx(0.25)
        assert latest.app_energy.average_power_watts == pytest.approx(2.5)
        assert latest.app_energy.energy_joules_interval == pytest.approx(2.5)

    @pytest.mark.asyncio
    async def test_restart_attributes_nothing(self):
        process = FakeProcess()
        process.restarted = True
        loop = _loop(process=process)
        await loop.tick()

        latest = loop.shared.latest
        assert latest.cpu_distribution.pid_restarted is True
        assert latest.app_energy.average_power_watts == 0.0

    @pytest.mark.asyncio
    async def test_reader_exception_keeps_previous(self):
        energy = FakeEnergy()
        loop = _loop(energy=energy)
        await loop.tick()
        previous = loop.shared.latest

        energy.fail_with = OSError("read failed")
        assert await loop.tick() is False

        assert loop.shared.latest is previous
        assert loop.failed_ticks == 1
        assert loop.tick_count == 1

    @pytest.mark.asyncio
    async def test_process_not_ok_skips_publication(self):
        process = FakeProcess()
        loop = _loop(process=process)
        await loop.tick()
        previous = loop.shared.latest

        process.ok = False
        assert await loop.tick() is False
        assert loop.shared.latest is previous

    @pytest.mark.asyncio
    async def test_energy_not_ok_skips_publication(self):
        class NoSources(FakeEnergy):
            async def sample(self, now_ns):
                return EnergySample(ok=False, interval_seconds=0.2)

        loop = _loop(energy=NoSources())
        assert await loop.tick() is False
        assert loop.shared.latest is None

    @pytest.mark.asyncio
    async def test_energy_counters_vanish_keeps_previous(self, powercap: Path, proc_stat: Path):
        node = make_rapl_node(powercap, "intel-rapl:0", "package-0", 0)
        energy = EnergyCounterReader(probe_energy_sources(powercap).sources)
        loop = _loop(energy=energy, host=HostCpuTimeReader(stat_path=proc_stat))
        await loop.tick()
        set_energy(node, 100_000_000)
        assert await loop.tick() is True
        previous = loop.shared.latest
        assert previous.host_energy.energy_joules_interval == pytest.approx(100.0)

        (node / "energy_uj").unlink()
        assert await loop.tick() is False

        assert loop.shared.latest is previous
        assert loop.failed_ticks == 1

    @pytest.mark.asyncio
    async def test_unexpected_error_is_logged_and_counted(self):
        class BrokenShared(SharedState):
            def publish(self, telemetry):
                raise RuntimeError("disk full")

        loop = SamplingLoop(
            energy=FakeEnergy(), host=FakeHost(), process=None, shared=BrokenShared()
        )

        with patch("energy_agent.sampler.log") as mock_log:
            assert await loop.tick() is False

        mock_log.exception.assert_called_once()
        assert mock_log.exception.call_args.args[0] == "tick_crashed"
        assert loop.failed_ticks == 1
        assert loop.in_flight is False
        # Gate released: the next tick runs
        assert await loop.tick() is False
        assert loop.failed_ticks == 2

    @pytest.mark.asyncio
    async def test_failures_recorded_on_shared_state(self):
        energy = FakeEnergy()
        loop = _loop(energy=energy)
        await loop.tick()
        assert loop.shared.age_seconds() is not None

        energy.fail_with = OSError("read failed")
        await loop.tick()
        await loop.tick()
        assert loop.shared.failed_ticks == 2
        assert loop.shared.consecutive_failures == 2

        energy.fail_with = None
        await loop.tick()
        assert loop.shared.failed_ticks == 2
        assert loop.shared.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_overlapping_tick_skipped(self):
        """A tick that comes due while one is in flight does not run."""
        energy = FakeEnergy(delay=0.05)
        loop = _loop(energy=energy)

        first = asyncio.create_task(loop.tick())
        await asyncio.sleep(0)
        assert loop.in_flight is True

        assert await loop.tick() is False
        assert await first is True

        assert energy.calls == 1
        assert energy.max_active == 1
        assert loop.skipped_ticks == 1
        assert loop.in_flight is False


class TestRun:
    @pytest.mark.asyncio
    async def test_run_until_stopped(self):
        loop = _loop(period_s=0.01)
        task = asyncio.create_task(loop.run())
        await asyncio.sleep(0.1)
        loop.stop()
        await asyncio.wait_for(task, timeout=1.0)

        assert loop.tick_count >= 2
        assert loop.shared.latest is not None

    @pytest.mark.asyncio
    async def test_slow_reader_never_overlaps(self):
        energy = FakeEnergy(delay=0.035)
        loop = _loop(energy=energy, period_s=0.01)
        task = asyncio.create_task(loop.run())
        await asyncio.sleep(0.2)
        loop.stop()
        await asyncio.wait_for(task, timeout=1.0)

        assert energy.max_active == 1
        assert loop.skipped_ticks > 0

    def test_invalid_period(self):
        with pytest.raises(ValueError):
            _loop(period_s=0)


class TestTelemetry:
    def test_to_dict_host_only(self):
        telemetry = Telemetry(
            host_energy=HostEnergy(
                average_power_watts=12.0,
                energy_joules_interval=12.0,
                interval_seconds=1.0,
                timestamp_utc="2024-01-01T00:00:00+00:00",
            ),
            wrap_count=1,
            tick=3,
        )
        data = telemetry.to_dict()
        assert data["hostEnergy"]["averagePowerWatts"] == 12.0
        assert data["hostEnergy"]["timestampUtc"] == "2024-01-01T00:00:00+00:00"
        assert data["cpuDistribution"] is None
        assert data["appEnergy"] is None
        assert data["wrapCount"] == 1
        assert data["tick"] == 3

    def test_telemetry_is_frozen(self):
        telemetry = Telemetry(host_energy=HostEnergy(1.0, 1.0, 1.0, "t"))
        with pytest.raises(AttributeError):
            telemetry.tick = 5


def test_shared_state_swaps_reference():
    shared = SharedState()
    assert shared.latest is None
    a = Telemetry(host_energy=HostEnergy(1.0, 1.0, 1.0, "a"))
    b = Telemetry(host_energy=HostEnergy(2.0, 2.0, 1.0, "b"))
    shared.publish(a)
    assert shared.latest is a
    shared.publish(b)
    assert shared.latest is b
