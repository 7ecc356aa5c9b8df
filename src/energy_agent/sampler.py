"""Periodic sampling and CPU-share energy attribution.

Each tick reads the three counters concurrently, combines them and swaps a
new immutable Telemetry snapshot into SharedState. Ticks never overlap: a
tick that comes due while the previous one is still running is skipped.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone

import structlog

from energy_agent.energy import EnergyCounterReader, EnergySample
from energy_agent.hostcpu import HostCpuSample, HostCpuTimeReader
from energy_agent.proccpu import ProcessCpuSample, ProcessCpuTimeReader

log = structlog.get_logger()

# Lower bound on host active seconds when computing a ratio
SHARE_EPSILON = 1e-9


@dataclass(frozen=True)
class HostEnergy:
    average_power_watts: float
    energy_joules_interval: float
    interval_seconds: float
    timestamp_utc: str


@dataclass(frozen=True)
class CpuDistribution:
    target_pid: int
    host_cpu_seconds_interval: float
    app_cpu_seconds_interval: float
    app_share_ratio: float
    pid_restarted: bool


@dataclass(frozen=True)
class AppEnergy:
    average_power_watts: float
    energy_joules_interval: float


@dataclass(frozen=True)
class Telemetry:
    """One published reading. Never mutated after construction."""

    host_energy: HostEnergy
    cpu_distribution: CpuDistribution | None = None
    app_energy: AppEnergy | None = None
    wrap_count: int = 0
    tick: int = 0

    def to_dict(self) -> dict:
        """Render with the camelCase field names consumers expect."""
        host = self.host_energy
        data: dict = {
            "hostEnergy": {
                "averagePowerWatts": host.average_power_watts,
                "energyJoulesInterval": host.energy_joules_interval,
                "intervalSeconds": host.interval_seconds,
                "timestampUtc": host.timestamp_utc,
            },
            "cpuDistribution": None,
            "appEnergy": None,
            "wrapCount": self.wrap_count,
            "tick": self.tick,
        }
        if self.cpu_distribution is not None:
            cpu = self.cpu_distribution
            data["cpuDistribution"] = {
                "targetPid": cpu.target_pid,
                "hostCpuSecondsInterval": cpu.host_cpu_seconds_interval,
                "appCpuSecondsInterval": cpu.app_cpu_seconds_interval,
                "appShareRatio": cpu.app_share_ratio,
                "pidRestarted": cpu.pid_restarted,
            }
        if self.app_energy is not None:
            data["appEnergy"] = {
                "averagePowerWatts": self.app_energy.average_power_watts,
                "energyJoulesInterval": self.app_energy.energy_joules_interval,
            }
        return data


class SharedState:
    """Single-writer slot for the latest Telemetry.

    The sampling loop replaces ``latest`` wholesale; readers always see
    either the previous or the new snapshot, never a mix. Failed ticks are
    counted here too so readers can tell a stale snapshot from a fresh one.
    """

    def __init__(self) -> None:
        self._latest: Telemetry | None = None
        self._published_at: float | None = None
        self.failed_ticks = 0
        self.consecutive_failures = 0

    @property
    def latest(self) -> Telemetry | None:
        return self._latest

    def publish(self, telemetry: Telemetry) -> None:
        self._latest = telemetry
        self._published_at = time.monotonic()
        self.consecutive_failures = 0

    def record_failure(self) -> None:
        self.failed_ticks += 1
        self.consecutive_failures += 1

    def age_seconds(self) -> float | None:
        """Seconds since the latest snapshot was published."""
        if self._published_at is None:
            return None
        return time.monotonic() - self._published_at


@dataclass(frozen=True)
class Attribution:
    cpu_share: float
    power_watts: float
    energy_joules: float


def compute_attribution(
    app_cpu_seconds: float,
    host_active_seconds: float,
    host_power_watts: float,
    interval_seconds: float,
    logical_cores: int,
) -> Attribution:
    """Attribute host power to the target by its share of active CPU time.

    The share is clamped to [0, logical_cores] so a near-zero host reading
    cannot blow up the ratio.
    """
    share = app_cpu_seconds / max(host_active_seconds, SHARE_EPSILON)
    share = min(max(share, 0.0), float(logical_cores))
    power = share * host_power_watts
    return Attribution(cpu_share=share, power_watts=power, energy_joules=power * interval_seconds)


class ReaderFailed(Exception):
    """A reader produced no usable data this tick."""


class SamplingLoop:
    """Drives non-overlapping ticks and publishes attributed telemetry."""

    def __init__(
        self,
        energy: EnergyCounterReader,
        host: HostCpuTimeReader,
        process: ProcessCpuTimeReader | None,
        shared: SharedState,
        period_s: float = 1.0,
        logical_cores: int = 1,
    ) -> None:
        if period_s <= 0:
            raise ValueError(f"period_s must be > 0, got {period_s}")
        self.energy = energy
        self.host = host
        self.process = process
        self.shared = shared
        self.period_s = period_s
        self.logical_cores = max(1, logical_cores)

        self.tick_count = 0
        self.skipped_ticks = 0
        self.failed_ticks = 0
        self._in_flight = False
        self._stop_event = asyncio.Event()
        self._tasks: set[asyncio.Task] = set()

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    def stop(self) -> None:
        self._stop_event.set()

    async def run(self) -> None:
        """Fire a tick every period until stop() is called.

        Ticks are launched as tasks so a slow tick does not delay the
        schedule; the in-flight gate decides whether a tick actually runs.
        """
        loop = asyncio.get_running_loop()
        next_due = loop.time()

        while not self._stop_event.is_set():
            task = asyncio.create_task(self.tick())
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

            next_due += self.period_s
            delay = next_due - loop.time()
            if delay < 0:
                # Fell behind (suspend, long GC): realign instead of bursting
                next_due = loop.time()
                delay = 0
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            except TimeoutError:
                pass

        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def tick(self) -> bool:
        """Run one sampling pass. Returns True if a new snapshot was published."""
        if self._in_flight:
            self.skipped_ticks += 1
            log.debug("tick_skipped", reason="previous_tick_in_flight")
            return False

        self._in_flight = True
        try:
            return await self._sample_once()
        except Exception as e:
            self._record_failure()
            log.exception("tick_crashed", error=str(e))
            return False
        finally:
            self._in_flight = False

    def _record_failure(self) -> None:
        self.failed_ticks += 1
        self.shared.record_failure()

    async def _read_process(self) -> ProcessCpuSample | None:
        if self.process is None:
            return None
        return await self.process.sample()

    async def _sample_once(self) -> bool:
        now_ns = time.monotonic_ns()
        results = await asyncio.gather(
            self.energy.sample(now_ns),
            self.host.sample(now_ns),
            self._read_process(),
            return_exceptions=True,
        )

        try:
            energy, host, proc = self._check(results)
        except ReaderFailed as e:
            self._record_failure()
            log.warning("sample_failed", error=str(e))
            return False

        self.tick_count += 1
        telemetry = self._combine(energy, host, proc)
        self.shared.publish(telemetry)
        log.debug(
            "tick_published",
            tick=self.tick_count,
            host_power_w=round(energy.average_power_watts, 3),
            app_share=(
                round(telemetry.cpu_distribution.app_share_ratio, 4)
                if telemetry.cpu_distribution
                else None
            ),
        )
        return True

    @staticmethod
    def _check(
        results: list,
    ) -> tuple[EnergySample, HostCpuSample, ProcessCpuSample | None]:
        energy, host, proc = results
        errors: list[str] = []
        for name, result in (("energy", energy), ("host_cpu", host), ("process_cpu", proc)):
            if isinstance(result, BaseException):
                errors.append(f"{name}: {type(result).__name__}: {result}")
            elif result is not None and not result.ok:
                detail = getattr(result, "error", None)
                errors.append(f"{name}: not ok" + (f" ({detail.code})" if detail else ""))
        if errors:
            raise ReaderFailed("; ".join(errors))
        return energy, host, proc

    def _combine(
        self,
        energy: EnergySample,
        host: HostCpuSample,
        proc: ProcessCpuSample | None,
    ) -> Telemetry:
        interval = energy.interval_seconds
        host_energy = HostEnergy(
            average_power_watts=energy.average_power_watts,
            energy_joules_interval=energy.delta_joules,
            interval_seconds=interval,
            timestamp_utc=datetime.now(timezone.utc).isoformat(),
        )
        if proc is None:
            return Telemetry(
                host_energy=host_energy, wrap_count=energy.wrap_count, tick=self.tick_count
            )

        attribution = compute_attribution(
            app_cpu_seconds=proc.app_cpu_seconds,
            host_active_seconds=host.active_seconds,
            host_power_watts=energy.average_power_watts,
            interval_seconds=interval,
            logical_cores=self.logical_cores,
        )
        return Telemetry(
            host_energy=host_energy,
            cpu_distribution=CpuDistribution(
                target_pid=proc.pid,
                host_cpu_seconds_interval=host.active_seconds,
                app_cpu_seconds_interval=proc.app_cpu_seconds,
                app_share_ratio=attribution.cpu_share,
                pid_restarted=proc.restarted,
            ),
            app_energy=AppEnergy(
                average_power_watts=attribution.power_watts,
                energy_joules_interval=attribution.energy_joules,
            ),
            wrap_count=energy.wrap_count,
            tick=self.tick_count,
        )
