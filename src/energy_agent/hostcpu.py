"""Host-wide CPU time between ticks, from /proc/stat."""

import asyncio
from dataclasses import dataclass
from pathlib import Path

from energy_agent.procfs import (
    DEFAULT_TICK_HZ,
    INTERVAL_MAX_S,
    INTERVAL_MIN_S,
    CpuTimes,
    clamp_interval,
    parse_proc_stat,
)

DEFAULT_PROC_STAT = Path("/proc/stat")


@dataclass(frozen=True)
class HostCpuSample:
    """Active/idle CPU-seconds across all cores during one interval."""

    ok: bool
    interval_seconds: float
    active_seconds: float = 0.0
    idle_seconds: float = 0.0
    delta_active_ticks: int = 0
    delta_idle_ticks: int = 0


@dataclass
class _HostCpuState:
    last_timestamp_ns: int | None = None
    last_active_ticks: int | None = None
    last_idle_ticks: int | None = None


def _read_cpu_times(path: Path) -> CpuTimes:
    return parse_proc_stat(path.read_text())


class HostCpuTimeReader:
    """Reads aggregate host CPU ticks and reports per-interval deltas.

    Raises OSError if the stat file cannot be read and CounterParseError if it
    is malformed; the sampling loop treats either as a skipped tick.
    """

    def __init__(
        self,
        stat_path: Path | str = DEFAULT_PROC_STAT,
        hz: int = DEFAULT_TICK_HZ,
        interval_min_s: float = INTERVAL_MIN_S,
        interval_max_s: float = INTERVAL_MAX_S,
    ) -> None:
        if hz <= 0:
            raise ValueError(f"hz must be > 0, got {hz}")
        self._stat_path = Path(stat_path)
        self._hz = hz
        self._interval_min = interval_min_s
        self._interval_max = interval_max_s
        self._state = _HostCpuState()

    @property
    def hz(self) -> int:
        return self._hz

    async def sample(self, now_ns: int) -> HostCpuSample:
        times = await asyncio.to_thread(_read_cpu_times, self._stat_path)
        active, idle = times.active_ticks, times.idle_ticks
        state = self._state

        if (
            state.last_timestamp_ns is None
            or state.last_active_ticks is None
            or state.last_idle_ticks is None
        ):
            state.last_timestamp_ns = now_ns
            state.last_active_ticks = active
            state.last_idle_ticks = idle
            return HostCpuSample(
                ok=True,
                interval_seconds=clamp_interval(0, self._interval_min, self._interval_max),
            )

        # Floor at zero: the counters are monotonic unless the kernel resets them
        delta_active = max(0, active - state.last_active_ticks)
        delta_idle = max(0, idle - state.last_idle_ticks)
        elapsed_s = (now_ns - state.last_timestamp_ns) / 1e9

        state.last_timestamp_ns = now_ns
        state.last_active_ticks = active
        state.last_idle_ticks = idle

        return HostCpuSample(
            ok=True,
            interval_seconds=clamp_interval(elapsed_s, self._interval_min, self._interval_max),
            active_seconds=delta_active / self._hz,
            idle_seconds=delta_idle / self._hz,
            delta_active_ticks=delta_active,
            delta_idle_ticks=delta_idle,
        )
