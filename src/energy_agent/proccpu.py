"""Per-process CPU time with PID-reuse detection.

The kernel's ``starttime`` (field 22 of /proc/<pid>/stat, in ticks since
boot) is fixed for the life of one process. If it changes between two reads
of the same PID, the PID now belongs to a different process and the old
baseline must not be used.
"""

import asyncio
import errno
import re
from dataclasses import dataclass
from pathlib import Path

import structlog

from energy_agent.procfs import DEFAULT_TICK_HZ, CounterParseError, PidStat, parse_pid_stat

log = structlog.get_logger()

_STAT_PATH_RE = re.compile(r"/proc/(\d+)/stat$")


@dataclass(frozen=True)
class ReadError:
    """Why a process record could not be read."""

    code: str  # errno name (ENOENT, EACCES, ...) or PARSE_ERROR
    message: str


@dataclass(frozen=True)
class ProcessCpuSample:
    """CPU-seconds one process consumed during one interval."""

    ok: bool
    pid: int
    app_cpu_seconds: float = 0.0
    restarted: bool = False
    ticks_now: int = 0
    delta_ticks: int = 0
    error: ReadError | None = None


@dataclass
class _ProcessCpuState:
    pid: int
    tick_hz: int
    last_app_ticks: int | None = None
    last_start_time: int | None = None
    primed: bool = False


def _read_pid_stat(path: Path) -> PidStat:
    return parse_pid_stat(path.read_text())


class ProcessCpuTimeReader:
    """Reads one process's utime+stime and reports per-interval deltas."""

    def __init__(
        self,
        pid: int,
        hz: int = DEFAULT_TICK_HZ,
        stat_path: Path | str | None = None,
    ) -> None:
        if not pid or pid <= 0:
            raise ValueError(f"pid must be a positive integer, got {pid!r}")
        if hz <= 0:
            raise ValueError(f"hz must be > 0, got {hz}")

        if stat_path is not None:
            match = _STAT_PATH_RE.search(str(stat_path))
            if match and int(match.group(1)) != pid:
                raise ValueError(f"Mismatch between pid ({pid}) and stat_path ({stat_path})")

        self._stat_path = Path(stat_path) if stat_path is not None else Path(f"/proc/{pid}/stat")
        self._state = _ProcessCpuState(pid=pid, tick_hz=hz)

    @property
    def pid(self) -> int:
        return self._state.pid

    @property
    def stat_path(self) -> Path:
        return self._stat_path

    async def sample(self) -> ProcessCpuSample:
        state = self._state
        try:
            stat = await asyncio.to_thread(_read_pid_stat, self._stat_path)
        except OSError as e:
            code = errno.errorcode.get(e.errno or 0, "UNKNOWN_ERROR")
            log.debug("pid_stat_read_failed", pid=state.pid, code=code, error=str(e))
            return ProcessCpuSample(
                ok=False, pid=state.pid, error=ReadError(code=code, message=str(e))
            )
        except CounterParseError as e:
            log.debug("pid_stat_parse_failed", pid=state.pid, error=str(e))
            return ProcessCpuSample(
                ok=False, pid=state.pid, error=ReadError(code="PARSE_ERROR", message=str(e))
            )

        ticks_now = stat.app_ticks

        if not state.primed:
            state.last_app_ticks = ticks_now
            state.last_start_time = stat.starttime
            state.primed = True
            return ProcessCpuSample(ok=True, pid=stat.pid, ticks_now=ticks_now)

        if stat.starttime != state.last_start_time:
            log.info(
                "pid_restart_detected",
                pid=stat.pid,
                previous_start=state.last_start_time,
                current_start=stat.starttime,
            )
            state.last_app_ticks = ticks_now
            state.last_start_time = stat.starttime
            return ProcessCpuSample(ok=True, pid=stat.pid, restarted=True, ticks_now=ticks_now)

        delta = max(0, ticks_now - (state.last_app_ticks or 0))
        state.last_app_ticks = ticks_now

        return ProcessCpuSample(
            ok=True,
            pid=stat.pid,
            app_cpu_seconds=delta / state.tick_hz,
            ticks_now=ticks_now,
            delta_ticks=delta,
        )
