"""Parsers for Linux procfs CPU-time records.

Both /proc/stat and /proc/<pid>/stat report CPU time in clock ticks
(USER_HZ, almost always 100). Conversion to seconds is left to callers.
"""

import math
import os
from dataclasses import dataclass

DEFAULT_TICK_HZ = 100

# Interval bounds for rate computations. An interval outside this band is
# clamped, not rejected: after a VM freeze or suspend, energy/time would
# otherwise be meaningless.
INTERVAL_MIN_S = 0.2
INTERVAL_MAX_S = 5.0

# Order of the per-category counters on the aggregate "cpu" line
PROC_STAT_FIELDS = (
    "user",
    "nice",
    "system",
    "idle",
    "iowait",
    "irq",
    "softirq",
    "steal",
    "guest",
    "guest_nice",
)


class CounterParseError(ValueError):
    """A counter record did not have the expected shape."""


def clamp_interval(
    seconds: float,
    lo: float = INTERVAL_MIN_S,
    hi: float = INTERVAL_MAX_S,
) -> float:
    """Clamp an elapsed interval into [lo, hi].

    Non-finite or non-positive values map to ``lo``.
    """
    if not math.isfinite(seconds) or seconds <= 0:
        return lo
    if seconds < lo:
        return lo
    if seconds > hi:
        return hi
    return seconds


def system_tick_hz() -> int:
    """Return the kernel USER_HZ, falling back to 100."""
    try:
        hz = os.sysconf("SC_CLK_TCK")
    except (ValueError, OSError, AttributeError):
        return DEFAULT_TICK_HZ
    return hz if hz > 0 else DEFAULT_TICK_HZ


@dataclass(frozen=True)
class CpuTimes:
    """Aggregate host CPU ticks from the ``cpu`` line of /proc/stat."""

    user: int
    nice: int
    system: int
    idle: int
    iowait: int = 0
    irq: int = 0
    softirq: int = 0
    steal: int = 0
    guest: int = 0
    guest_nice: int = 0

    @property
    def active_ticks(self) -> int:
        # guest/guest_nice are already folded into user/nice by the kernel
        return self.user + self.nice + self.system + self.irq + self.softirq + self.steal

    @property
    def idle_ticks(self) -> int:
        return self.idle + self.iowait


@dataclass(frozen=True)
class PidStat:
    """The subset of /proc/<pid>/stat used for CPU attribution."""

    pid: int
    comm: str
    state: str
    utime: int
    stime: int
    starttime: int

    @property
    def app_ticks(self) -> int:
        return self.utime + self.stime


def parse_proc_stat(text: str) -> CpuTimes:
    """Parse the aggregate ``cpu`` line out of /proc/stat content.

    Older kernels expose fewer than ten counters; missing trailing
    fields default to zero.

    Raises:
        CounterParseError: If no aggregate line exists or a field is not an integer.
    """
    for line in text.splitlines():
        parts = line.split()
        if not parts or parts[0] != "cpu":
            continue
        raw = parts[1 : 1 + len(PROC_STAT_FIELDS)]
        if len(raw) < 4:
            raise CounterParseError(f"cpu line has {len(raw)} fields, expected at least 4")
        try:
            values = [int(v) for v in raw]
        except ValueError as e:
            raise CounterParseError(f"non-integer cpu counter: {e}") from e
        return CpuTimes(**dict(zip(PROC_STAT_FIELDS, values)))
    raise CounterParseError("no aggregate 'cpu' line found")


def parse_pid_stat(text: str) -> PidStat:
    """Parse /proc/<pid>/stat content.

    comm is wrapped in parentheses and may itself contain spaces or
    parentheses, so the split happens around the *last* ``)``.

    Raises:
        CounterParseError: On any structural or numeric problem.
    """
    text = text.strip()
    lparen = text.find("(")
    rparen = text.rfind(")")
    if lparen == -1 or rparen == -1 or rparen < lparen:
        raise CounterParseError("missing '(comm)' field")

    try:
        pid = int(text[:lparen].strip())
    except ValueError as e:
        raise CounterParseError(f"invalid pid field: {e}") from e

    comm = text[lparen + 1 : rparen]
    fields = text[rparen + 1 :].split()
    # Fields after comm start at field 3 (state); utime=14, stime=15, starttime=22
    if len(fields) < 20:
        raise CounterParseError(f"stat record truncated ({len(fields)} fields after comm)")

    try:
        utime = int(fields[11])
        stime = int(fields[12])
        starttime = int(fields[19])
    except ValueError as e:
        raise CounterParseError(f"non-integer cpu field: {e}") from e

    return PidStat(
        pid=pid,
        comm=comm,
        state=fields[0],
        utime=utime,
        stime=stime,
        starttime=starttime,
    )
