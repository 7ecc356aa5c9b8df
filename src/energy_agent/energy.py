"""RAPL energy counters: source discovery and wrap-corrected interval power.

Each power domain under /sys/class/powercap exposes ``energy_uj``, a
cumulative microjoule counter, and optionally ``max_energy_range_uj``, the
modulus at which that counter wraps back to zero. A decrease between two
reads therefore means one wrap when the modulus is known:

    delta = current + max_range - last

All counter arithmetic stays in Python ints; floats appear only in the final
joule/watt scaling.
"""

import asyncio
import errno
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

import structlog

from energy_agent.procfs import INTERVAL_MAX_S, INTERVAL_MIN_S, clamp_interval

log = structlog.get_logger()

DEFAULT_POWERCAP_PATH = Path("/sys/class/powercap")

_ERRNO_REASONS = {
    "EACCES": "permission_denied",
    "EPERM": "operation_not_permitted",
    "ENOENT": "not_found",
    "ELOOP": "symlink_loop",
    "ENOTDIR": "not_a_directory",
}


class Status(str, Enum):
    """Health status, ordered by severity."""

    OK = "OK"
    DEGRADED = "DEGRADED"
    FAILED = "FAILED"

    @property
    def severity(self) -> int:
        return _STATUS_SEVERITY[self]


_STATUS_SEVERITY = {Status.OK: 0, Status.DEGRADED: 1, Status.FAILED: 2}


def worst_status(statuses: list[Status]) -> Status:
    """Return the most severe status (OK < DEGRADED < FAILED)."""
    return max(statuses, key=lambda s: s.severity, default=Status.OK)


@dataclass(frozen=True)
class EnergySource:
    """One discovered RAPL package domain."""

    node: str  # Directory name, e.g. "intel-rapl:0"
    path: Path
    name: str  # Contents of the "name" file, e.g. "package-0"
    energy_file: Path
    max_range_uj: int | None = None
    readable: bool = True
    reason: str | None = None  # Why energy_uj is unreadable

    @property
    def vendor(self) -> str:
        if self.node.startswith("intel-rapl"):
            return "intel"
        if self.node.startswith("amd-rapl"):
            return "amd"
        return "unknown"

    def to_dict(self) -> dict:
        return {
            "node": self.node,
            "path": str(self.path),
            "name": self.name,
            "vendor": self.vendor,
            "readable": self.readable,
            "reason": self.reason,
            "max_energy_range_uj": self.max_range_uj,
        }


@dataclass(frozen=True)
class EnergyProbe:
    """Result of scanning the powercap tree.

    Status contract for operators:
    - FAILED: base path not accessible, or no package domains found
    - DEGRADED: package domains exist but none is readable
    - OK: at least one package domain is readable
    """

    status: Status
    sources: tuple[EnergySource, ...] = ()
    hint: str | None = None

    @property
    def vendor(self) -> str:
        readable = [s for s in self.sources if s.readable]
        if readable:
            return readable[0].vendor
        return self.sources[0].vendor if self.sources else "unknown"

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "vendor": self.vendor,
            "packages": [s.to_dict() for s in self.sources],
            "hint": self.hint,
        }


def _reason_from_error(e: OSError) -> str:
    code = errno.errorcode.get(e.errno or 0, "UNKNOWN")
    return _ERRNO_REASONS.get(code, code.lower())


def _read_int(path: Path) -> int:
    return int(path.read_text().strip())


def probe_energy_sources(base_path: Path | str = DEFAULT_POWERCAP_PATH) -> EnergyProbe:
    """Scan ``base_path`` for RAPL package domains.

    Only directories whose ``name`` contains ``package-`` are kept; core,
    uncore and dram subdomains are already included in their package total.
    """
    base = Path(base_path)
    try:
        entries = sorted(base.iterdir())
    except OSError:
        return EnergyProbe(status=Status.FAILED, hint=f"{base} not accessible")

    sources: list[EnergySource] = []
    for entry in entries:
        if not entry.is_dir():
            continue
        try:
            name = (entry / "name").read_text().strip()
        except OSError:
            continue
        if "package-" not in name:
            continue

        energy_file = entry / "energy_uj"
        readable = os.access(energy_file, os.R_OK)
        reason = None
        if not readable:
            try:
                energy_file.stat()
                reason = "permission_denied"
            except OSError as e:
                reason = _reason_from_error(e)

        max_range: int | None = None
        try:
            max_range = _read_int(entry / "max_energy_range_uj")
        except (OSError, ValueError):
            pass

        try:
            energy_file = energy_file.resolve()
        except OSError:
            pass

        sources.append(
            EnergySource(
                node=entry.name,
                path=entry,
                name=name,
                energy_file=energy_file,
                max_range_uj=max_range,
                readable=readable,
                reason=reason,
            )
        )

    if not sources:
        return EnergyProbe(
            status=Status.FAILED,
            hint="No RAPL packages found (intel-rapl:N or amd-rapl:N). VM without powercap?",
        )

    if any(s.readable for s in sources):
        return EnergyProbe(status=Status.OK, sources=tuple(sources))

    return EnergyProbe(
        status=Status.DEGRADED,
        sources=tuple(sources),
        hint="RAPL present but unreadable (permissions). Run as root or grant read access.",
    )


@dataclass(frozen=True)
class EnergySample:
    """Energy consumed across all packages during one interval."""

    ok: bool
    interval_seconds: float
    delta_microjoules: int = 0
    delta_joules: float = 0.0
    average_power_watts: float = 0.0
    wrap_count: int = 0
    source_packages: tuple[str, ...] = ()


@dataclass
class _CounterState:
    id: str
    counter_file: Path
    max_range: int | None
    last_value: int | None = None


@dataclass
class _ReaderState:
    last_ns: int | None = None
    counters: list[_CounterState] = field(default_factory=list)


class EnergyCounterReader:
    """Turns cumulative RAPL counters into interval energy and average power."""

    def __init__(
        self,
        sources: list[EnergySource] | tuple[EnergySource, ...],
        interval_min_s: float = INTERVAL_MIN_S,
        interval_max_s: float = INTERVAL_MAX_S,
    ) -> None:
        self._interval_min = interval_min_s
        self._interval_max = interval_max_s
        self._state = _ReaderState(
            counters=[
                _CounterState(id=s.node, counter_file=s.energy_file, max_range=s.max_range_uj)
                for s in sources
                if s.readable
            ]
        )

    @property
    def source_count(self) -> int:
        """Number of readable sources this reader tracks."""
        return len(self._state.counters)

    async def _read_all(self) -> list[int | None]:
        async def read_one(counter: _CounterState) -> int | None:
            try:
                return await asyncio.to_thread(_read_int, counter.counter_file)
            except (OSError, ValueError) as e:
                log.debug("energy_counter_read_failed", source=counter.id, error=str(e))
                return None

        return await asyncio.gather(*(read_one(c) for c in self._state.counters))

    async def sample(self, now_ns: int) -> EnergySample:
        """Read every source and return energy used since the previous call."""
        state = self._state
        readings = await self._read_all()
        read_count = sum(1 for value in readings if value is not None)

        if state.last_ns is None:
            for counter, value in zip(state.counters, readings):
                counter.last_value = value
            state.last_ns = now_ns
            return EnergySample(
                ok=read_count > 0,
                interval_seconds=clamp_interval(0, self._interval_min, self._interval_max),
            )

        elapsed_s = (now_ns - state.last_ns) / 1e9
        state.last_ns = now_ns
        interval = clamp_interval(elapsed_s, self._interval_min, self._interval_max)

        if read_count == 0:
            log.warning("energy_read_failed", sources=len(state.counters))
            return EnergySample(ok=False, interval_seconds=interval)

        total_uj = 0
        wraps = 0
        contributed: list[str] = []
        for counter, current in zip(state.counters, readings):
            if current is None:
                continue
            last = counter.last_value
            counter.last_value = current
            if last is None:
                continue

            delta = current - last
            if delta < 0:
                if counter.max_range is None:
                    log.debug(
                        "energy_counter_negative_delta",
                        source=counter.id,
                        last=last,
                        current=current,
                    )
                    continue
                delta = current + counter.max_range - last
                if delta < 0:
                    log.debug(
                        "energy_counter_bad_wrap",
                        source=counter.id,
                        last=last,
                        current=current,
                        max_range=counter.max_range,
                    )
                    continue
                wraps += 1
            total_uj += delta
            contributed.append(counter.id)

        delta_j = total_uj / 1e6
        return EnergySample(
            ok=True,
            interval_seconds=interval,
            delta_microjoules=total_uj,
            delta_joules=delta_j,
            average_power_watts=delta_j / interval,
            wrap_count=wraps,
            source_packages=tuple(contributed),
        )
