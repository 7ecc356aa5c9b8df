"""Static CPU description from /proc/cpuinfo.

Gives vendor, model, core counts, clock spread and a few capability flags.
Used for startup logging, the ``cpu`` command and /healthz details; the
sampling path never depends on it.
"""

from dataclasses import dataclass, field
from pathlib import Path

from energy_agent.procfs import CounterParseError

DEFAULT_CPUINFO = "/proc/cpuinfo"

FLAG_CATEGORIES: dict[str, tuple[str, ...]] = {
    "virtualization": ("vmx", "svm", "ept", "npt", "tpr_shadow", "vme"),
    "security": ("nx", "smap", "smep", "md_clear", "pti", "lahf_lm", "rdtscp"),
    "crypto": ("aes", "rdrand", "rdseed", "sha_ni"),
    "performance": (
        "sse",
        "sse2",
        "sse3",
        "ssse3",
        "sse4_1",
        "sse4_2",
        "avx",
        "avx2",
        "fma",
        "mmx",
        "pni",
        "popcnt",
        "xsave",
        "xsaveopt",
        "xsavec",
        "xsaves",
    ),
    "management": ("hwp", "tsc", "cpuid", "clflush", "invariant_tsc", "constant_tsc"),
}


@dataclass(frozen=True)
class FrequencyStats:
    """Current clock across logical CPUs, in MHz."""

    total: float
    average: float
    max: float
    min: float

    @property
    def spread(self) -> float:
        return self.max - self.min

    @property
    def load_estimate(self) -> float:
        # Average clock relative to the fastest core; 1.0 means all at max
        return self.average / self.max if self.max > 0 else 0.0

    def to_dict(self) -> dict:
        return {
            "unit": "MHz",
            "total": self.total,
            "average": self.average,
            "max": self.max,
            "min": self.min,
            "spread": self.spread,
            "load_estimate": self.load_estimate,
        }


@dataclass(frozen=True)
class Capabilities:
    virtualisable: bool = False
    aes_support: bool = False
    hyper_threading: bool = False
    secure_boot_capable: bool = False


@dataclass(frozen=True)
class CpuProfile:
    """Summary of the host CPU."""

    vendor: str
    model: str
    physical_cores: int
    logical_cores: int
    packages: int = 1
    frequency: FrequencyStats | None = None
    cache: str | None = None
    power_management: str | None = None
    capabilities: Capabilities = field(default_factory=Capabilities)
    flag_groups: dict[str, list[str]] = field(default_factory=dict)

    def to_dict(self) -> dict:
        caps = self.capabilities
        return {
            "vendor": self.vendor,
            "model": self.model,
            "cores": {
                "physical": self.physical_cores,
                "logical": self.logical_cores,
                "packages": self.packages,
            },
            "frequency": self.frequency.to_dict() if self.frequency else None,
            "cache": self.cache,
            "power_management": self.power_management,
            "capabilities": {
                "virtualisable": caps.virtualisable,
                "aes_support": caps.aes_support,
                "hyper_threading": caps.hyper_threading,
                "secure_boot_capable": caps.secure_boot_capable,
            },
            "flag_groups": {k: list(v) for k, v in self.flag_groups.items()},
        }


def _normalize_key(key: str) -> str:
    return key.strip().lower().replace(" ", "_")


def parse_cpuinfo_blocks(text: str) -> list[dict[str, str]]:
    """Split /proc/cpuinfo into one dict per logical processor.

    Keys are lower-cased with spaces replaced by underscores
    ("model name" becomes "model_name"). Lines before the first
    ``processor`` entry are ignored.
    """
    blocks: list[dict[str, str]] = []
    current: dict[str, str] | None = None
    for line in text.replace("\r\n", "\n").split("\n"):
        key, sep, value = line.partition(":")
        if not sep:
            continue
        key = _normalize_key(key)
        if key == "processor":
            current = {}
            blocks.append(current)
        if current is not None:
            current[key] = value.strip()
    return blocks


def analyze_flags(flags: str) -> Capabilities:
    present = set(flags.split())
    return Capabilities(
        virtualisable="vmx" in present or "svm" in present,
        aes_support="aes" in present,
        hyper_threading="ht" in present,
        secure_boot_capable={"nx", "smap", "smep"} <= present,
    )


def group_flags(flags: str) -> dict[str, list[str]]:
    """Bucket the known flags by category, preserving cpuinfo order."""
    present = flags.split()
    return {
        name: [f for f in present if f in members] for name, members in FLAG_CATEGORIES.items()
    }


def _frequency(blocks: list[dict[str, str]]) -> FrequencyStats | None:
    mhz: list[float] = []
    for block in blocks:
        try:
            mhz.append(float(block["cpu_mhz"]))
        except (KeyError, ValueError):
            continue
    if not mhz:
        return None
    total = sum(mhz)
    return FrequencyStats(total=total, average=total / len(mhz), max=max(mhz), min=min(mhz))


def _int_field(block: dict[str, str], key: str) -> int | None:
    try:
        return int(block[key])
    except (KeyError, ValueError):
        return None


def parse_cpuinfo(text: str) -> CpuProfile:
    """Build a CpuProfile from /proc/cpuinfo content.

    Logical cores are the number of processor entries. Physical cores are
    ``cpu cores`` times the number of distinct ``physical id`` values;
    without ``cpu cores`` (ARM, some VMs) they equal the logical count.

    Raises:
        CounterParseError: If no processor entries are present.
    """
    blocks = parse_cpuinfo_blocks(text)
    if not blocks:
        raise CounterParseError("no processor entries in cpuinfo")

    first = blocks[0]
    # "flags" on x86, "features" on ARM
    flags = first.get("flags") or first.get("features") or ""
    packages = len({b["physical_id"] for b in blocks if "physical_id" in b}) or 1
    cores_per_package = _int_field(first, "cpu_cores")
    logical = len(blocks)
    physical = cores_per_package * packages if cores_per_package else logical

    return CpuProfile(
        vendor=first.get("vendor_id") or first.get("cpu_implementer") or "unknown",
        model=first.get("model_name") or first.get("hardware") or "unknown",
        physical_cores=physical,
        logical_cores=logical,
        packages=packages,
        frequency=_frequency(blocks),
        cache=first.get("cache_size"),
        power_management=first.get("power_management") or None,
        capabilities=analyze_flags(flags),
        flag_groups=group_flags(flags),
    )


def read_cpu_profile(path: Path | str = DEFAULT_CPUINFO) -> CpuProfile:
    """Read and parse a cpuinfo file.

    Raises:
        OSError: If the file cannot be read.
        CounterParseError: If it holds no processor entries.
    """
    return parse_cpuinfo(Path(path).read_text())
