"""Shared test fixtures for energy-agent."""

from pathlib import Path

import pytest


def make_rapl_node(
    base: Path,
    node: str,
    name: str,
    energy_uj: int,
    max_range_uj: int | None = 262143328850,
) -> Path:
    """Create a fake powercap domain directory."""
    node_dir = base / node
    node_dir.mkdir(parents=True, exist_ok=True)
    (node_dir / "name").write_text(f"{name}\n")
    (node_dir / "energy_uj").write_text(f"{energy_uj}\n")
    if max_range_uj is not None:
        (node_dir / "max_energy_range_uj").write_text(f"{max_range_uj}\n")
    return node_dir


def set_energy(node_dir: Path, energy_uj: int) -> None:
    (node_dir / "energy_uj").write_text(f"{energy_uj}\n")


def proc_stat_text(
    user: int = 1000,
    nice: int = 0,
    system: int = 500,
    idle: int = 8000,
    iowait: int = 100,
    irq: int = 10,
    softirq: int = 20,
    steal: int = 0,
) -> str:
    """Render a /proc/stat body with one aggregate and one per-core line."""
    return (
        f"cpu  {user} {nice} {system} {idle} {iowait} {irq} {softirq} {steal} 0 0\n"
        f"cpu0 {user} {nice} {system} {idle} {iowait} {irq} {softirq} {steal} 0 0\n"
        "intr 12345 0 0\n"
        "ctxt 67890\n"
        "btime 1700000000\n"
    )


def pid_stat_text(
    pid: int = 4242,
    comm: str = "worker",
    utime: int = 100,
    stime: int = 50,
    starttime: int = 123456,
    state: str = "S",
) -> str:
    """Render a /proc/<pid>/stat line with the given CPU fields."""
    # Fields after comm: state(3) ppid pgrp session tty_nr tpgid flags minflt
    # cminflt majflt cmajflt utime(14) stime(15) cutime cstime priority nice
    # num_threads itrealvalue starttime(22) vsize rss
    after = [
        state, "1", "4242", "4242", "0", "-1", "4194304", "120", "0", "0", "0",
        str(utime), str(stime), "0", "0", "20", "0", "4", "0", str(starttime),
        "12345678", "2048",
    ]  # fmt: skip
    return f"{pid} ({comm}) " + " ".join(after) + "\n"


def cpuinfo_text(
    mhz: tuple[float, ...] = (2400.0, 3600.0, 1800.0, 2200.0),
    cores_per_package: int | None = 2,
    physical_ids: tuple[int, ...] | None = None,
    flags: str = "fpu vme sse sse2 ht nx aes avx avx2 vmx smap smep constant_tsc",
    model: str = "Intel(R) Xeon(R) CPU E5-2680 v4 @ 2.40GHz",
) -> str:
    """Render a /proc/cpuinfo with one entry per value in ``mhz``."""
    blocks = []
    for i, freq in enumerate(mhz):
        lines = [
            f"processor\t: {i}",
            "vendor_id\t: GenuineIntel",
            f"model name\t: {model}",
            f"cpu MHz\t\t: {freq:.3f}",
            "cache size\t: 35840 KB",
            f"physical id\t: {physical_ids[i] if physical_ids else 0}",
            f"siblings\t: {len(mhz)}",
        ]
        if cores_per_package is not None:
            lines.append(f"cpu cores\t: {cores_per_package}")
        lines += [f"flags\t\t: {flags}", "power management:"]
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks) + "\n\n"


@pytest.fixture
def powercap(tmp_path: Path) -> Path:
    """Empty powercap base directory."""
    base = tmp_path / "powercap"
    base.mkdir()
    return base


@pytest.fixture
def intel_powercap(powercap: Path) -> Path:
    """Powercap tree with one package domain and one core subdomain."""
    make_rapl_node(powercap, "intel-rapl:0", "package-0", 1_000_000)
    make_rapl_node(powercap, "intel-rapl:0:0", "core", 500_000)
    return powercap


@pytest.fixture
def proc_stat(tmp_path: Path) -> Path:
    """A writable fake /proc/stat."""
    path = tmp_path / "stat"
    path.write_text(proc_stat_text())
    return path


@pytest.fixture
def isolated_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point HOME at a temp dir so Config paths never touch the real one."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    return home


@pytest.fixture
def cpuinfo(tmp_path: Path) -> Path:
    """A fake /proc/cpuinfo with four logical CPUs on one package."""
    path = tmp_path / "cpuinfo"
    path.write_text(cpuinfo_text())
    return path
