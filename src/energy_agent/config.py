"""Configuration system for energy-agent."""

from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any

import tomlkit

from energy_agent.procfs import DEFAULT_TICK_HZ, INTERVAL_MAX_S, INTERVAL_MIN_S
from energy_agent.resolver import DEFAULT_STRICT_DELAY_MS, DEFAULT_TIMEOUT_MS, Pick, Strategy


@dataclass
class SamplingConfig:
    """Sampling loop configuration."""

    period_ms: int = 1000  # Milliseconds between ticks
    tick_hz: int = DEFAULT_TICK_HZ  # USER_HZ used by /proc CPU counters
    interval_min_s: float = INTERVAL_MIN_S  # Clamp band for measured intervals
    interval_max_s: float = INTERVAL_MAX_S
    proc_stat_path: str = "/proc/stat"
    cpuinfo_path: str = "/proc/cpuinfo"

    @property
    def period_s(self) -> float:
        return self.period_ms / 1000


@dataclass
class EnergyConfig:
    """RAPL energy source configuration."""

    base_path: str = "/sys/class/powercap"


@dataclass
class TargetConfig:
    """Which process to measure and how to validate its identity.

    An empty strategy means host-only measurement.
    """

    strategy: str = ""  # "", "file", "command" ("env" and "port" are reserved)
    pid_file: str = ""
    command_pattern: str = ""
    full_command: bool = False  # Match pattern against full args, not just comm
    case_sensitive: bool = False
    pick: str = "first"  # first/oldest/newest when several processes match
    ensure_unique: bool = False
    # Identity constraints (empty = not checked)
    name: list[str] = field(default_factory=list)
    cmd_regex: str = ""
    user: str = ""
    # PID reuse protection
    strict: bool = False
    strict_delay_ms: int = DEFAULT_STRICT_DELAY_MS
    timeout_ms: int = DEFAULT_TIMEOUT_MS

    @property
    def enabled(self) -> bool:
        return bool(self.strategy)

    def to_resolver_options(self) -> dict[str, Any]:
        """Build the mapping accepted by ProcessIdentityResolver."""
        constraints: dict[str, Any] = {}
        if self.name:
            constraints["name"] = list(self.name)
        if self.cmd_regex:
            constraints["cmd_pattern"] = self.cmd_regex
        if self.user:
            constraints["user"] = self.user

        options: dict[str, Any] = {
            "strategy": self.strategy,
            "constraints": constraints,
            "ensure_unique": self.ensure_unique,
            "timeout_ms": self.timeout_ms,
            "return_info": True,
            "strict": {"delay_ms": self.strict_delay_ms} if self.strict else False,
        }
        if self.pid_file:
            options["file"] = {"path": self.pid_file}
        if self.command_pattern:
            options["command"] = {
                "pattern": self.command_pattern,
                "full_command": self.full_command,
                "case_sensitive": self.case_sensitive,
                "pick": self.pick,
            }
        return options


@dataclass
class HttpConfig:
    """Health endpoint configuration."""

    enabled: bool = True
    listen: str = "0.0.0.0"
    port: int = 9465


@dataclass
class LoggingConfig:
    """Log output configuration."""

    level: str = "info"
    log_max_bytes: int = 5 * 1024 * 1024  # Max log file size (5MB)
    log_backup_count: int = 3  # Number of rotated files to keep


def _dataclass_to_table(obj: object) -> tomlkit.items.Table:
    """Convert a dataclass instance to a tomlkit Table recursively."""
    table = tomlkit.table()
    for f in fields(obj):  # type: ignore[arg-type]
        value = getattr(obj, f.name)
        if is_dataclass(value) and not isinstance(value, type):
            table.add(f.name, _dataclass_to_table(value))
        else:
            table.add(f.name, value)
    return table


@dataclass
class Config:
    """Main configuration container."""

    sampling: SamplingConfig = field(default_factory=SamplingConfig)
    energy: EnergyConfig = field(default_factory=EnergyConfig)
    target: TargetConfig = field(default_factory=TargetConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @property
    def config_dir(self) -> Path:
        """Configuration directory."""
        return Path.home() / ".config" / "energy-agent"

    @property
    def config_path(self) -> Path:
        """Path to config file."""
        return self.config_dir / "config.toml"

    @property
    def state_dir(self) -> Path:
        """State directory for logs."""
        return Path.home() / ".local" / "state" / "energy-agent"

    @property
    def log_path(self) -> Path:
        """Agent log path (JSON lines)."""
        return self.state_dir / "agent.log"

    def save(self, path: Path | None = None) -> None:
        """Save config to TOML file."""
        path = path or self.config_path
        path.parent.mkdir(parents=True, exist_ok=True)

        doc = tomlkit.document()
        for name in ("sampling", "energy", "target", "http", "logging"):
            doc.add(name, _dataclass_to_table(getattr(self, name)))
            doc.add(tomlkit.nl())

        path.write_text(tomlkit.dumps(doc))

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """Load config from TOML file, returning defaults for missing values.

        Raises:
            ValueError: If the file cannot be parsed or holds invalid values.
        """
        defaults = cls()
        path = path or defaults.config_path
        if not path.exists():
            return defaults

        try:
            with open(path) as f:
                data = tomlkit.load(f).unwrap()
        except tomlkit.exceptions.TOMLKitError as e:
            raise ValueError(f"Failed to parse config file {path}: {e}") from e

        return cls(
            sampling=_load_sampling_config(data.get("sampling", {})),
            energy=_load_energy_config(data.get("energy", {})),
            target=_load_target_config(data.get("target", {})),
            http=_load_http_config(data.get("http", {})),
            logging=_load_logging_config(data.get("logging", {})),
        )


def _load_sampling_config(data: dict) -> SamplingConfig:
    """Load sampling config, validating the period and clamp band."""
    d = SamplingConfig()
    period_ms = data.get("period_ms", d.period_ms)
    tick_hz = data.get("tick_hz", d.tick_hz)
    interval_min_s = data.get("interval_min_s", d.interval_min_s)
    interval_max_s = data.get("interval_max_s", d.interval_max_s)

    if period_ms <= 0:
        raise ValueError(f"period_ms must be > 0, got {period_ms}")
    if tick_hz <= 0:
        raise ValueError(f"tick_hz must be > 0, got {tick_hz}")
    if not 0 < interval_min_s <= interval_max_s:
        raise ValueError(
            f"interval bounds must satisfy 0 < interval_min_s <= interval_max_s, "
            f"got {interval_min_s}..{interval_max_s}"
        )

    return SamplingConfig(
        period_ms=period_ms,
        tick_hz=tick_hz,
        interval_min_s=float(interval_min_s),
        interval_max_s=float(interval_max_s),
        proc_stat_path=data.get("proc_stat_path", d.proc_stat_path),
        cpuinfo_path=data.get("cpuinfo_path", d.cpuinfo_path),
    )


def _load_energy_config(data: dict) -> EnergyConfig:
    d = EnergyConfig()
    return EnergyConfig(base_path=data.get("base_path", d.base_path))


def _load_target_config(data: dict) -> TargetConfig:
    """Load target config. Strategy and pick must be known values."""
    d = TargetConfig()
    valid_strategies = {""} | {s.value for s in Strategy}
    valid_picks = {p.value for p in Pick}

    strategy = data.get("strategy", d.strategy)
    pick = data.get("pick", d.pick)
    if strategy not in valid_strategies:
        raise ValueError(f"Invalid strategy: {strategy!r}. Must be one of {valid_strategies}")
    if pick not in valid_picks:
        raise ValueError(f"Invalid pick: {pick!r}. Must be one of {valid_picks}")

    name = data.get("name", d.name)
    if isinstance(name, str):
        name = [name] if name else []

    strict_delay_ms = data.get("strict_delay_ms", d.strict_delay_ms)
    timeout_ms = data.get("timeout_ms", d.timeout_ms)
    if strict_delay_ms <= 0:
        raise ValueError(f"strict_delay_ms must be > 0, got {strict_delay_ms}")
    if timeout_ms <= 0:
        raise ValueError(f"timeout_ms must be > 0, got {timeout_ms}")

    return TargetConfig(
        strategy=strategy,
        pid_file=data.get("pid_file", d.pid_file),
        command_pattern=data.get("command_pattern", d.command_pattern),
        full_command=data.get("full_command", d.full_command),
        case_sensitive=data.get("case_sensitive", d.case_sensitive),
        pick=pick,
        ensure_unique=data.get("ensure_unique", d.ensure_unique),
        name=list(name),
        cmd_regex=data.get("cmd_regex", d.cmd_regex),
        user=data.get("user", d.user),
        strict=data.get("strict", d.strict),
        strict_delay_ms=strict_delay_ms,
        timeout_ms=timeout_ms,
    )


def _load_http_config(data: dict) -> HttpConfig:
    d = HttpConfig()
    port = data.get("port", d.port)
    if not 0 < port < 65536:
        raise ValueError(f"port must be in 1..65535, got {port}")
    return HttpConfig(
        enabled=data.get("enabled", d.enabled),
        listen=data.get("listen", d.listen),
        port=port,
    )


def _load_logging_config(data: dict) -> LoggingConfig:
    d = LoggingConfig()
    level = data.get("level", d.level)
    valid_levels = {"debug", "info", "warning", "error"}
    if level not in valid_levels:
        raise ValueError(f"Invalid log level: {level!r}. Must be one of {valid_levels}")
    return LoggingConfig(
        level=level,
        log_max_bytes=data.get("log_max_bytes", d.log_max_bytes),
        log_backup_count=data.get("log_backup_count", d.log_backup_count),
    )
