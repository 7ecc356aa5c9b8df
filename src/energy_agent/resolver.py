"""Locate and validate the PID of the process being measured.

A PID read from a file, or matched by pattern, can be recycled by an
unrelated process before we use it. The resolver defends against that in
two ways:

1. Identity constraints (expected name, command-line pattern, owning user)
   are checked against live process metadata.
2. In strict mode the check is repeated after a short delay and the two
   identity snapshots (user, comm, args) must be identical.

Every outcome is returned as a ResolveResult; only an invalid strategy at
construction raises.
"""

from __future__ import annotations

import asyncio
import copy
import errno
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import psutil
import structlog

log = structlog.get_logger()

DEFAULT_TIMEOUT_MS = 5000
DEFAULT_STRICT_DELAY_MS = 150

_PID_FILE_RE = re.compile(r"^\s*([1-9]\d*)\s*$")


class Strategy(str, Enum):
    FILE = "file"
    ENV = "env"
    COMMAND = "command"
    PORT = "port"


class Pick(str, Enum):
    """Tie-break when several processes match and uniqueness is not required.

    "oldest" and "newest" refer to enumeration (PID) order.
    """

    FIRST = "first"
    OLDEST = "oldest"
    NEWEST = "newest"


class ResolveError(Enum):
    """Closed set of resolution failure kinds. Values are stable wire codes."""

    # PID file / file strategy
    INVALID_FILE_OPTIONS = "invalid_file_options"
    NO_PID_FOUND = "no_pid_found"
    INVALID_PID_IN_FILE = "invalid_pid_in_file"
    FILE_READ_ERROR = "file_read_error"
    # Liveness / process metadata
    PID_NOT_ALIVE = "pid_not_alive"
    PROCESS_INFO_NOT_FOUND = "process_info_not_found"
    LOOKUP_TIMEOUT = "lookup_timeout"
    # Constraints
    CONSTRAINT_NAME_MISMATCH = "constraint_name_mismatch"
    CONSTRAINT_CMD_MISMATCH = "constraint_cmd_mismatch"
    CONSTRAINT_USER_MISMATCH = "constraint_user_mismatch"
    # Strict mode
    STRICT_VERIFICATION_FAILED = "strict_verification_failed"
    STRICT_IDENTITY_CHANGED = "strict_identity_changed"
    # Command strategy
    INVALID_COMMAND_OPTIONS = "invalid_command_options"
    NO_MATCH = "no_match"
    MULTIPLE_MATCHES = "multiple_matches"
    # Reserved strategies
    NOT_IMPLEMENTED = "not_implemented"

    @property
    def message(self) -> str:
        return _ERROR_MESSAGES[self]


_ERROR_MESSAGES = {
    ResolveError.INVALID_FILE_OPTIONS: "Invalid file options: expected a PID file path",
    ResolveError.NO_PID_FOUND: "No PID found in file",
    ResolveError.INVALID_PID_IN_FILE: "Invalid PID in file",
    ResolveError.FILE_READ_ERROR: "Failed to read PID file",
    ResolveError.PID_NOT_ALIVE: "PID is not alive",
    ResolveError.PROCESS_INFO_NOT_FOUND: "Could not fetch process info",
    ResolveError.LOOKUP_TIMEOUT: "Process lookup timed out",
    ResolveError.CONSTRAINT_NAME_MISMATCH: "Process name (comm) does not match the expected name",
    ResolveError.CONSTRAINT_CMD_MISMATCH: "Process args do not match the expected pattern",
    ResolveError.CONSTRAINT_USER_MISMATCH: "Process user does not match the expected user",
    ResolveError.STRICT_VERIFICATION_FAILED: "Strict verification failed on second check",
    ResolveError.STRICT_IDENTITY_CHANGED: (
        "Process identity (user/comm/args) changed between checks"
    ),
    ResolveError.INVALID_COMMAND_OPTIONS: "Invalid command options: expected a pattern",
    ResolveError.NO_MATCH: "No process matched the given command pattern",
    ResolveError.MULTIPLE_MATCHES: "Multiple processes matched the pattern",
    ResolveError.NOT_IMPLEMENTED: "Strategy not implemented",
}


class Liveness(Enum):
    ALIVE = "alive"
    ALIVE_NO_PERMISSION = "alive_no_permission"  # exists, but we may not signal it
    DEAD = "dead"

    @property
    def is_alive(self) -> bool:
        return self is not Liveness.DEAD


def probe_pid(pid: int) -> Liveness:
    """Check whether ``pid`` exists using signal 0.

    EPERM means the process exists but belongs to someone else; that is
    alive, not dead.
    """
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return Liveness.DEAD
    except PermissionError:
        return Liveness.ALIVE_NO_PERMISSION
    except OSError as e:
        if e.errno == errno.ESRCH:
            return Liveness.DEAD
        if e.errno == errno.EPERM:
            return Liveness.ALIVE_NO_PERMISSION
        raise
    return Liveness.ALIVE


# ─────────────────────────────────────────────────────────────────────────────
# Options
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class FileOptions:
    path: str


@dataclass(frozen=True)
class CommandOptions:
    pattern: str | re.Pattern[str]
    case_sensitive: bool = False
    full_command: bool = False  # Match against args instead of comm
    pick: Pick = Pick.FIRST


@dataclass(frozen=True)
class Constraints:
    name: tuple[str, ...] | None = None  # Any of these comm values is accepted
    cmd_pattern: re.Pattern[str] | None = None  # Searched in the full command line
    user: str | None = None

    @property
    def is_empty(self) -> bool:
        return self.name is None and self.cmd_pattern is None and self.user is None


@dataclass(frozen=True)
class StrictMode:
    delay_ms: int = DEFAULT_STRICT_DELAY_MS


@dataclass(frozen=True)
class ResolverOptions:
    """Closed resolver configuration, validated once at construction."""

    strategy: Strategy
    file: FileOptions | None = None
    command: CommandOptions | None = None
    constraints: Constraints = field(default_factory=Constraints)
    strict: StrictMode | None = None
    ensure_unique: bool = False
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    return_info: bool = False

    @property
    def timeout_s(self) -> float:
        return self.timeout_ms / 1000

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> ResolverOptions:
        """Build options from a plain mapping (e.g. parsed config).

        The input is deep-copied first, so later changes to the caller's
        object have no effect.

        Raises:
            ValueError: Missing or unknown strategy, or an uncompilable regex.
        """
        raw = copy.deepcopy(dict(data or {}))

        try:
            strategy = Strategy(raw.get("strategy"))
        except ValueError:
            raise ValueError("Invalid or missing strategy option <strategy>") from None

        return cls(
            strategy=strategy,
            file=_parse_file_options(raw.get("file")),
            command=_parse_command_options(raw.get("command")),
            constraints=_parse_constraints(raw.get("constraints")),
            strict=_parse_strict(raw.get("strict")),
            ensure_unique=bool(raw.get("ensure_unique", False)),
            timeout_ms=_positive_or(raw.get("timeout_ms"), DEFAULT_TIMEOUT_MS),
            return_info=bool(raw.get("return_info", False)),
        )


def _positive_or(value: Any, default: int) -> int:
    if isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0:
        return int(value)
    return default


def _parse_file_options(value: Any) -> FileOptions | None:
    if isinstance(value, (str, Path)) and str(value):
        return FileOptions(path=str(value))
    if isinstance(value, Mapping) and isinstance(value.get("path"), (str, Path)):
        return FileOptions(path=str(value["path"]))
    return None


def _parse_command_options(value: Any) -> CommandOptions | None:
    if isinstance(value, (str, re.Pattern)):
        value = {"pattern": value}
    if not isinstance(value, Mapping):
        return None
    pattern = value.get("pattern")
    if not isinstance(pattern, (str, re.Pattern)) or not pattern:
        return None
    try:
        pick = Pick(value.get("pick", Pick.FIRST))
    except ValueError:
        raise ValueError(f"Invalid pick: {value.get('pick')!r}") from None
    return CommandOptions(
        pattern=pattern,
        case_sensitive=bool(value.get("case_sensitive", False)),
        full_command=bool(value.get("full_command", False)),
        pick=pick,
    )


def _parse_constraints(value: Any) -> Constraints:
    if not isinstance(value, Mapping):
        return Constraints()

    name = value.get("name")
    if isinstance(name, str):
        names: tuple[str, ...] | None = (name,)
    elif isinstance(name, (list, tuple)) and name:
        names = tuple(str(n) for n in name)
    else:
        names = None

    pattern = value.get("cmd_pattern", value.get("cmd_regex"))
    if isinstance(pattern, str) and pattern:
        try:
            compiled: re.Pattern[str] | None = re.compile(pattern)
        except re.error as e:
            raise ValueError(f"Invalid cmd_pattern {pattern!r}: {e}") from e
    elif isinstance(pattern, re.Pattern):
        compiled = pattern
    else:
        compiled = None

    user = value.get("user")
    return Constraints(name=names, cmd_pattern=compiled, user=str(user) if user else None)


def _parse_strict(value: Any) -> StrictMode | None:
    if isinstance(value, StrictMode):
        return value
    if isinstance(value, Mapping):
        return StrictMode(delay_ms=_positive_or(value.get("delay_ms"), DEFAULT_STRICT_DELAY_MS))
    if value:
        return StrictMode()
    return None


# ─────────────────────────────────────────────────────────────────────────────
# Results
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ProcessInfo:
    """Identity snapshot used for constraint checks and strict comparison."""

    pid: int
    user: str
    comm: str
    args: str

    def same_identity(self, other: ProcessInfo) -> bool:
        return (self.user, self.comm, self.args) == (other.user, other.comm, other.args)


@dataclass(frozen=True)
class ResolveResult:
    ok: bool
    pid: int | None = None
    info: ProcessInfo | None = None
    error: ResolveError | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, pid: int, info: ProcessInfo | None = None) -> ResolveResult:
        return cls(ok=True, pid=pid, info=info)

    @classmethod
    def failure(cls, error: ResolveError, **details: Any) -> ResolveResult:
        return cls(ok=False, error=error, details=details)

    @property
    def message(self) -> str | None:
        return self.error.message if self.error else None

    def to_dict(self) -> dict[str, Any]:
        if self.ok:
            data: dict[str, Any] = {"ok": True, "pid": self.pid}
            if self.info is not None:
                data["info"] = {
                    "user": self.info.user,
                    "comm": self.info.comm,
                    "args": self.info.args,
                }
            return data
        return {
            "ok": False,
            "error": self.error.value if self.error else None,
            "message": self.message,
            "details": self.details,
        }


# ─────────────────────────────────────────────────────────────────────────────
# Process table access (psutil, blocking; run in a worker thread)
# ─────────────────────────────────────────────────────────────────────────────


def _info_from_parts(
    pid: int, user: str | None, name: str | None, cmdline: list[str] | None
) -> ProcessInfo:
    comm = name or ""
    args = " ".join(cmdline) if cmdline else comm
    return ProcessInfo(pid=pid, user=user or "", comm=comm, args=args)


def fetch_process_info(pid: int) -> ProcessInfo | None:
    """Return identity metadata for ``pid``, or None if it vanished or is hidden."""
    try:
        proc = psutil.Process(pid)
        with proc.oneshot():
            return _info_from_parts(pid, proc.username(), proc.name(), proc.cmdline())
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        return None


def list_processes() -> list[ProcessInfo]:
    """Snapshot every visible process, in PID order."""
    processes: list[ProcessInfo] = []
    for proc in psutil.process_iter(attrs=["pid", "username", "name", "cmdline"]):
        info = proc.info
        processes.append(
            _info_from_parts(
                info["pid"], info.get("username"), info.get("name"), info.get("cmdline")
            )
        )
    return processes


def _build_matcher(command: CommandOptions):
    pattern = command.pattern

    if isinstance(pattern, re.Pattern):
        return lambda p: bool(pattern.search(p.args if command.full_command else p.comm))

    if command.case_sensitive:
        needle = pattern
        return lambda p: needle in (p.args if command.full_command else p.comm)

    needle = pattern.lower()
    return lambda p: needle in (p.args if command.full_command else p.comm).lower()


# ─────────────────────────────────────────────────────────────────────────────
# Resolver
# ─────────────────────────────────────────────────────────────────────────────


class ProcessIdentityResolver:
    """Resolve one PID according to a strategy and validate its identity.

    Each resolve() call is independent; nothing is cached between calls.
    """

    def __init__(self, options: ResolverOptions | Mapping[str, Any]) -> None:
        if isinstance(options, ResolverOptions):
            self._options = copy.deepcopy(options)
        else:
            self._options = ResolverOptions.from_mapping(options)

    @property
    def options(self) -> ResolverOptions:
        """Independent copy of the options in effect."""
        return copy.deepcopy(self._options)

    async def resolve(self) -> ResolveResult:
        strategy = self._options.strategy
        log.debug("resolve_start", strategy=strategy.value)
        if strategy is Strategy.FILE:
            result = await self._resolve_from_file()
        elif strategy is Strategy.COMMAND:
            result = await self._resolve_from_command()
        else:
            result = ResolveResult.failure(ResolveError.NOT_IMPLEMENTED, requested=strategy.value)

        if result.ok:
            log.info("pid_resolved", strategy=strategy.value, pid=result.pid)
        else:
            log.warning(
                "pid_resolve_failed",
                strategy=strategy.value,
                error=result.error.value if result.error else None,
                **result.details,
            )
        return result

    # ── metadata ────────────────────────────────────────────────────────────

    async def _lookup(self, pid: int) -> ProcessInfo | ResolveResult:
        try:
            info = await asyncio.wait_for(
                asyncio.to_thread(fetch_process_info, pid),
                timeout=self._options.timeout_s,
            )
        except TimeoutError:
            return ResolveResult.failure(
                ResolveError.LOOKUP_TIMEOUT, pid=pid, timeout_ms=self._options.timeout_ms
            )
        if info is None:
            return ResolveResult.failure(ResolveError.PROCESS_INFO_NOT_FOUND, pid=pid)
        return info

    async def _check_constraints(self, pid: int) -> ResolveResult:
        """Validate configured constraints. Success carries the observed identity."""
        constraints = self._options.constraints
        if constraints.is_empty:
            return ResolveResult.success(pid)

        found = await self._lookup(pid)
        if isinstance(found, ResolveResult):
            return found

        if constraints.name is not None and found.comm not in constraints.name:
            return ResolveResult.failure(
                ResolveError.CONSTRAINT_NAME_MISMATCH, pid=pid, comm=found.comm
            )
        if constraints.cmd_pattern is not None and not constraints.cmd_pattern.search(found.args):
            return ResolveResult.failure(ResolveError.CONSTRAINT_CMD_MISMATCH, pid=pid)
        if constraints.user is not None and found.user != constraints.user:
            return ResolveResult.failure(
                ResolveError.CONSTRAINT_USER_MISMATCH, pid=pid, user=found.user
            )
        return ResolveResult.success(pid, found)

    async def _revalidate(self, pid: int, first: ResolveResult) -> ResolveResult:
        """Second, delayed identity check. Returns the most recent good result."""
        strict = self._options.strict
        if strict is None:
            return first

        await asyncio.sleep(strict.delay_ms / 1000)

        if self._options.constraints.is_empty:
            if not probe_pid(pid).is_alive:
                log.error("strict_check_failed", pid=pid, reason="not_alive")
                return ResolveResult.failure(
                    ResolveError.STRICT_VERIFICATION_FAILED, pid=pid, reason="pid_not_alive"
                )
            log.debug("strict_check_ok", pid=pid)
            return first

        second = await self._check_constraints(pid)
        if not second.ok:
            reason = second.error.value if second.error else None
            log.error("strict_check_failed", pid=pid, reason=reason)
            return ResolveResult.failure(
                ResolveError.STRICT_VERIFICATION_FAILED, pid=pid, reason=reason
            )

        a, b = first.info, second.info
        if a is None or b is None or not a.same_identity(b):
            log.error("strict_identity_changed", pid=pid)
            return ResolveResult.failure(ResolveError.STRICT_IDENTITY_CHANGED, pid=pid)

        log.debug("strict_check_ok", pid=pid)
        return second

    async def _validate(self, pid: int) -> ResolveResult:
        """Constraints at t0, optional strict re-check at t1, optional info."""
        first = await self._check_constraints(pid)
        if not first.ok:
            return first

        latest = await self._revalidate(pid, first)
        if not latest.ok:
            return latest

        if not self._options.return_info:
            return ResolveResult.success(pid)

        if latest.info is not None:
            return ResolveResult.success(pid, latest.info)
        found = await self._lookup(pid)
        return ResolveResult.success(pid, found if isinstance(found, ProcessInfo) else None)

    # ── strategies ──────────────────────────────────────────────────────────

    async def _read_pid_file(self, path: str) -> ResolveResult:
        try:
            content = await asyncio.to_thread(Path(path).read_text)
        except (OSError, UnicodeDecodeError) as e:
            return ResolveResult.failure(ResolveError.FILE_READ_ERROR, path=path, message=str(e))

        match = _PID_FILE_RE.match(content)
        if not match:
            return ResolveResult.failure(ResolveError.NO_PID_FOUND, path=path)

        pid = int(match.group(1))
        if pid > 2**31 - 1:
            return ResolveResult.failure(
                ResolveError.INVALID_PID_IN_FILE, path=path, raw=content.strip()
            )
        return ResolveResult.success(pid)

    async def _resolve_from_file(self) -> ResolveResult:
        file_options = self._options.file
        if file_options is None:
            return ResolveResult.failure(ResolveError.INVALID_FILE_OPTIONS)

        read = await self._read_pid_file(file_options.path)
        if not read.ok or read.pid is None:
            return read
        pid = read.pid
        log.debug("pid_file_read", path=file_options.path, pid=pid)

        if not probe_pid(pid).is_alive:
            return ResolveResult.failure(ResolveError.PID_NOT_ALIVE, pid=pid)

        return await self._validate(pid)

    async def _resolve_from_command(self) -> ResolveResult:
        command = self._options.command
        if command is None:
            return ResolveResult.failure(ResolveError.INVALID_COMMAND_OPTIONS)

        try:
            processes = await asyncio.wait_for(
                asyncio.to_thread(list_processes), timeout=self._options.timeout_s
            )
        except TimeoutError:
            return ResolveResult.failure(
                ResolveError.LOOKUP_TIMEOUT, timeout_ms=self._options.timeout_ms
            )

        matches = _build_matcher(command)
        candidates = [p for p in processes if matches(p)]

        if not candidates:
            return ResolveResult.failure(ResolveError.NO_MATCH)

        if len(candidates) > 1:
            if self._options.ensure_unique:
                return ResolveResult.failure(
                    ResolveError.MULTIPLE_MATCHES,
                    count=len(candidates),
                    pids=[p.pid for p in candidates],
                )
            selected = candidates[-1] if command.pick is Pick.NEWEST else candidates[0]
            log.warning(
                "command_multiple_matches",
                count=len(candidates),
                picked=selected.pid,
                pick=command.pick.value,
            )
        else:
            selected = candidates[0]

        if not probe_pid(selected.pid).is_alive:
            return ResolveResult.failure(ResolveError.PID_NOT_ALIVE, pid=selected.pid)

        return await self._validate(selected.pid)
