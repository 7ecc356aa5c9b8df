"""Agent process: wires readers, resolver, sampling loop and HTTP server."""

import asyncio
import signal
from dataclasses import dataclass
from datetime import datetime

import psutil
import structlog

from energy_agent import logging as console
from energy_agent.config import Config
from energy_agent.cpuinfo import read_cpu_profile
from energy_agent.energy import EnergyCounterReader, EnergyProbe, probe_energy_sources
from energy_agent.health import HealthServer, build_app
from energy_agent.hostcpu import HostCpuTimeReader
from energy_agent.proccpu import ProcessCpuTimeReader
from energy_agent.procfs import CounterParseError
from energy_agent.resolver import ProcessIdentityResolver, ResolveResult
from energy_agent.sampler import SamplingLoop, SharedState

log = structlog.get_logger()


@dataclass
class AgentState:
    """Runtime state of the agent."""

    running: bool = False
    started_at: datetime | None = None
    target_pid: int | None = None
    target_comm: str | None = None


async def resolve_target(config: Config) -> ResolveResult | None:
    """Resolve the configured target. None when no strategy is configured."""
    if not config.target.enabled:
        return None
    resolver = ProcessIdentityResolver(config.target.to_resolver_options())
    return await resolver.resolve()


def build_sampling_loop(
    config: Config,
    shared: SharedState,
    probe: EnergyProbe,
    target_pid: int | None = None,
) -> SamplingLoop:
    """Construct the readers and loop from config."""
    sampling = config.sampling
    energy = EnergyCounterReader(
        probe.sources,
        interval_min_s=sampling.interval_min_s,
        interval_max_s=sampling.interval_max_s,
    )
    host = HostCpuTimeReader(
        stat_path=sampling.proc_stat_path,
        hz=sampling.tick_hz,
        interval_min_s=sampling.interval_min_s,
        interval_max_s=sampling.interval_max_s,
    )
    process = (
        ProcessCpuTimeReader(target_pid, hz=sampling.tick_hz) if target_pid is not None else None
    )
    return SamplingLoop(
        energy=energy,
        host=host,
        process=process,
        shared=shared,
        period_s=sampling.period_s,
        logical_cores=psutil.cpu_count(logical=True) or 1,
    )


class Agent:
    """Main agent class orchestrating sampling and the health endpoint."""

    def __init__(self, config: Config):
        self.config = config
        self.state = AgentState()
        self.shared = SharedState()

        self.loop: SamplingLoop | None = None
        self._loop_task: asyncio.Task | None = None
        self._http: HealthServer | None = None
        self._shutdown_event = asyncio.Event()

    async def _setup(self) -> SamplingLoop:
        """Probe sources, resolve the target and build the loop.

        Extracted from start() so tests can build the agent without signals
        or sockets.
        """
        if not self.config.config_path.exists():
            self.config.save()
            log.info("config_created", path=str(self.config.config_path))
            console.config_created(str(self.config.config_path))

        probe = await asyncio.to_thread(probe_energy_sources, self.config.energy.base_path)
        readable = sum(1 for s in probe.sources if s.readable)
        log.info(
            "energy_probe",
            status=probe.status.value,
            vendor=probe.vendor,
            packages=len(probe.sources),
            readable=readable,
            hint=probe.hint,
        )
        console.probe_summary(probe.status.value, probe.vendor, readable, len(probe.sources))

        try:
            cpu = await asyncio.to_thread(read_cpu_profile, self.config.sampling.cpuinfo_path)
        except (OSError, CounterParseError) as e:
            log.warning("cpu_profile_unavailable", error=str(e))
        else:
            log.info(
                "cpu_profile",
                vendor=cpu.vendor,
                model=cpu.model,
                physical_cores=cpu.physical_cores,
                logical_cores=cpu.logical_cores,
            )
            console.cpu_summary(cpu.model, cpu.physical_cores, cpu.logical_cores)

        result = await resolve_target(self.config)
        if result is not None and result.ok:
            self.state.target_pid = result.pid
            self.state.target_comm = result.info.comm if result.info else None
            console.target_resolved(result.pid, self.state.target_comm)
        elif result is not None:
            # Host-only: the loop runs without a process reader
            log.warning("target_unresolved", error=result.error.value if result.error else None)
            console.target_unresolved(result.message or "unknown error")

        return build_sampling_loop(self.config, self.shared, probe, self.state.target_pid)

    async def start(self) -> None:
        """Start the agent and run until a shutdown signal arrives."""
        from importlib.metadata import version

        log.info("agent_starting", version=version("energy-agent"))
        log.info(
            "agent_config",
            period_ms=self.config.sampling.period_ms,
            tick_hz=self.config.sampling.tick_hz,
            strategy=self.config.target.strategy or None,
            http=self.config.http.enabled,
        )

        event_loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            event_loop.add_signal_handler(sig, lambda s=sig: self._handle_signal(s))

        self.loop = await self._setup()

        if self.config.http.enabled:
            app = build_app(
                self.shared,
                energy_base_path=self.config.energy.base_path,
                proc_stat_path=self.config.sampling.proc_stat_path,
                cpuinfo_path=self.config.sampling.cpuinfo_path,
            )
            self._http = HealthServer(app, self.config.http.listen, self.config.http.port)
            await self._http.start()
            console.http_listening(self.config.http.listen, self.config.http.port)

        self._loop_task = asyncio.create_task(self.loop.run())
        self.state.running = True
        self.state.started_at = datetime.now()
        log.info("agent_started", target_pid=self.state.target_pid)
        console.agent_started()

        await self._shutdown_event.wait()

    async def stop(self) -> None:
        """Stop the agent gracefully."""
        log.info("agent_stopping")
        console.agent_stopping()
        self.state.running = False

        if self.loop is not None:
            self.loop.stop()
        if self._loop_task is not None:
            try:
                await asyncio.wait_for(self._loop_task, timeout=5.0)
            except TimeoutError:
                self._loop_task.cancel()
                try:
                    await self._loop_task
                except asyncio.CancelledError:
                    pass
            self._loop_task = None

        if self._http is not None:
            await self._http.stop()
            self._http = None

        uptime_s = (
            round((datetime.now() - self.state.started_at).total_seconds(), 1)
            if self.state.started_at is not None
            else None
        )
        if self.loop is not None:
            log.info(
                "agent_stopped",
                uptime_s=uptime_s,
                ticks=self.loop.tick_count,
                skipped=self.loop.skipped_ticks,
                failed=self.loop.failed_ticks,
            )
        else:
            log.info("agent_stopped", uptime_s=uptime_s)
        console.agent_stopped()

    def _handle_signal(self, sig: signal.Signals) -> None:
        """Handle shutdown signals."""
        log.info("signal_received", signal=sig.name)
        console.signal_received(sig.name)
        self._shutdown_event.set()

    def request_shutdown(self) -> None:
        self._shutdown_event.set()


async def run_agent(config: Config | None = None, verbose: bool = False) -> None:
    """Run the agent until shutdown.

    Args:
        config: Optional config, loads from file if not provided
        verbose: Also render structured events on the console
    """
    if config is None:
        config = Config.load()

    console.configure(config, console=verbose)

    agent = Agent(config)

    try:
        await agent.start()
    except Exception as e:
        log.exception("agent_crashed", error=str(e))
        raise
    finally:
        await agent.stop()
