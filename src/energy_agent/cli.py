"""CLI commands for energy-agent."""

import click


@click.group()
@click.version_option()
def main() -> None:
    """Measure host energy and attribute it to one process."""
    pass


@main.command()
@click.option("--verbose", "-v", is_flag=True, help="Also print structured events")
def daemon(verbose: bool) -> None:
    """Run the sampling agent with its health endpoint."""
    import asyncio

    from energy_agent.daemon import run_agent

    asyncio.run(run_agent(verbose=verbose))


@main.command()
@click.option("--json", "as_json", is_flag=True, help="Print the probe as JSON")
def probe(as_json: bool) -> None:
    """Discover RAPL energy sources and report their status."""
    import json

    from energy_agent import logging as console
    from energy_agent.config import Config
    from energy_agent.energy import Status, probe_energy_sources

    config = Config.load()
    result = probe_energy_sources(config.energy.base_path)

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
    else:
        readable = sum(1 for s in result.sources if s.readable)
        console.probe_summary(result.status.value, result.vendor, readable, len(result.sources))
        for source in result.sources:
            icon = console.Icon.OK if source.readable else console.Icon.FAIL
            reason = f" [dim]({source.reason})[/]" if source.reason else ""
            console.info(f"[cyan]{source.node}[/] {source.name}{reason}", icon)
        if result.hint:
            console.warn(result.hint)

    if result.status is Status.FAILED:
        raise SystemExit(1)


@main.command()
@click.option("--json", "as_json", is_flag=True, help="Print the profile as JSON")
def cpu(as_json: bool) -> None:
    """Describe the host CPU from /proc/cpuinfo."""
    import json

    from energy_agent import logging as console
    from energy_agent.config import Config
    from energy_agent.cpuinfo import read_cpu_profile
    from energy_agent.procfs import CounterParseError

    config = Config.load()
    try:
        profile = read_cpu_profile(config.sampling.cpuinfo_path)
    except (OSError, CounterParseError) as e:
        click.echo(f"Cannot read CPU info: {e}", err=True)
        raise SystemExit(1)

    if as_json:
        click.echo(json.dumps(profile.to_dict(), indent=2))
        return

    console.cpu_summary(profile.model, profile.physical_cores, profile.logical_cores)
    console.info(f"Vendor [cyan]{profile.vendor}[/] [dim]({profile.packages} package(s))[/]")
    if profile.frequency is not None:
        freq = profile.frequency
        console.info(
            f"Clock {freq.average:.0f} MHz avg [dim](min {freq.min:.0f}, max {freq.max:.0f})[/]"
        )
    caps = profile.capabilities
    for label, present in (
        ("virtualisation", caps.virtualisable),
        ("AES", caps.aes_support),
        ("hyper-threading", caps.hyper_threading),
        ("NX/SMAP/SMEP", caps.secure_boot_capable),
    ):
        console.info(label, console.Icon.OK if present else console.Icon.FAIL)


@main.command()
@click.option("--pid-file", type=click.Path(), help="Resolve from this PID file")
@click.option("--command", "pattern", help="Resolve by matching this command pattern")
@click.option("--strict", is_flag=True, help="Re-check identity after a short delay")
def resolve(pid_file: str | None, pattern: str | None, strict: bool) -> None:
    """Resolve the target PID once and print the result.

    Uses the [target] section of the config unless --pid-file or --command
    is given.
    """
    import asyncio
    import json

    from energy_agent import logging as console
    from energy_agent.config import Config
    from energy_agent.daemon import resolve_target

    config = Config.load()
    console.configure(config)
    target = config.target
    if pid_file:
        target.strategy, target.pid_file = "file", pid_file
    elif pattern:
        target.strategy, target.command_pattern = "command", pattern
    if strict:
        target.strict = True

    if not target.enabled:
        click.echo("No target configured. Set [target] strategy or pass --pid-file/--command.")
        raise SystemExit(1)

    result = asyncio.run(resolve_target(config))
    if result is None:
        raise SystemExit(1)

    click.echo(json.dumps(result.to_dict(), indent=2))
    if not result.ok:
        raise SystemExit(1)


@main.command()
@click.option("--count", "-n", default=3, show_default=True, help="Number of ticks to run")
def sample(count: int) -> None:
    """Run a few sampling ticks in the foreground and print telemetry JSON."""
    import asyncio
    import json

    from energy_agent import logging as console
    from energy_agent.config import Config
    from energy_agent.daemon import build_sampling_loop, resolve_target
    from energy_agent.energy import probe_energy_sources
    from energy_agent.sampler import SharedState

    if count < 1:
        raise click.BadParameter("must be >= 1", param_hint="--count")

    config = Config.load()
    console.configure(config)

    async def run() -> int:
        shared = SharedState()
        probe = probe_energy_sources(config.energy.base_path)
        target_pid = None
        result = await resolve_target(config)
        if result is not None and result.ok:
            target_pid = result.pid
        elif result is not None:
            click.echo(f"Target not resolved: {result.message}", err=True)

        loop = build_sampling_loop(config, shared, probe, target_pid)
        published = 0
        for i in range(count):
            if i:
                await asyncio.sleep(loop.period_s)
            if await loop.tick():
                published += 1
                click.echo(json.dumps(shared.latest.to_dict(), indent=2))
        return published

    if asyncio.run(run()) == 0:
        click.echo("No telemetry published (energy or CPU counters unavailable).", err=True)
        raise SystemExit(1)


@main.group()
def config() -> None:
    """Manage configuration."""
    pass


@config.command("show")
def config_show() -> None:
    """Display current configuration."""
    from dataclasses import fields

    from energy_agent.config import Config

    cfg = Config.load()

    click.echo(f"Config file: {cfg.config_path}")
    click.echo(f"Exists: {cfg.config_path.exists()}")
    for section in ("sampling", "energy", "target", "http", "logging"):
        values = getattr(cfg, section)
        click.echo()
        click.echo(f"[{section}]")
        for f in fields(values):
            click.echo(f"  {f.name} = {getattr(values, f.name)!r}")


@config.command("reset")
@click.confirmation_option(prompt="Reset config to defaults?")
def config_reset() -> None:
    """Reset configuration to defaults."""
    from energy_agent.config import Config

    cfg = Config()
    cfg.save()
    click.echo(f"Config reset to defaults at {cfg.config_path}")


if __name__ == "__main__":
    main()
