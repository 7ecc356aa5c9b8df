"""HTTP health and metrics endpoint."""

import asyncio
from pathlib import Path

import structlog
from aiohttp import web

from energy_agent.cpuinfo import DEFAULT_CPUINFO, read_cpu_profile
from energy_agent.energy import EnergyProbe, Status, probe_energy_sources, worst_status
from energy_agent.procfs import CounterParseError
from energy_agent.sampler import SharedState

log = structlog.get_logger()

SHARED_KEY = web.AppKey("shared", SharedState)
ENERGY_PATH_KEY = web.AppKey("energy_base_path", Path)
PROC_STAT_KEY = web.AppKey("proc_stat_path", Path)
CPUINFO_KEY = web.AppKey("cpuinfo_path", Path)


def proc_status(stat_path: Path | str = "/proc/stat") -> Status:
    """OK when the aggregate ``cpu`` line is present, FAILED otherwise."""
    try:
        text = Path(stat_path).read_text()
    except OSError as e:
        log.debug("proc_stat_unreadable", path=str(stat_path), error=str(e))
        return Status.FAILED
    if any(line.startswith("cpu ") for line in text.splitlines()):
        return Status.OK
    return Status.FAILED


async def _probe(base_path: Path) -> EnergyProbe:
    try:
        return await asyncio.to_thread(probe_energy_sources, base_path)
    except Exception as e:
        log.warning("energy_probe_failed", error=str(e))
        return EnergyProbe(status=Status.FAILED, hint=f"probe failed: {e}")


def cpu_details(cpuinfo_path: Path | str = DEFAULT_CPUINFO) -> dict | None:
    """CPU profile for health details, None when cpuinfo is unavailable."""
    try:
        return read_cpu_profile(cpuinfo_path).to_dict()
    except (OSError, CounterParseError) as e:
        log.debug("cpuinfo_unavailable", path=str(cpuinfo_path), error=str(e))
        return None


async def handle_healthz(request: web.Request) -> web.Response:
    app = request.app
    proc, probe, cpu = await asyncio.gather(
        asyncio.to_thread(proc_status, app[PROC_STAT_KEY]),
        _probe(app[ENERGY_PATH_KEY]),
        asyncio.to_thread(cpu_details, app[CPUINFO_KEY]),
    )
    shared = app[SHARED_KEY]
    latest = shared.latest
    age = shared.age_seconds()
    body = {
        "status": worst_status([proc, probe.status]).value,
        "details": {
            "proc": proc.value,
            "energy": probe.to_dict(),
            "cpu": cpu,
            "energy_last": latest.to_dict() if latest is not None else None,
            "sampling": {
                "last_reading_age_s": round(age, 3) if age is not None else None,
                "failed_ticks": shared.failed_ticks,
                "consecutive_failures": shared.consecutive_failures,
            },
        },
    }
    return web.json_response(body)


async def handle_metrics(request: web.Request) -> web.Response:
    latest = request.app[SHARED_KEY].latest
    if latest is None:
        return web.json_response({"error": "no telemetry yet"}, status=503)
    return web.json_response(latest.to_dict())


@web.middleware
async def _error_middleware(request: web.Request, handler) -> web.StreamResponse:
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except Exception as e:
        log.exception("http_handler_failed", path=request.path, error=str(e))
        return web.json_response({"error": "internal error"}, status=500)


def build_app(
    shared: SharedState,
    energy_base_path: Path | str = "/sys/class/powercap",
    proc_stat_path: Path | str = "/proc/stat",
    cpuinfo_path: Path | str = DEFAULT_CPUINFO,
) -> web.Application:
    app = web.Application(middlewares=[_error_middleware])
    app[SHARED_KEY] = shared
    app[ENERGY_PATH_KEY] = Path(energy_base_path)
    app[PROC_STAT_KEY] = Path(proc_stat_path)
    app[CPUINFO_KEY] = Path(cpuinfo_path)
    app.add_routes(
        [
            web.get("/healthz", handle_healthz),
            web.get("/metrics.json", handle_metrics),
        ]
    )
    return app


class HealthServer:
    """Runs the health app on a TCP port alongside the sampling loop."""

    def __init__(self, app: web.Application, host: str, port: int):
        self.app = app
        self.host = host
        self.port = port
        self._runner: web.AppRunner | None = None

    async def start(self) -> None:
        self._runner = web.AppRunner(self.app, access_log=None)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        log.info("http_server_started", host=self.host, port=self.port)

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            log.info("http_server_stopped")
