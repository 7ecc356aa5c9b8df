"""Tests for the HTTP health endpoint."""

from pathlib import Path
from unittest.mock import patch

import pytest
from aiohttp import test_utils

from energy_agent.energy import Status
from energy_agent.health import build_app, proc_status
from energy_agent.sampler import HostEnergy, SharedState, Telemetry

from tests.conftest import make_rapl_node


def _telemetry() -> Telemetry:
    return Telemetry(
        host_energy=HostEnergy(
            average_power_watts=15.0,
            energy_joules_interval=15.0,
            interval_seconds=1.0,
            timestamp_utc="2024-01-01T00:00:00+00:00",
        ),
        tick=7,
    )


class TestProcStatus:
    def test_ok(self, proc_stat: Path):
        assert proc_status(proc_stat) is Status.OK

    def test_missing_file(self, tmp_path: Path):
        assert proc_status(tmp_path / "missing") is Status.FAILED

    def test_no_aggregate_line(self, tmp_path: Path):
        path = tmp_path / "stat"
        path.write_text("cpu0 1 2 3 4\n")
        assert proc_status(path) is Status.FAILED


class TestHealthz:
    @pytest.mark.asyncio
    async def test_all_ok(self, intel_powercap: Path, proc_stat: Path):
        shared = SharedState()
        shared.publish(_telemetry())
        app = build_app(shared, energy_base_path=intel_powercap, proc_stat_path=proc_stat)

        async with test_utils.TestClient(test_utils.TestServer(app)) as client:
            resp = await client.get("/healthz")
            assert resp.status == 200
            body = await resp.json()

        assert body["status"] == "OK"
        assert body["details"]["proc"] == "OK"
        assert body["details"]["energy"]["status"] == "OK"
        assert body["details"]["energy"]["vendor"] == "intel"
        assert body["details"]["energy_last"]["tick"] == 7

    @pytest.mark.asyncio
    async def test_no_energy_sources_fails(self, powercap: Path, proc_stat: Path):
        app = build_app(SharedState(), energy_base_path=powercap, proc_stat_path=proc_stat)

        async with test_utils.TestClient(test_utils.TestServer(app)) as client:
            body = await (await client.get("/healthz")).json()

        assert body["status"] == "FAILED"
        assert body["details"]["proc"] == "OK"
        assert body["details"]["energy_last"] is None

    @pytest.mark.asyncio
    async def test_worst_status_wins(self, intel_powercap: Path, tmp_path: Path):
        app = build_app(
            SharedState(), energy_base_path=intel_powercap, proc_stat_path=tmp_path / "missing"
        )
        async with test_utils.TestClient(test_utils.TestServer(app)) as client:
            body = await (await client.get("/healthz")).json()

        assert body["details"]["energy"]["status"] == "OK"
        assert body["status"] == "FAILED"

    @pytest.mark.asyncio
    async def test_cpu_details(self, intel_powercap: Path, proc_stat: Path, cpuinfo: Path):
        app = build_app(
            SharedState(),
            energy_base_path=intel_powercap,
            proc_stat_path=proc_stat,
            cpuinfo_path=cpuinfo,
        )
        async with test_utils.TestClient(test_utils.TestServer(app)) as client:
            body = await (await client.get("/healthz")).json()

        assert body["details"]["cpu"]["vendor"] == "GenuineIntel"
        assert body["details"]["cpu"]["cores"]["logical"] == 4

    @pytest.mark.asyncio
    async def test_cpu_details_missing_does_not_fail(
        self, intel_powercap: Path, proc_stat: Path, tmp_path: Path
    ):
        app = build_app(
            SharedState(),
            energy_base_path=intel_powercap,
            proc_stat_path=proc_stat,
            cpuinfo_path=tmp_path / "missing",
        )
        async with test_utils.TestClient(test_utils.TestServer(app)) as client:
            body = await (await client.get("/healthz")).json()

        assert body["details"]["cpu"] is None
        assert body["status"] == "OK"

    @pytest.mark.asyncio
    async def test_reports_stale_reading(self, intel_powercap: Path, proc_stat: Path):
        shared = SharedState()
        shared.publish(_telemetry())
        shared.record_failure()
        shared.record_failure()
        app = build_app(shared, energy_base_path=intel_powercap, proc_stat_path=proc_stat)

        async with test_utils.TestClient(test_utils.TestServer(app)) as client:
            body = await (await client.get("/healthz")).json()

        sampling = body["details"]["sampling"]
        assert sampling["failed_ticks"] == 2
        assert sampling["consecutive_failures"] == 2
        assert sampling["last_reading_age_s"] >= 0.0
        assert body["details"]["energy_last"]["tick"] == 7

    @pytest.mark.asyncio
    async def test_sampling_details_before_first_reading(
        self, intel_powercap: Path, proc_stat: Path
    ):
        app = build_app(SharedState(), energy_base_path=intel_powercap, proc_stat_path=proc_stat)

        async with test_utils.TestClient(test_utils.TestServer(app)) as client:
            body = await (await client.get("/healthz")).json()

        assert body["details"]["sampling"] == {
            "last_reading_age_s": None,
            "failed_ticks": 0,
            "consecutive_failures": 0,
        }

    @pytest.mark.asyncio
    async def test_probe_exception_maps_to_failed(self, proc_stat: Path, powercap: Path):
        make_rapl_node(powercap, "intel-rapl:0", "package-0", 1)
        app = build_app(SharedState(), energy_base_path=powercap, proc_stat_path=proc_stat)

        with patch(
            "energy_agent.health.probe_energy_sources", side_effect=RuntimeError("boom")
        ):
            async with test_utils.TestClient(test_utils.TestServer(app)) as client:
                resp = await client.get("/healthz")
                body = await resp.json()

        assert resp.status == 200
        assert body["status"] == "FAILED"
        assert body["details"]["energy"]["status"] == "FAILED"


class TestMetrics:
    @pytest.mark.asyncio
    async def test_no_data_yet(self, intel_powercap: Path, proc_stat: Path):
        app = build_app(SharedState(), energy_base_path=intel_powercap, proc_stat_path=proc_stat)
        async with test_utils.TestClient(test_utils.TestServer(app)) as client:
            resp = await client.get("/metrics.json")
            assert resp.status == 503

    @pytest.mark.asyncio
    async def test_latest_telemetry(self, intel_powercap: Path, proc_stat: Path):
        shared = SharedState()
        shared.publish(_telemetry())
        app = build_app(shared, energy_base_path=intel_powercap, proc_stat_path=proc_stat)

        async with test_utils.TestClient(test_utils.TestServer(app)) as client:
            resp = await client.get("/metrics.json")
            assert resp.status == 200
            body = await resp.json()

        assert body["hostEnergy"]["averagePowerWatts"] == 15.0
        assert body["tick"] == 7

    @pytest.mark.asyncio
    async def test_handler_error_returns_500(self, intel_powercap: Path, proc_stat: Path):
        class BrokenState(SharedState):
            @property
            def latest(self):
                raise RuntimeError("corrupt")

        app = build_app(BrokenState(), energy_base_path=intel_powercap, proc_stat_path=proc_stat)
        async with test_utils.TestClient(test_utils.TestServer(app)) as client:
            resp = await client.get("/metrics.json")
            assert resp.status == 500
            # Server keeps serving after a handler failure
            assert (await client.get("/healthz")).status == 500
