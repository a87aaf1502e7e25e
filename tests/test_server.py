from __future__ import annotations

import asyncio
import signal
import socket

import httpx
import pytest
from fastapi.testclient import TestClient

from testpulse.lifecycle import ServerDirectory
from testpulse.metrics import build_registry
from testpulse.registry import MetricRegistry
from testpulse.server import MetricsServer, NoAvailablePortError, bind_with_fallback
from testpulse.settings import MetricsSettings

HOST = "127.0.0.1"


def _metrics_settings(**overrides: object) -> MetricsSettings:
    values: dict[str, object] = {
        "host": HOST,
        "port": 0,
        "max_port_attempts": 10,
        "idle_timeout_seconds": 300.0,
        "drain_timeout_seconds": 1.0,
        "run_end_grace_seconds": 0.0,
        "include_process_metrics": False,
    }
    values.update(overrides)
    return MetricsSettings(**values)  # type: ignore[arg-type]


def _occupy_port() -> socket.socket:
    blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    blocker.bind((HOST, 0))
    blocker.listen(1)
    return blocker


def _client_for(server: MetricsServer) -> TestClient:
    return TestClient(server.app)


def test_metrics_endpoint_returns_exposition() -> None:
    registry, metrics = build_registry()
    metrics.tests_total.inc({"status": "passed", "project": "chromium", "browser": "chromium", "suite": "s"})
    client = _client_for(MetricsServer(registry, host=HOST, port=9323))

    response = client.get("/metrics")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain; version=0.0.4")
    assert 'playwright_tests_total{status="passed",project="chromium"' in response.text


def test_metrics_endpoint_reports_collection_failure(monkeypatch) -> None:
    registry = MetricRegistry()

    def broken_snapshot() -> str:
        raise RuntimeError("collector exploded")

    monkeypatch.setattr(registry, "snapshot", broken_snapshot)
    client = _client_for(MetricsServer(registry, host=HOST, port=9323))

    response = client.get("/metrics")

    assert response.status_code == 500
    assert response.json()["detail"] == "collector exploded"


def test_health_payload() -> None:
    registry, _ = build_registry()
    client = _client_for(MetricsServer(registry, host=HOST, port=9400, idle_timeout=120))

    payload = client.get("/health").json()

    assert payload["status"] == "healthy"
    assert payload["port"] == 9400
    assert payload["addresses"] == [f"http://{HOST}:9400"]
    assert payload["metricsEnabled"] is True
    assert payload["keepAlive"] == 120
    assert "timestamp" in payload


def test_debug_lists_metric_families() -> None:
    registry, _ = build_registry()
    client = _client_for(MetricsServer(registry, host=HOST, port=9323))

    payload = client.get("/debug", headers={"x-trace": "1"}).json()

    assert payload["metricsCount"] == len(registry)
    assert payload["requestInfo"]["method"] == "GET"
    assert payload["requestInfo"]["headers"]["x-trace"] == "1"
    assert payload["serverInfo"]["port"] == 9323
    names = [entry["name"] for entry in payload["metrics"]]
    assert "playwright_test_duration_seconds" in names


def test_reset_endpoint_clears_values() -> None:
    registry, metrics = build_registry()
    labels = {"status": "failed", "project": "firefox", "browser": "firefox", "suite": "s"}
    metrics.tests_total.inc(labels)
    client = _client_for(MetricsServer(registry, host=HOST, port=9323))

    response = client.post("/reset-metrics")

    assert response.json() == {"message": "Metrics reset successfully"}
    assert "playwright_tests_total{" not in client.get("/metrics").text


def test_cors_allows_any_origin() -> None:
    registry, _ = build_registry()
    client = _client_for(MetricsServer(registry, host=HOST, port=9323))

    response = client.get("/health", headers={"Origin": "http://dashboard.local"})

    assert response.headers["access-control-allow-origin"] == "*"


def test_bind_with_fallback_skips_occupied_port() -> None:
    blocker = _occupy_port()
    taken = blocker.getsockname()[1]
    try:
        sock = bind_with_fallback(HOST, taken, max_attempts=10)
        try:
            assert sock.getsockname()[1] > taken
        finally:
            sock.close()
    finally:
        blocker.close()


def test_bind_with_fallback_exhaustion_raises() -> None:
    blocker = _occupy_port()
    taken = blocker.getsockname()[1]
    try:
        with pytest.raises(NoAvailablePortError):
            bind_with_fallback(HOST, taken, max_attempts=1)
    finally:
        blocker.close()


@pytest.mark.asyncio
async def test_server_falls_back_and_health_reports_bound_port() -> None:
    blocker = _occupy_port()
    taken = blocker.getsockname()[1]
    registry, _ = build_registry()
    server = MetricsServer(registry, host=HOST, port=taken, drain_timeout=1.0)
    try:
        bound = await server.start()
        assert bound != taken
        async with httpx.AsyncClient() as client:
            response = await client.get(f"http://{HOST}:{bound}/health")
        assert response.json()["port"] == bound
    finally:
        await server.close()
        blocker.close()


@pytest.mark.asyncio
async def test_start_propagates_port_exhaustion() -> None:
    blocker = _occupy_port()
    taken = blocker.getsockname()[1]
    registry, _ = build_registry()
    server = MetricsServer(registry, host=HOST, port=taken, max_port_attempts=1)
    try:
        with pytest.raises(NoAvailablePortError):
            await server.start()
    finally:
        blocker.close()


@pytest.mark.asyncio
async def test_scrape_resets_idle_timer() -> None:
    registry, _ = build_registry()
    server = MetricsServer(registry, host=HOST, port=0, idle_timeout=0.5, drain_timeout=1.0)
    port = await server.start()
    try:
        await asyncio.sleep(0.3)
        async with httpx.AsyncClient() as client:
            response = await client.get(f"http://{HOST}:{port}/metrics")
        assert response.status_code == 200

        await asyncio.sleep(0.35)
        assert server.is_running

        await asyncio.wait_for(server.wait_closed(), timeout=2.0)
        assert not server.is_running
    finally:
        await server.close()


@pytest.mark.asyncio
async def test_idle_close_resets_registry_and_leaves_directory() -> None:
    registry, metrics = build_registry()
    metrics.tests_total.inc({"status": "passed", "project": "p", "browser": "b", "suite": "s"})
    directory = ServerDirectory(registry, _metrics_settings(idle_timeout_seconds=0.1))
    handle = directory.get_instance()

    await handle.start()
    server = handle.server
    assert server is not None
    await asyncio.wait_for(server.wait_closed(), timeout=2.0)

    assert directory.current() is None
    assert "playwright_tests_total{" not in registry.snapshot()


@pytest.mark.asyncio
async def test_directory_keeps_one_server_per_process() -> None:
    registry, _ = build_registry()
    directory = ServerDirectory(registry, _metrics_settings())
    first = directory.get_instance(0)
    second = directory.get_instance(12345)

    port_a = await first.start()
    port_b = await second.start()
    original = first.server

    assert port_a == port_b
    assert original is second.server

    await first.close()
    assert second.server is None

    port_c = await second.start()
    try:
        assert first.server is second.server
        assert second.server is not original
        assert first.port == port_c
    finally:
        await second.close()


@pytest.mark.asyncio
async def test_concurrent_close_runs_shutdown_once(monkeypatch) -> None:
    registry, _ = build_registry()
    resets: list[int] = []
    original_reset = registry.reset

    def counting_reset() -> None:
        resets.append(1)
        original_reset()

    monkeypatch.setattr(registry, "reset", counting_reset)
    server = MetricsServer(registry, host=HOST, port=0, drain_timeout=1.0)
    await server.start()

    await asyncio.gather(server.close(), server.close(), server.close())

    assert resets == [1]
    assert server.closed
    with pytest.raises(RuntimeError):
        await server.start()


@pytest.mark.asyncio
async def test_signal_triggers_graceful_close() -> None:
    registry, _ = build_registry()
    server = MetricsServer(registry, host=HOST, port=0, drain_timeout=1.0)
    port = await server.start()

    server._on_signal(signal.SIGTERM)
    server._on_signal(signal.SIGINT)
    await asyncio.wait_for(server.wait_closed(), timeout=2.0)

    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as checker:
        checker.bind((HOST, port))
