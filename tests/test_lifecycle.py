from __future__ import annotations

import threading
import time

import httpx
import pytest

from testpulse.lifecycle import MetricsHost
from testpulse.reporter import RunReporter, StepOutcome
from testpulse.settings import MetricsSettings

SETTINGS = MetricsSettings(
    host="127.0.0.1",
    port=0,
    max_port_attempts=1,
    idle_timeout_seconds=300.0,
    drain_timeout_seconds=1.0,
    run_end_grace_seconds=0.0,
    include_process_metrics=False,
)


def _scrape_until(url: str, needle: str, timeout: float = 5.0) -> str:
    deadline = time.monotonic() + timeout
    text = ""
    while time.monotonic() < deadline:
        text = httpx.get(url, timeout=1.0).text
        if needle in text:
            return text
        time.sleep(0.05)
    raise AssertionError(f"{needle!r} never appeared in {url}:\n{text}")


def test_host_records_events_and_serves_during_grace_window() -> None:
    host = MetricsHost(SETTINGS, port=0)
    port = host.start()
    url = f"http://127.0.0.1:{port}/metrics"
    reporter = RunReporter(host.emit, memory_probe=lambda: None)

    reporter.on_run_start([("chromium", "chromium")])
    reporter.on_case_start("c1", "chromium", "chromium", "checkout.spec", "pays")
    reporter.on_case_end("c1", "passed", 120.0, steps=[StepOutcome("call", "passed")])
    reporter.on_run_end()

    text = _scrape_until(url, 'status="passed"')
    assert "playwright_tests_total{" in text

    stopper = threading.Thread(target=host.stop, kwargs={"grace": 1.5})
    stopper.start()
    time.sleep(0.3)
    during_grace = httpx.get(url, timeout=1.0)
    stopper.join(timeout=10.0)

    assert during_grace.status_code == 200
    assert 'status="passed"' in during_grace.text
    assert not stopper.is_alive()
    assert host.handle.server is None
    assert not host.running
    with pytest.raises(httpx.ConnectError):
        httpx.get(url, timeout=1.0)


def test_emit_without_running_host_is_dropped() -> None:
    host = MetricsHost(SETTINGS, port=0)

    host.emit(object())  # type: ignore[arg-type]
    host.stop()

    assert not host.running


def test_host_cannot_start_twice() -> None:
    host = MetricsHost(SETTINGS, port=0)
    host.start()
    try:
        with pytest.raises(RuntimeError):
            host.start()
    finally:
        host.stop()
