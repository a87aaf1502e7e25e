from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import httpx
import pytest

from testpulse.grafana import GrafanaClient
from testpulse.lock import NotificationLock
from testpulse.orchestrator import CycleState, PostTestCycle
from testpulse.outcome import NotificationOutcome
from testpulse.results import RunResult, write_consolidated
from testpulse.schemas import RunMetricsSummary
from testpulse.settings import Settings


class StubEmail:
    def __init__(self, calls: list[str], *, ok: bool = True) -> None:
        self.calls = calls
        self.ok = ok
        self.summaries: list[RunMetricsSummary] = []

    async def send_report(self, summary: RunMetricsSummary) -> NotificationOutcome:
        self.calls.append("email")
        self.summaries.append(summary)
        if self.ok:
            return NotificationOutcome.success("email")
        return NotificationOutcome.failure("email", "smtp down", attempts=3)


class StubGrafana:
    def __init__(self, calls: list[str]) -> None:
        self.calls = calls

    async def upload_dashboard(self) -> NotificationOutcome:
        self.calls.append("dashboard")
        return NotificationOutcome.failure("grafana-dashboard", "connection refused")

    async def trigger_alert(self, summary: RunMetricsSummary) -> list[NotificationOutcome]:
        self.calls.append("alert")
        return [NotificationOutcome.success("grafana-annotation")]


class ExplodingGrafana(StubGrafana):
    async def upload_dashboard(self) -> NotificationOutcome:
        self.calls.append("dashboard")
        raise TypeError("pop expected at most 1 argument, got 2")


class ExplodingEmail(StubEmail):
    async def send_report(self, summary: RunMetricsSummary) -> NotificationOutcome:
        raise RuntimeError("unexpected")


def _write_results(settings: Settings, *, failed: int = 1) -> None:
    results = [RunResult(title="login", browser="chromium", status="passed", duration_ms=120.0)]
    results += [
        RunResult(title=f"checkout {i}", browser="firefox", status="failed", error="boom") for i in range(failed)
    ]
    write_consolidated(settings.results.results_dir / settings.results.consolidated_name, results)


def _cycle(settings: Settings, calls: list[str], **kwargs: object) -> PostTestCycle:
    email = kwargs.pop("email", StubEmail(calls))
    grafana = kwargs.pop("grafana", StubGrafana(calls))
    return PostTestCycle(settings, email=email, grafana=grafana, **kwargs)  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_cycle_notifies_in_order_and_writes_summary(settings: Settings) -> None:
    _write_results(settings)
    calls: list[str] = []
    cycle = _cycle(settings, calls)

    report = await cycle.run()

    assert report.state is CycleState.DONE
    assert calls == ["dashboard", "email", "alert"]
    assert report.summary is not None
    assert (report.summary.passed, report.summary.failed) == (1, 1)
    assert report.notified
    assert [o.channel for o in report.outcomes] == ["grafana-dashboard", "email", "grafana-annotation"]
    summary_file = settings.results.results_dir / settings.results.summary_name
    assert json.loads(summary_file.read_text(encoding="utf-8"))["failed"] == 1
    lock = json.loads(settings.notifications.lock_path.read_text(encoding="utf-8"))
    assert lock["runId"] == report.run_id


@pytest.mark.asyncio
async def test_second_cycle_within_cooldown_is_skipped(settings: Settings) -> None:
    _write_results(settings)
    calls: list[str] = []

    first = await _cycle(settings, calls).run()
    second = await _cycle(settings, calls).run()

    assert first.state is CycleState.DONE
    assert second.state is CycleState.SKIPPED
    assert second.reason == "cooldown"
    assert calls.count("email") == 1
    assert calls.count("alert") == 1


@pytest.mark.asyncio
async def test_expired_lock_allows_new_cycle(settings: Settings) -> None:
    _write_results(settings)
    stale = datetime.now(timezone.utc) - timedelta(minutes=10)
    settings.notifications.lock_path.write_text(
        json.dumps({"timestamp": stale.isoformat(), "runId": "old"}), encoding="utf-8"
    )
    calls: list[str] = []

    report = await _cycle(settings, calls).run()

    assert report.state is CycleState.DONE
    assert report.run_id != "old"


@pytest.mark.asyncio
async def test_missing_results_abort_without_notifying(settings: Settings) -> None:
    calls: list[str] = []

    report = await _cycle(settings, calls).run()

    assert report.state is CycleState.ABORTED
    assert "does not exist" in (report.reason or "")
    assert calls == ["dashboard"]
    assert not settings.notifications.lock_path.exists()


@pytest.mark.asyncio
async def test_email_failure_still_reaches_alerting(settings: Settings) -> None:
    _write_results(settings)
    calls: list[str] = []

    report = await _cycle(settings, calls, email=StubEmail(calls, ok=False)).run()

    assert report.state is CycleState.DONE
    assert calls == ["dashboard", "email", "alert"]
    email_outcome = next(o for o in report.outcomes if o.channel == "email")
    assert not email_outcome.ok
    assert email_outcome.attempts == 3


@pytest.mark.asyncio
async def test_dashboard_crash_does_not_block_notifications(settings: Settings) -> None:
    _write_results(settings)
    calls: list[str] = []

    report = await _cycle(settings, calls, grafana=ExplodingGrafana(calls)).run()

    assert report.state is CycleState.DONE
    assert calls == ["dashboard", "email", "alert"]
    dashboard = report.outcomes[0]
    assert (dashboard.channel, dashboard.ok) == ("grafana-dashboard", False)
    assert "pop expected" in (dashboard.error or "")


@pytest.mark.asyncio
async def test_unexpected_error_is_contained(settings: Settings) -> None:
    _write_results(settings)
    calls: list[str] = []

    report = await _cycle(settings, calls, email=ExplodingEmail(calls)).run()

    assert report.state is CycleState.ABORTED
    assert report.reason == "unexpected"


@pytest.mark.asyncio
async def test_custom_lock_cooldown(settings: Settings, tmp_path: Path) -> None:
    _write_results(settings)
    calls: list[str] = []
    lock = NotificationLock(tmp_path / "custom.lock", cooldown=timedelta(0))

    first = await _cycle(settings, calls, lock=lock).run()
    second = await _cycle(settings, calls, lock=lock).run()

    assert (first.state, second.state) == (CycleState.DONE, CycleState.DONE)
    assert calls.count("email") == 2


@pytest.mark.asyncio
async def test_non_object_dashboard_still_notifies(settings: Settings) -> None:
    _write_results(settings)
    settings.grafana.dashboard_path.write_text("[]", encoding="utf-8")
    calls: list[str] = []
    requests: list[str] = []

    def grafana_ok(request: httpx.Request) -> httpx.Response:
        requests.append(request.url.path)
        return httpx.Response(200, json={"status": "success"})

    grafana = GrafanaClient(settings.grafana, client=httpx.AsyncClient(transport=httpx.MockTransport(grafana_ok)))

    report = await _cycle(settings, calls, grafana=grafana).run()

    assert report.state is CycleState.DONE
    assert calls == ["email"]
    assert requests == ["/api/annotations"]
    dashboard = report.outcomes[0]
    assert not dashboard.ok
    assert "must contain a JSON object" in (dashboard.error or "")
