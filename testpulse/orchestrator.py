"""Post-test cycle: aggregate results, then notify once per cooldown window."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum

from testpulse.email_report import EmailNotifier
from testpulse.grafana import DASHBOARD_CHANNEL, GrafanaClient
from testpulse.lock import NotificationLock, new_run_id
from testpulse.outcome import NotificationOutcome
from testpulse.results import ResultsError, aggregate, write_summary
from testpulse.schemas import RunMetricsSummary
from testpulse.settings import Settings, get_settings

__all__ = ["CycleReport", "CycleState", "PostTestCycle", "run_post_test_cycle"]

LOGGER = logging.getLogger(__name__)


class CycleState(str, Enum):
    IDLE = "idle"
    AGGREGATING = "aggregating"
    NOTIFYING = "notifying"
    DONE = "done"
    SKIPPED = "skipped"
    ABORTED = "aborted"


@dataclass(slots=True)
class CycleReport:
    state: CycleState = CycleState.IDLE
    run_id: str | None = None
    summary: RunMetricsSummary | None = None
    outcomes: list[NotificationOutcome] = field(default_factory=list)
    reason: str | None = None

    @property
    def notified(self) -> bool:
        return any(outcome.ok for outcome in self.outcomes)


class PostTestCycle:
    """Runs after the test process; never raises to its caller."""

    def __init__(
        self,
        settings: Settings,
        *,
        email: EmailNotifier | None = None,
        grafana: GrafanaClient | None = None,
        lock: NotificationLock | None = None,
    ) -> None:
        self.settings = settings
        self.email = email or EmailNotifier(settings.smtp)
        self.grafana = grafana or GrafanaClient(settings.grafana)
        self.lock = lock or NotificationLock(
            settings.notifications.lock_path,
            cooldown=timedelta(seconds=settings.notifications.cooldown_seconds),
        )
        self.state = CycleState.IDLE

    async def run(self, run_started_at: datetime | None = None) -> CycleReport:
        report = CycleReport()
        try:
            await self._run(report, run_started_at)
        except Exception as exc:
            LOGGER.exception("Post-test cycle failed unexpectedly")
            report.reason = str(exc)
            self._transition(report, CycleState.ABORTED)
        return report

    async def _run(self, report: CycleReport, run_started_at: datetime | None) -> None:
        self._transition(report, CycleState.IDLE)
        active = self.lock.active_record()
        if active is not None:
            LOGGER.info(
                "Notifications already sent for run %s at %s; skipping",
                active.run_id,
                active.timestamp.isoformat(),
            )
            report.reason = "cooldown"
            self._transition(report, CycleState.SKIPPED)
            return

        try:
            dashboard = await self.grafana.upload_dashboard()
        except Exception as exc:
            LOGGER.exception("Dashboard upload failed unexpectedly")
            dashboard = NotificationOutcome.failure(DASHBOARD_CHANNEL, str(exc))
        self._record(report, dashboard)

        self._transition(report, CycleState.AGGREGATING)
        results = self.settings.results
        try:
            summary = await asyncio.to_thread(
                aggregate, results.results_dir, settings=results, run_started_at=run_started_at
            )
        except ResultsError as exc:
            LOGGER.error("Aborting post-test cycle: %s", exc)
            report.reason = str(exc)
            self._transition(report, CycleState.ABORTED)
            return
        report.summary = summary
        try:
            write_summary(results.results_dir / results.summary_name, summary)
        except OSError as exc:
            LOGGER.warning("Could not write metrics summary: %s", exc)

        self._transition(report, CycleState.NOTIFYING)
        report.run_id = self.lock.acquire(new_run_id()).run_id
        self._record(report, await self.email.send_report(summary))
        for outcome in await self.grafana.trigger_alert(summary):
            self._record(report, outcome)
        self._transition(report, CycleState.DONE)

    def _transition(self, report: CycleReport, state: CycleState) -> None:
        self.state = state
        report.state = state
        LOGGER.debug("Post-test cycle -> %s", state.value)

    def _record(self, report: CycleReport, outcome: NotificationOutcome) -> None:
        report.outcomes.append(outcome)
        if outcome.ok:
            LOGGER.info("%s notification delivered (attempts=%s)", outcome.channel, outcome.attempts)
        else:
            LOGGER.warning(
                "%s notification not delivered (attempts=%s, status=%s): %s",
                outcome.channel,
                outcome.attempts,
                outcome.status_code,
                outcome.error,
            )


def run_post_test_cycle(
    settings: Settings | None = None,
    *,
    run_started_at: datetime | None = None,
) -> CycleReport:
    """Synchronous entry point for CLIs and test-runner hooks."""

    cycle = PostTestCycle(settings or get_settings())
    return asyncio.run(cycle.run(run_started_at))
