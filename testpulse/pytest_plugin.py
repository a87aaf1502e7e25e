"""pytest integration: live run metrics plus the consolidated results artifact."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import pytest

from testpulse.html_report import ReportedCase, write_run_report
from testpulse.lifecycle import MetricsHost
from testpulse.orchestrator import run_post_test_cycle
from testpulse.reporter import ProjectInfo, RunReporter, StepOutcome
from testpulse.results import RunResult, write_consolidated
from testpulse.settings import Settings, get_settings

LOGGER = logging.getLogger(__name__)

KNOWN_BROWSERS = ("chromium", "firefox", "webkit", "chrome", "msedge")
DEFAULT_BROWSER = "default"
_PARAMS_RE = re.compile(r"\[(?P<params>.*)\]$")


def pytest_addoption(parser: pytest.Parser) -> None:
    group = parser.getgroup("testpulse", "test run metrics and notifications")
    group.addoption(
        "--pulse-metrics",
        action="store_true",
        default=False,
        help="Serve live Prometheus metrics for this run.",
    )
    group.addoption(
        "--pulse-metrics-port",
        type=int,
        default=None,
        help="Preferred metrics port (falls back to the next free port).",
    )
    group.addoption(
        "--pulse-results-dir",
        default=None,
        help="Directory for the consolidated test-results.json artifact.",
    )
    group.addoption(
        "--pulse-notify",
        action="store_true",
        default=False,
        help="Run the post-test notification cycle when the session ends.",
    )


def pytest_configure(config: pytest.Config) -> None:
    if hasattr(config, "workerinput"):
        # xdist workers forward their reports to the controller
        return
    options = config.option
    if not (options.pulse_metrics or options.pulse_results_dir or options.pulse_notify):
        return
    settings = get_settings()
    results_dir = Path(options.pulse_results_dir) if options.pulse_results_dir else settings.results.results_dir
    host = None
    if options.pulse_metrics:
        host = MetricsHost(settings.metrics, port=options.pulse_metrics_port)
    plugin = PulsePlugin(settings, results_dir=results_dir, host=host, notify=options.pulse_notify)
    config.pluginmanager.register(plugin, "testpulse-session")


def split_nodeid(nodeid: str) -> tuple[str, str, str]:
    """Return ``(suite, test_name, params)`` for a pytest node id."""

    base, params = nodeid, ""
    match = _PARAMS_RE.search(nodeid)
    if match:
        params = match.group("params")
        base = nodeid[: match.start()]
    suite, _, name = base.rpartition("::")
    return suite or base, name or base, params


def browser_from_params(params: str) -> str:
    for token in re.split(r"[-,]", params):
        if token.lower() in KNOWN_BROWSERS:
            return token.lower()
    return DEFAULT_BROWSER


@dataclass(slots=True)
class _CaseState:
    nodeid: str
    browser: str
    suite: str
    test_name: str
    steps: list[StepOutcome] = field(default_factory=list)
    retries: int = 0
    duration_ms: float = 0.0
    status: str = "passed"
    error: str | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class PulsePlugin:
    """Maps pytest's reporting hooks onto :class:`RunReporter` events."""

    def __init__(
        self,
        settings: Settings,
        *,
        results_dir: Path,
        host: MetricsHost | None = None,
        notify: bool = False,
    ) -> None:
        self.settings = settings
        self.results_dir = results_dir
        self.host = host
        self.notify = notify
        self.reporter = RunReporter(host.emit if host is not None else _discard)
        self.results: list[RunResult] = []
        self.cases: list[ReportedCase] = []
        self.started_at = datetime.now(timezone.utc)
        self._browsers: dict[str, str] = {}
        self._cases: dict[str, _CaseState] = {}

    def pytest_sessionstart(self, session: pytest.Session) -> None:
        self.started_at = datetime.now(timezone.utc)
        if self.host is not None:
            port = self.host.start()
            LOGGER.info("Serving test metrics on port %s", port)

    def pytest_collection_finish(self, session: pytest.Session) -> None:
        for item in session.items:
            callspec = getattr(item, "callspec", None)
            params: dict[str, Any] = callspec.params if callspec is not None else {}
            browser = params.get("browser_name")
            self._browsers[item.nodeid] = (
                str(browser) if browser else browser_from_params(split_nodeid(item.nodeid)[2])
            )
        browsers = sorted(set(self._browsers.values())) or [DEFAULT_BROWSER]
        self.reporter.on_run_start(ProjectInfo(name=b, browser=b) for b in browsers)

    def pytest_runtest_logstart(self, nodeid: str, location: tuple[str, int | None, str]) -> None:
        if nodeid in self._cases:
            return
        suite, test_name, params = split_nodeid(nodeid)
        browser = self._browsers.get(nodeid) or browser_from_params(params)
        self._cases[nodeid] = _CaseState(nodeid=nodeid, browser=browser, suite=suite, test_name=test_name)
        self.reporter.on_case_start(nodeid, browser, browser, suite, test_name)

    def pytest_runtest_logreport(self, report: pytest.TestReport) -> None:
        case = self._cases.get(report.nodeid)
        if case is None:
            return
        case.duration_ms += report.duration * 1000.0
        if report.outcome == "rerun":
            case.retries += 1
            case.steps.append(StepOutcome(report.when, "failed", report.longreprtext or None))
            return
        if report.failed:
            case.status = "failed"
            case.error = case.error or report.longreprtext or None
            case.steps.append(StepOutcome(report.when, "failed", report.longreprtext or None))
        elif report.skipped:
            if case.status != "failed":
                case.status = "skipped"
            case.steps.append(StepOutcome(report.when, "skipped"))
        else:
            case.steps.append(StepOutcome(report.when, "passed"))

    def pytest_runtest_logfinish(self, nodeid: str, location: tuple[str, int | None, str]) -> None:
        case = self._cases.pop(nodeid, None)
        if case is None:
            return
        self.reporter.on_case_end(
            nodeid,
            case.status,
            case.duration_ms,
            steps=case.steps,
            retry_count=case.retries,
            error=case.error,
        )
        title, _, _ = nodeid.partition("[")
        self.results.append(
            RunResult(
                title=title,
                browser=case.browser,
                status=case.status,
                duration_ms=case.duration_ms,
                error=case.error,
                timestamp=case.started_at.timestamp(),
            )
        )
        self.cases.append(
            ReportedCase(
                suite=case.suite,
                name=case.test_name,
                browser=case.browser,
                status=case.status,
                duration_ms=case.duration_ms,
                steps=tuple(case.steps),
                error=case.error,
            )
        )

    @pytest.hookimpl(trylast=True)
    def pytest_sessionfinish(self, session: pytest.Session, exitstatus: int) -> None:
        self.reporter.on_run_end()
        target = self.results_dir / self.settings.results.consolidated_name
        try:
            write_consolidated(target, self.results)
            LOGGER.info("Wrote %d test results to %s", len(self.results), target)
        except OSError as exc:
            LOGGER.warning("Could not write test results to %s: %s", target, exc)
        report_path = self.results_dir / self.settings.results.html_report_name
        try:
            write_run_report(report_path, self.cases, started_at=self.started_at)
        except OSError as exc:
            LOGGER.warning("Could not write HTML run report to %s: %s", report_path, exc)
        if self.host is not None:
            self.host.stop(grace=self.settings.metrics.run_end_grace_seconds)
        if self.notify:
            settings = replace(
                self.settings, results=replace(self.settings.results, results_dir=self.results_dir)
            )
            report = run_post_test_cycle(settings, run_started_at=self.started_at)
            LOGGER.info("Post-test cycle finished in state %s", report.state.value)


def _discard(_: object) -> None:
    return None

