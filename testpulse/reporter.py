"""Run lifecycle events and the recorder that turns them into metrics.

Runner hooks (:class:`RunReporter`) never touch the registry. They build
immutable events and hand them to a sink; a single :class:`MetricsRecorder`
task drains the queue on the metrics event loop and is the only writer.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Iterable, Union

import psutil

from testpulse.metrics import TestMetrics
from testpulse.results import classify_status

__all__ = [
    "CaseFinished",
    "CaseStarted",
    "MetricsRecorder",
    "ProjectInfo",
    "RunFinished",
    "RunReporter",
    "RunStarted",
    "StepOutcome",
    "classify_error",
    "current_rss_bytes",
]

LOGGER = logging.getLogger(__name__)

ERROR_TYPE_MAX_LENGTH = 80
_ANSI_RE = re.compile(r"\x1b\[[0-9;]*[A-Za-z]")


@dataclass(frozen=True, slots=True)
class ProjectInfo:
    name: str
    browser: str


@dataclass(frozen=True, slots=True)
class StepOutcome:
    name: str
    status: str
    error: str | None = None


@dataclass(frozen=True, slots=True)
class RunStarted:
    projects: tuple[ProjectInfo, ...] = ()


@dataclass(frozen=True, slots=True)
class CaseStarted:
    case_id: str
    test_name: str
    browser: str
    project: str
    suite: str
    memory_bytes: int | None = None


@dataclass(frozen=True, slots=True)
class CaseFinished:
    case_id: str
    status: str
    duration_ms: float
    steps: tuple[StepOutcome, ...] = ()
    retry_count: int = 0
    error: str | None = None
    memory_bytes: int | None = None


@dataclass(frozen=True, slots=True)
class RunFinished:
    pass


RunEvent = Union[RunStarted, CaseStarted, CaseFinished, RunFinished]


def current_rss_bytes() -> int:
    return psutil.Process().memory_info().rss


def classify_error(message: str | None) -> str:
    """Reduce an error message to a bounded label value."""

    if not message:
        return "unknown"
    first_line = _ANSI_RE.sub("", message).strip().splitlines()
    if not first_line:
        return "unknown"
    return first_line[0].strip()[:ERROR_TYPE_MAX_LENGTH]


class RunReporter:
    """Adapter between a test runner's hooks and the metrics event stream."""

    def __init__(
        self,
        sink: Callable[[RunEvent], None],
        *,
        memory_probe: Callable[[], int | None] | None = current_rss_bytes,
    ) -> None:
        self._sink = sink
        self._memory_probe = memory_probe

    def on_run_start(self, projects: Iterable[ProjectInfo | tuple[str, str]] = ()) -> None:
        infos = tuple(p if isinstance(p, ProjectInfo) else ProjectInfo(*p) for p in projects)
        self._sink(RunStarted(projects=infos))

    def on_case_start(
        self,
        case_id: str,
        browser: str,
        project: str,
        suite: str,
        test_name: str | None = None,
    ) -> None:
        self._sink(
            CaseStarted(
                case_id=case_id,
                test_name=test_name or case_id,
                browser=browser,
                project=project,
                suite=suite,
                memory_bytes=self._sample_memory(),
            )
        )

    def on_case_end(
        self,
        case_id: str,
        status: str,
        duration_ms: float,
        steps: Iterable[StepOutcome] = (),
        retry_count: int = 0,
        error: str | None = None,
    ) -> None:
        self._sink(
            CaseFinished(
                case_id=case_id,
                status=status,
                duration_ms=duration_ms,
                steps=tuple(steps),
                retry_count=retry_count,
                error=error,
                memory_bytes=self._sample_memory(),
            )
        )

    def on_run_end(self) -> None:
        self._sink(RunFinished())

    def _sample_memory(self) -> int | None:
        if self._memory_probe is None:
            return None
        try:
            return self._memory_probe()
        except (psutil.Error, OSError) as exc:
            LOGGER.debug("Memory sample failed: %s", exc)
            return None


@dataclass(slots=True)
class MetricsRecorder:
    """Applies run events to the test metric families."""

    metrics: TestMetrics
    projects: tuple[ProjectInfo, ...] = ()
    _active: dict[str, CaseStarted] = field(default_factory=dict)

    @property
    def active_cases(self) -> int:
        return len(self._active)

    def apply(self, event: RunEvent) -> None:
        if isinstance(event, RunStarted):
            self._run_started(event)
        elif isinstance(event, CaseStarted):
            self._case_started(event)
        elif isinstance(event, CaseFinished):
            self._case_finished(event)
        elif isinstance(event, RunFinished):
            self._run_finished()
        else:
            raise TypeError(f"Unsupported run event {event!r}")

    async def consume(self, queue: "asyncio.Queue[RunEvent | None]") -> None:
        """Drain ``queue`` until a ``None`` sentinel arrives."""

        while True:
            event = await queue.get()
            try:
                if event is None:
                    return
                self.apply(event)
            except Exception:
                LOGGER.exception("Failed to record %s", type(event).__name__)
            finally:
                queue.task_done()

    def _run_started(self, event: RunStarted) -> None:
        self.projects = event.projects
        for project in event.projects:
            self.metrics.suite_info.set(
                {"project": project.name, "browser": project.browser, "status": "running"}, 0
            )
        LOGGER.info("Run started with %d project(s)", len(event.projects))

    def _case_started(self, event: CaseStarted) -> None:
        if event.case_id in self._active:
            LOGGER.debug("Case %s already active; ignoring duplicate start", event.case_id)
            return
        self._active[event.case_id] = event
        self.metrics.active_tests.inc(
            {"browser": event.browser, "project": event.project, "suite": event.suite}
        )
        if event.memory_bytes is not None:
            self.metrics.memory_bytes.set(
                {"browser": event.browser, "project": event.project, "test_name": event.test_name},
                event.memory_bytes,
            )

    def _case_finished(self, event: CaseFinished) -> None:
        started = self._active.pop(event.case_id, None)
        if started is None:
            LOGGER.warning("Case %s finished without a recorded start", event.case_id)
            return
        browser, project, suite, test_name = (
            started.browser,
            started.project,
            started.suite,
            started.test_name,
        )
        status = event.status.lower()
        m = self.metrics
        m.tests_total.inc({"status": status, "project": project, "browser": browser, "suite": suite})
        m.duration_seconds.observe(
            {"test_name": test_name, "browser": browser, "status": status, "project": project, "suite": suite},
            max(event.duration_ms, 0.0) / 1000.0,
        )
        m.active_tests.dec({"browser": browser, "project": project, "suite": suite})
        if event.retry_count > 0:
            m.retries_total.inc(
                {"test_name": test_name, "browser": browser, "project": project}, event.retry_count
            )

        errors_recorded = 0
        for step in event.steps:
            m.steps_total.inc({"status": step.status, "test_name": test_name, "step_name": step.name})
            if classify_status(step.status) == "failed":
                self._record_error(step.error, browser, project, test_name)
                errors_recorded += 1
        if not errors_recorded and classify_status(status) == "failed":
            self._record_error(event.error, browser, project, test_name)

        m.browser_metrics.set(
            {"metric": "last_test_duration_seconds", "browser": browser, "project": project},
            max(event.duration_ms, 0.0) / 1000.0,
        )
        if event.memory_bytes is not None:
            m.memory_bytes.set(
                {"browser": browser, "project": project, "test_name": test_name}, event.memory_bytes
            )

    def _run_finished(self) -> None:
        for case_id, started in list(self._active.items()):
            LOGGER.warning("Case %s still active at run end", case_id)
            self.metrics.active_tests.dec(
                {"browser": started.browser, "project": started.project, "suite": started.suite}
            )
        self._active.clear()
        for project in self.projects:
            labels = {"project": project.name, "browser": project.browser}
            self.metrics.suite_info.set({**labels, "status": "running"}, 0)
            self.metrics.suite_info.set({**labels, "status": "completed"}, 1)
        LOGGER.info("Run finished")

    def _record_error(self, message: str | None, browser: str, project: str, test_name: str) -> None:
        self.metrics.errors_total.inc(
            {
                "error_type": classify_error(message),
                "browser": browser,
                "project": project,
                "test_name": test_name,
            }
        )
