"""Standalone per-run HTML report with per-test steps and errors."""

from __future__ import annotations

import html
import logging
import platform
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Sequence

from testpulse.reporter import StepOutcome
from testpulse.results import classify_status, clean_error_message

__all__ = ["ReportedCase", "render_run_report", "write_run_report"]

LOGGER = logging.getLogger(__name__)

DEFAULT_SUITE = "Default Suite"


@dataclass(frozen=True, slots=True)
class ReportedCase:
    suite: str
    name: str
    browser: str
    status: str
    duration_ms: float = 0.0
    steps: tuple[StepOutcome, ...] = field(default_factory=tuple)
    error: str | None = None


def _group_by_suite(cases: Sequence[ReportedCase]) -> dict[str, list[ReportedCase]]:
    suites: dict[str, list[ReportedCase]] = {}
    for case in cases:
        suites.setdefault(case.suite or DEFAULT_SUITE, []).append(case)
    return suites


def _render_case(case: ReportedCase) -> str:
    bucket = classify_status(case.status) or "unknown"
    steps = "".join(
        f"<li class='{html.escape(classify_status(step.status))}'>"
        f"{html.escape(step.name)}: {html.escape(step.status)}"
        + (
            f"<pre class='error'>{html.escape(clean_error_message(step.error))}</pre>"
            if step.error
            else ""
        )
        + "</li>"
        for step in case.steps
    )
    error = ""
    if case.error and bucket == "failed":
        error = f"<pre class='error'>{html.escape(clean_error_message(case.error))}</pre>"
    return (
        f"<div class='test {html.escape(bucket)}'>"
        f"<h4>{html.escape(case.name)} <span class='browser'>({html.escape(case.browser)})</span>"
        f" <span class='status'>{html.escape(case.status)}</span>"
        f" <span class='duration'>{case.duration_ms / 1000.0:.2f}s</span></h4>"
        f"<ul class='steps'>{steps}</ul>{error}</div>"
    )


def render_run_report(
    cases: Sequence[ReportedCase],
    *,
    started_at: datetime,
    finished_at: datetime | None = None,
) -> str:
    finished_at = finished_at or datetime.now(timezone.utc)
    buckets = [classify_status(case.status) for case in cases]
    passed, failed, skipped = (buckets.count(name) for name in ("passed", "failed", "skipped"))
    duration = max(0.0, (finished_at - started_at).total_seconds())

    suites = "".join(
        f"<div class='suite'><h3>{html.escape(name)}</h3>{''.join(_render_case(case) for case in members)}</div>"
        for name, members in _group_by_suite(cases).items()
    )

    return f"""<!DOCTYPE html>
<html>
<head>
<meta charset="UTF-8">
<title>Test Execution Report</title>
<style>
  body {{ font-family: -apple-system, 'Segoe UI', Roboto, Arial, sans-serif; color: #333; margin: 24px; }}
  .summary span {{ margin-right: 16px; }}
  .suite {{ border: 1px solid #e2e8f0; border-radius: 6px; padding: 16px; margin: 16px 0; }}
  .test {{ border-left: 4px solid #94a3b8; padding: 4px 12px; margin: 8px 0; }}
  .test.passed {{ border-color: #16a34a; }}
  .test.failed {{ border-color: #dc2626; }}
  .test.skipped {{ border-color: #ca8a04; }}
  .passed {{ color: #16a34a; }}
  .failed {{ color: #dc2626; }}
  .skipped {{ color: #ca8a04; }}
  .browser, .duration {{ color: #64748b; font-weight: normal; }}
  pre.error {{ white-space: pre-wrap; background: #fef2f2; padding: 8px; border-radius: 4px; }}
</style>
</head>
<body>
<h2>Test Execution Report</h2>
<div class="summary">
  <span>Total: {len(cases)}</span>
  <span class="passed">Passed: {passed}</span>
  <span class="failed">Failed: {failed}</span>
  <span class="skipped">Skipped: {skipped}</span>
  <span>Duration: {duration:.2f}s</span>
</div>
<p class="browser">Platform {html.escape(platform.platform())}; started {html.escape(started_at.isoformat())}</p>
{suites}
</body>
</html>
"""


def write_run_report(
    path: Path,
    cases: Sequence[ReportedCase],
    *,
    started_at: datetime,
    finished_at: datetime | None = None,
) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(render_run_report(cases, started_at=started_at, finished_at=finished_at), encoding="utf-8")
    LOGGER.info("HTML run report written to %s", path)
