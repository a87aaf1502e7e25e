from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

from testpulse.html_report import ReportedCase, render_run_report, write_run_report
from testpulse.reporter import StepOutcome

STARTED = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

CASES = [
    ReportedCase(
        suite="tests/test_shop.py",
        name="test_checkout",
        browser="firefox",
        status="failed",
        duration_ms=1500.0,
        steps=(
            StepOutcome("setup", "passed"),
            StepOutcome("call", "failed", "\x1b[31mexpected <3> got 2\x1b[0m"),
        ),
        error="\x1b[31mexpected <3> got 2\x1b[0m",
    ),
    ReportedCase(suite="tests/test_shop.py", name="test_wishlist", browser="chromium", status="skipped"),
    ReportedCase(suite="", name="test_login", browser="default", status="passed", duration_ms=20.0),
]


def test_report_groups_cases_by_suite_with_steps() -> None:
    body = render_run_report(CASES, started_at=STARTED, finished_at=STARTED + timedelta(seconds=4))

    assert "<h3>tests/test_shop.py</h3>" in body
    assert "<h3>Default Suite</h3>" in body
    assert "Passed: 1" in body
    assert "Failed: 1" in body
    assert "Skipped: 1" in body
    assert "Duration: 4.00s" in body
    assert "call: failed" in body
    assert "1.50s" in body


def test_report_escapes_and_cleans_errors() -> None:
    body = render_run_report(CASES, started_at=STARTED)

    assert "expected &lt;3&gt; got 2" in body
    assert "\x1b" not in body
    assert "<3>" not in body


def test_write_run_report_creates_parent(tmp_path: Path) -> None:
    target = tmp_path / "nested" / "custom-report.html"

    write_run_report(target, [], started_at=STARTED)

    text = target.read_text(encoding="utf-8")
    assert text.startswith("<!DOCTYPE html>")
    assert "Total: 0" in text
