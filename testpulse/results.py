"""Aggregate persisted test-result artifacts into a run summary."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator, Mapping, Sequence

from testpulse.schemas import BrowserBreakdown, FailedTest, RunMetricsSummary, SkippedTest
from testpulse.settings import ResultsSettings, get_settings

__all__ = [
    "ConsolidatedSource",
    "MalformedResultsError",
    "NoResultsFoundError",
    "PerFileSource",
    "ResultSource",
    "ResultsError",
    "RunResult",
    "aggregate",
    "classify_status",
    "clean_error_message",
    "deduplicate",
    "load_results",
    "resolve_source",
    "summarize",
    "write_consolidated",
    "write_summary",
]

LOGGER = logging.getLogger(__name__)

FAILED_STATUSES = frozenset({"failed", "timedout", "interrupted"})
_ANSI_RE = re.compile(r"\x1b\[[0-9;]*[A-Za-z]|\[\d+m")
_LINE_COMMENT_RE = re.compile(r"(?:^|\s+)//.*$", re.MULTILINE)
_WHITESPACE_RE = re.compile(r"\s+")
_NO_ERROR = "No error details available"


class ResultsError(Exception):
    """Base class for aggregation failures."""


class NoResultsFoundError(ResultsError):
    """The results directory is missing or holds no recognised result data."""


class MalformedResultsError(ResultsError):
    """A result artifact exists but cannot be parsed."""


@dataclass(frozen=True, slots=True)
class RunResult:
    """One test execution as recorded by the runner."""

    title: str
    browser: str
    status: str
    duration_ms: float = 0.0
    error: str | None = None
    timestamp: float | None = None


@dataclass(frozen=True, slots=True)
class ConsolidatedSource:
    path: Path


@dataclass(frozen=True, slots=True)
class PerFileSource:
    paths: tuple[Path, ...]


ResultSource = ConsolidatedSource | PerFileSource


def clean_error_message(message: str | None) -> str:
    """Strip ANSI colour codes, source comments and runs of whitespace."""

    if not message:
        return ""
    text = _ANSI_RE.sub("", str(message)).replace("\x1b", "")
    text = _LINE_COMMENT_RE.sub("", text)
    return _WHITESPACE_RE.sub(" ", text).strip()


def classify_status(status: str | None) -> str:
    """Fold a runner status into passed/failed/skipped (others pass through)."""

    normalized = (status or "").strip().lower()
    if normalized in FAILED_STATUSES:
        return "failed"
    return normalized


def resolve_source(
    results_dir: Path,
    *,
    consolidated_name: str = "test-results.json",
    suffix: str = "results.json",
    window_seconds: float = 300.0,
    run_started_at: datetime | None = None,
) -> ResultSource:
    """Decide once whether to read the consolidated file or a per-test batch."""

    if not results_dir.is_dir():
        raise NoResultsFoundError(f"Results directory {results_dir} does not exist")

    consolidated = results_dir / consolidated_name
    if consolidated.is_file():
        LOGGER.info("Found consolidated test results file: %s", consolidated)
        return ConsolidatedSource(consolidated)

    candidates = [
        path
        for path in results_dir.iterdir()
        if path.is_file() and path.name.endswith(suffix)
    ]
    if not candidates:
        raise NoResultsFoundError(f"No test result files found in {results_dir}")

    stamped = sorted(((path.stat().st_mtime, path) for path in candidates), reverse=True)
    newest = stamped[0][0]
    floor = newest - max(0.0, window_seconds)
    if run_started_at is not None:
        floor = max(floor, run_started_at.timestamp())
    batch = tuple(path for mtime, path in stamped if mtime >= floor)
    if not batch:
        raise NoResultsFoundError(
            f"No test result files in {results_dir} were written after the run started"
        )
    dropped = len(stamped) - len(batch)
    if dropped:
        LOGGER.info("Ignoring %d stale result file(s) from a previous run", dropped)
    return PerFileSource(batch)


def load_results(source: ResultSource) -> list[RunResult]:
    if isinstance(source, ConsolidatedSource):
        return _load_consolidated(source.path)
    return _load_per_file(source.paths)


def deduplicate(results: Iterable[RunResult]) -> list[RunResult]:
    """Keep only the most recent entry per (title, browser)."""

    latest: dict[tuple[str, str], RunResult] = {}
    for result in results:
        key = (result.title, result.browser)
        current = latest.get(key)
        if current is None or (result.timestamp or 0.0) >= (current.timestamp or 0.0):
            latest[key] = result
    return list(latest.values())


def summarize(results: Sequence[RunResult]) -> RunMetricsSummary:
    breakdown: dict[str, BrowserBreakdown] = {}
    failed_tests: list[FailedTest] = []
    skipped_tests: list[SkippedTest] = []
    passed = failed = skipped = 0
    duration_ms = 0.0

    for result in results:
        bucket = classify_status(result.status)
        stats = breakdown.setdefault(result.browser, BrowserBreakdown(browser=result.browser))
        stats.total += 1
        duration_ms += result.duration_ms or 0.0
        if bucket == "passed":
            passed += 1
            stats.passed += 1
        elif bucket == "failed":
            failed += 1
            stats.failed += 1
            failed_tests.append(
                FailedTest(
                    name=result.title,
                    browser=result.browser,
                    error=clean_error_message(result.error) or _NO_ERROR,
                )
            )
        elif bucket == "skipped":
            skipped += 1
            stats.skipped += 1
            skipped_tests.append(SkippedTest(name=result.title, browser=result.browser))

    return RunMetricsSummary(
        total=len(results),
        passed=passed,
        failed=failed,
        skipped=skipped,
        duration=duration_ms / 1000.0,
        browsers=len(breakdown),
        browser_breakdown=list(breakdown.values()),
        failed_tests=failed_tests,
        skipped_tests=skipped_tests,
    )


def aggregate(
    results_dir: Path | str | None = None,
    *,
    settings: ResultsSettings | None = None,
    run_started_at: datetime | None = None,
) -> RunMetricsSummary:
    """Resolve, load, deduplicate and summarize the latest run's artifacts."""

    cfg = settings or get_settings().results
    directory = Path(results_dir) if results_dir is not None else cfg.results_dir
    LOGGER.info("Reading test results from %s", directory)
    source = resolve_source(
        directory,
        consolidated_name=cfg.consolidated_name,
        suffix=cfg.file_suffix,
        window_seconds=cfg.batch_window_seconds,
        run_started_at=run_started_at,
    )
    results = load_results(source)
    if isinstance(source, PerFileSource):
        before = len(results)
        results = deduplicate(results)
        if before != len(results):
            LOGGER.info("Collapsed %d duplicate result entries", before - len(results))
    if not results:
        raise NoResultsFoundError(f"No test results data found in {directory}")
    summary = summarize(results)
    LOGGER.info(
        "Aggregated %d tests: %d passed, %d failed, %d skipped",
        summary.total,
        summary.passed,
        summary.failed,
        summary.skipped,
    )
    return summary


def write_summary(path: Path, summary: RunMetricsSummary) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(summary.model_dump_json(indent=2) + "\n", encoding="utf-8")


def write_consolidated(path: Path, results: Sequence[RunResult]) -> None:
    """Persist results in the consolidated `summary.{passed,failed,skipped}` shape."""

    passed: list[dict[str, Any]] = []
    failed: list[dict[str, Any]] = []
    skipped: list[dict[str, Any]] = []
    for result in results:
        entry: dict[str, Any] = {
            "title": result.title,
            "browser": result.browser,
            "status": result.status,
            "duration": result.duration_ms,
        }
        bucket = classify_status(result.status)
        if bucket == "failed":
            entry["error"] = clean_error_message(result.error) or "Unknown error"
            failed.append(entry)
        elif bucket == "skipped":
            skipped.append(entry)
        elif bucket == "passed":
            passed.append(entry)
    payload = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "summary": {
            "passed": passed,
            "failed": failed,
            "skipped": skipped,
            "total": len(passed) + len(failed) + len(skipped),
            "passCount": len(passed),
            "failCount": len(failed),
            "skipCount": len(skipped),
        },
        "browserMetrics": [stats.model_dump() for stats in summarize(results).browser_breakdown],
    }
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")


def _load_consolidated(path: Path) -> list[RunResult]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise MalformedResultsError(f"Failed to parse {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise MalformedResultsError(f"{path} must contain a JSON object")

    summary = data.get("summary")
    if isinstance(summary, Mapping):
        results: list[RunResult] = []
        for status in ("passed", "failed", "skipped"):
            entries = summary.get(status)
            if not isinstance(entries, list):
                continue
            for entry in entries:
                if isinstance(entry, Mapping):
                    results.append(_normalize_record({**entry, "status": entry.get("status", status)}))
        return results

    if isinstance(data.get("suites"), list):
        return list(_walk_playwright_suites(data["suites"]))
    return []


def _walk_playwright_suites(suites: Sequence[Any]) -> Iterator[RunResult]:
    """Flatten Playwright's JSON reporter tree (suites → specs → tests → results)."""

    for suite in suites:
        if not isinstance(suite, Mapping):
            continue
        for spec in suite.get("specs") or []:
            for test in spec.get("tests") or []:
                attempts = [r for r in test.get("results") or [] if isinstance(r, Mapping)]
                if not attempts:
                    continue
                final = attempts[-1]
                yield _normalize_record(
                    {
                        "title": spec.get("title"),
                        "browser": test.get("projectName"),
                        "status": final.get("status"),
                        "duration": final.get("duration"),
                        "error": final.get("error"),
                        "startTime": final.get("startTime"),
                    }
                )
        yield from _walk_playwright_suites(suite.get("suites") or [])


def _load_per_file(paths: Sequence[Path]) -> list[RunResult]:
    results: list[RunResult] = []
    malformed = 0
    for path in paths:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            malformed += 1
            LOGGER.warning("Skipping unreadable result file %s: %s", path, exc)
            continue
        mtime = path.stat().st_mtime
        records = data if isinstance(data, list) else [data]
        for record in records:
            if isinstance(record, Mapping) and record.get("status"):
                results.append(_normalize_record(record, fallback_timestamp=mtime))
    if malformed and malformed == len(paths):
        raise MalformedResultsError(f"None of the {malformed} result file(s) could be parsed")
    return results


def _normalize_record(raw: Mapping[str, Any], *, fallback_timestamp: float | None = None) -> RunResult:
    title = raw.get("title") or raw.get("name") or "unknown"
    browser = raw.get("browser") or raw.get("project") or raw.get("projectName") or "unknown"
    duration = raw.get("duration")
    timestamp = _parse_timestamp(raw.get("timestamp") or raw.get("startTime"))
    return RunResult(
        title=str(title),
        browser=str(browser),
        status=str(raw.get("status") or "").strip().lower(),
        duration_ms=float(duration) if isinstance(duration, (int, float)) else 0.0,
        error=_extract_error(raw),
        timestamp=timestamp if timestamp is not None else fallback_timestamp,
    )


def _extract_error(raw: Mapping[str, Any]) -> str | None:
    for key in ("error", "failure"):
        value = raw.get(key)
        if isinstance(value, Mapping) and value.get("message"):
            return str(value["message"])
        if isinstance(value, str) and value:
            return value
    errors = raw.get("errors")
    if isinstance(errors, list):
        for entry in errors:
            if isinstance(entry, Mapping) and entry.get("message"):
                return str(entry["message"])
    return None


def _parse_timestamp(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        # Playwright and JS reporters emit epoch milliseconds
        return float(value) / 1000.0 if value > 1e11 else float(value)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.timestamp()
    return None
