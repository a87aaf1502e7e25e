"""Convert a pytest JUnit XML report into the consolidated test-results.json shape."""

from __future__ import annotations

import argparse
import xml.etree.ElementTree as ET
from pathlib import Path

from testpulse.pytest_plugin import browser_from_params, split_nodeid
from testpulse.results import RunResult, write_consolidated


def _iter_testsuites(root: ET.Element) -> list[ET.Element]:
    if root.tag == "testsuite":
        return [root]
    suites = list(root.findall(".//testsuite"))
    return suites or [root]


def _case_status(case: ET.Element) -> tuple[str, str | None]:
    for tag in ("failure", "error"):
        node = case.find(tag)
        if node is not None:
            message = node.attrib.get("message") or (node.text or "")
            return "failed", message.strip() or None
    if case.find("skipped") is not None:
        return "skipped", None
    return "passed", None


def results_from_junit(report_path: Path) -> list[RunResult]:
    root = ET.parse(report_path).getroot()
    results: list[RunResult] = []
    for suite in _iter_testsuites(root):
        for case in suite.iter("testcase"):
            name = case.attrib.get("name") or "unknown"
            classname = case.attrib.get("classname") or ""
            _, test_name, params = split_nodeid(name)
            status, error = _case_status(case)
            try:
                duration_ms = float(case.attrib.get("time", 0) or 0) * 1000.0
            except ValueError:
                duration_ms = 0.0
            results.append(
                RunResult(
                    title=f"{classname}::{test_name}" if classname else test_name,
                    browser=browser_from_params(params),
                    status=status,
                    duration_ms=duration_ms,
                    error=error,
                )
            )
    return results


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Write test-results.json from a pytest JUnit XML report.")
    parser.add_argument("--junit", required=True, help="Path to the JUnit XML file produced by pytest.")
    parser.add_argument(
        "--output",
        default="test-results/test-results.json",
        help="Destination for the consolidated results file.",
    )
    args = parser.parse_args(argv)

    junit_path = Path(args.junit)
    if not junit_path.exists():
        print(f"JUnit report not found: {junit_path}")
        return 1
    try:
        results = results_from_junit(junit_path)
    except ET.ParseError as exc:
        print(f"Failed to parse JUnit XML: {exc}")
        return 1
    output = Path(args.output)
    write_consolidated(output, results)
    failed = sum(1 for result in results if result.status == "failed")
    print(f"Wrote {len(results)} results ({failed} failed) to {output}")
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entry
    raise SystemExit(main())
