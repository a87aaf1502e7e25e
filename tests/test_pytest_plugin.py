from __future__ import annotations

import json

import pytest

from testpulse.pytest_plugin import browser_from_params, split_nodeid

PLUGIN_ARGS = ("-p", "no:testpulse", "-p", "testpulse.pytest_plugin")


@pytest.mark.parametrize(
    ("nodeid", "expected"),
    [
        ("tests/test_login.py::test_ok", ("tests/test_login.py", "test_ok", "")),
        (
            "tests/test_login.py::TestForm::test_submit[firefox]",
            ("tests/test_login.py::TestForm", "test_submit", "firefox"),
        ),
        ("test_mod.py::test_x[a::b]", ("test_mod.py", "test_x", "a::b")),
        ("test_mod.py", ("test_mod.py", "test_mod.py", "")),
    ],
)
def test_split_nodeid(nodeid: str, expected: tuple[str, str, str]) -> None:
    assert split_nodeid(nodeid) == expected


def test_browser_from_params() -> None:
    assert browser_from_params("webkit") == "webkit"
    assert browser_from_params("1-Chromium") == "chromium"
    assert browser_from_params("x,firefox") == "firefox"
    assert browser_from_params("42") == "default"
    assert browser_from_params("") == "default"


def test_plugin_is_inactive_without_options(pytester: pytest.Pytester) -> None:
    pytester.makepyfile("def test_ok():\n    pass\n")

    result = pytester.runpytest(*PLUGIN_ARGS)

    result.assert_outcomes(passed=1)
    assert not (pytester.path / "test-results" / "test-results.json").exists()


def test_plugin_writes_consolidated_results(pytester: pytest.Pytester) -> None:
    pytester.makepyfile(
        test_shop="""
        import pytest

        @pytest.mark.parametrize("browser", ["chromium", "firefox"])
        def test_checkout(browser):
            assert browser != "firefox", "total mismatch"

        @pytest.mark.skip(reason="not ready")
        def test_wishlist():
            pass

        def test_login():
            pass
        """
    )
    results_dir = pytester.path / "out"

    result = pytester.runpytest(*PLUGIN_ARGS, f"--pulse-results-dir={results_dir}")

    result.assert_outcomes(passed=2, failed=1, skipped=1)
    data = json.loads((results_dir / "test-results.json").read_text(encoding="utf-8"))
    summary = data["summary"]
    assert (summary["passCount"], summary["failCount"], summary["skipCount"]) == (2, 1, 1)
    failed = summary["failed"][0]
    assert failed["title"] == "test_shop.py::test_checkout"
    assert failed["browser"] == "firefox"
    assert "total mismatch" in failed["error"]
    browsers = {entry["browser"] for entry in data["browserMetrics"]}
    assert browsers == {"chromium", "firefox", "default"}
    report = (results_dir / "custom-report.html").read_text(encoding="utf-8")
    assert "test_checkout" in report
    assert "call: failed" in report
    assert "total mismatch" in report


def test_plugin_serves_live_metrics_during_the_run(pytester: pytest.Pytester) -> None:
    pytester.makepyfile(
        test_live="""
        import time

        import httpx

        def test_first():
            pass

        def test_scrape_own_server(request):
            plugin = request.config.pluginmanager.get_plugin("testpulse-session")
            port = plugin.host.handle.port
            assert port
            text = ""
            for _ in range(100):
                text = httpx.get(f"http://127.0.0.1:{port}/metrics", timeout=1.0).text
                if 'status="passed"' in text:
                    break
                time.sleep(0.05)
            assert "playwright_tests_total{" in text
            assert 'status="passed"' in text
        """
    )

    result = pytester.runpytest(
        *PLUGIN_ARGS,
        "--pulse-metrics",
        "--pulse-metrics-port=0",
        f"--pulse-results-dir={pytester.path / 'out'}",
    )

    result.assert_outcomes(passed=2)
    assert (pytester.path / "out" / "test-results.json").exists()
