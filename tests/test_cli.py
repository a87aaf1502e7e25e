from __future__ import annotations

from pathlib import Path

from typer.testing import CliRunner

from testpulse import cli as cli_module
from testpulse.orchestrator import CycleReport, CycleState
from testpulse.outcome import NotificationOutcome
from testpulse.results import RunResult, write_consolidated

runner = CliRunner()


def _write_results(directory: Path) -> None:
    write_consolidated(
        directory / "test-results.json",
        [
            RunResult(title="login", browser="chromium", status="passed", duration_ms=100.0),
            RunResult(title="checkout", browser="webkit", status="failed", error="boom"),
        ],
    )


def test_aggregate_json(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    _write_results(tmp_path / "results")

    result = runner.invoke(cli_module.cli, ["aggregate", "--results-dir", str(tmp_path / "results"), "--json", "--write"])

    assert result.exit_code == 0
    assert '"failed": 1' in result.output
    assert '"passed": 1' in result.output
    assert (tmp_path / "results" / "test-metrics-summary.json").exists()


def test_aggregate_table(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    _write_results(tmp_path / "results")

    result = runner.invoke(cli_module.cli, ["aggregate", "--results-dir", str(tmp_path / "results")])

    assert result.exit_code == 0
    assert "50.00% pass rate" in result.output
    assert "webkit" in result.output


def test_aggregate_without_results_exits_nonzero(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)

    result = runner.invoke(cli_module.cli, ["aggregate", "--results-dir", str(tmp_path / "missing")])

    assert result.exit_code == 1


def test_post_test_reports_outcomes(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    seen: list[Path] = []

    def fake_cycle(settings, **_: object) -> CycleReport:  # noqa: ANN001
        seen.append(settings.results.results_dir)
        return CycleReport(
            state=CycleState.DONE,
            outcomes=[
                NotificationOutcome.success("email"),
                NotificationOutcome.failure("grafana-annotation", "connection refused"),
            ],
        )

    monkeypatch.setattr(cli_module, "run_post_test_cycle", fake_cycle)

    result = runner.invoke(cli_module.cli, ["post-test", "--results-dir", "artifacts"])

    assert result.exit_code == 0
    assert seen == [Path("artifacts")]
    assert "done" in result.output
    assert "connection refused" in result.output


def test_upload_dashboard_failure_exits_nonzero(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)

    result = runner.invoke(cli_module.cli, ["upload-dashboard", "--path", str(tmp_path / "nope.json")])

    assert result.exit_code == 1
    assert "Dashboard upload failed" in result.output
