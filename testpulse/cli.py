"""`testpulse` command line: metrics server, aggregation and notifications."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import replace
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from testpulse.grafana import GrafanaClient
from testpulse.lifecycle import ServerDirectory
from testpulse.metrics import build_registry
from testpulse.orchestrator import run_post_test_cycle
from testpulse.results import ResultsError, aggregate, write_summary
from testpulse.schemas import RunMetricsSummary
from testpulse.settings import get_settings

cli = typer.Typer(help="Test-run metrics and post-run notifications.", add_completion=False)
console = Console()
err_console = Console(stderr=True)


@cli.callback()
def _configure(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        handlers=[RichHandler(console=err_console, rich_tracebacks=True, show_time=False)],
    )


@cli.command(help="Serve /metrics until idle timeout or SIGINT/SIGTERM.")
def serve(
    port: Optional[int] = typer.Option(None, help="Preferred port (defaults to METRICS_PORT)."),
    host: Optional[str] = typer.Option(None, help="Bind host (defaults to METRICS_HOST)."),
) -> None:
    settings = get_settings()
    metrics_settings = settings.metrics
    if host:
        metrics_settings = replace(metrics_settings, host=host)

    async def _serve() -> int:
        registry, _ = build_registry(include_process_metrics=metrics_settings.include_process_metrics)
        directory = ServerDirectory(registry, metrics_settings)
        handle = directory.get_instance(port)
        bound = await handle.start()
        server = handle.server
        if server is None:
            raise RuntimeError("Metrics server closed during startup")
        server.install_signal_handlers()
        console.print(f"[green]Metrics server listening on port {bound}[/green]")
        await server.wait_closed()
        return bound

    asyncio.run(_serve())


@cli.command("post-test", help="Aggregate results and send notifications (never fails the build).")
def post_test(
    results_dir: Optional[Path] = typer.Option(None, help="Override TEST_RESULTS_DIR."),
) -> None:
    settings = get_settings()
    if results_dir is not None:
        settings = replace(settings, results=replace(settings.results, results_dir=results_dir))
    report = run_post_test_cycle(settings)
    console.print(f"Post-test cycle finished: [bold]{report.state.value}[/bold]")
    for outcome in report.outcomes:
        status = "[green]ok[/green]" if outcome.ok else f"[red]{outcome.error}[/red]"
        console.print(f"  {outcome.channel}: {status}")


@cli.command("aggregate", help="Summarize the latest test results.")
def aggregate_command(
    results_dir: Optional[Path] = typer.Option(None, help="Override TEST_RESULTS_DIR."),
    json_output: bool = typer.Option(False, "--json/--no-json", help="Emit the summary as JSON."),
    write: bool = typer.Option(False, "--write/--no-write", help="Also write the summary snapshot file."),
) -> None:
    settings = get_settings().results
    directory = results_dir or settings.results_dir
    try:
        summary = aggregate(directory, settings=settings)
    except ResultsError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc
    if write:
        write_summary(directory / settings.summary_name, summary)
    if json_output:
        typer.echo(json.dumps(summary.model_dump(), indent=2))
        return
    console.print(_summary_table(summary))


@cli.command("upload-dashboard", help="Create or overwrite the Grafana dashboard.")
def upload_dashboard(
    path: Optional[Path] = typer.Option(None, help="Dashboard JSON (defaults to GRAFANA_DASHBOARD_PATH)."),
) -> None:
    client = GrafanaClient(get_settings().grafana)
    outcome = asyncio.run(client.upload_dashboard(path))
    if not outcome.ok:
        console.print(f"[red]Dashboard upload failed: {outcome.error}[/red]")
        raise typer.Exit(code=1)
    console.print("[green]Dashboard uploaded[/green]")


def _summary_table(summary: RunMetricsSummary) -> Table:
    table = Table(title=f"Test run: {summary.pass_rate:.2f}% pass rate")
    table.add_column("Browser")
    table.add_column("Total", justify="right")
    table.add_column("Passed", justify="right", style="green")
    table.add_column("Failed", justify="right", style="red")
    table.add_column("Skipped", justify="right", style="yellow")
    for item in summary.browser_breakdown:
        table.add_row(item.browser, str(item.total), str(item.passed), str(item.failed), str(item.skipped))
    table.add_row(
        "[bold]all[/bold]",
        str(summary.total),
        str(summary.passed),
        str(summary.failed),
        str(summary.skipped),
    )
    return table


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
