#!/usr/bin/env python3
"""Health check for a running testpulse metrics server."""

from __future__ import annotations

import json
import time
from datetime import datetime, timezone
from pathlib import Path

import httpx
import typer
from decouple import Config as DecoupleConfig, RepositoryEmpty, RepositoryEnv

cli = typer.Typer(help="Probe /health and /metrics on the test metrics server and fail when unreachable.")

DEFAULT_REQUIRED = ("playwright_tests_total",)


def _load_config() -> DecoupleConfig:
    env_path = Path(".env")
    if env_path.exists():
        return DecoupleConfig(RepositoryEnv(str(env_path)))
    example = Path(".env.example")
    if example.exists():
        return DecoupleConfig(RepositoryEnv(str(example)))
    return DecoupleConfig(RepositoryEmpty())


def _default_port(cfg: DecoupleConfig) -> int:
    return cfg("METRICS_PORT", cast=int, default=9323)


def _probe(url: str, timeout: float) -> tuple[float, str]:
    start = time.perf_counter()
    with httpx.Client(timeout=timeout) as client:
        response = client.get(url)
        response.raise_for_status()
    end = time.perf_counter()
    return (end - start) * 1000.0, response.text


def _build_summary(results: list[dict[str, object]]) -> dict[str, object]:
    ok_count = sum(1 for row in results if row.get("ok"))
    fail_count = len(results) - ok_count
    return {
        "status": "ok" if fail_count == 0 else "error",
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "ok_count": ok_count,
        "failed_count": fail_count,
        "total_duration_ms": sum(row.get("duration_ms", 0.0) or 0.0 for row in results),
        "targets": results,
    }


@cli.command()
def run_check(
    base_url: str | None = typer.Option(
        None,
        help="Metrics server base URL (defaults to http://<host>:<METRICS_PORT>).",
    ),
    host: str = typer.Option("localhost", help="Host used when --base-url is not given."),
    port: int | None = typer.Option(None, help="Override METRICS_PORT (defaults to value from .env)."),
    require: list[str] = typer.Option(
        list(DEFAULT_REQUIRED),
        "--require",
        help="Metric family that must appear in the /metrics exposition (repeatable).",
    ),
    json_output: bool = typer.Option(
        False,
        "--json/--no-json",
        help="Emit machine-readable output summarizing each target.",
    ),
    timeout: float = typer.Option(5.0, help="HTTP timeout per request (seconds)."),
) -> None:
    """Check the metrics server and exit non-zero when it is unreachable or incomplete."""

    cfg = _load_config()
    resolved_port = port if port is not None else _default_port(cfg)
    base = (base_url or f"http://{host}:{resolved_port}").rstrip("/")

    errors: list[str] = []
    results: list[dict[str, object]] = []
    for url in (f"{base}/health", f"{base}/metrics"):
        try:
            duration_ms, body = _probe(url, timeout)
        except Exception as exc:  # noqa: BLE001
            message = f"[FAIL] {url}: {exc}"
            errors.append(message)
            results.append({"url": url, "ok": False, "error": str(exc)})
            if not json_output:
                typer.echo(message)
            continue
        missing = [name for name in require if name not in body] if url.endswith("/metrics") else []
        if missing:
            message = f"[FAIL] {url}: missing metrics {', '.join(missing)}"
            errors.append(message)
            results.append({"url": url, "ok": False, "duration_ms": duration_ms, "missing": missing})
            if not json_output:
                typer.echo(message)
            continue
        results.append({"url": url, "ok": True, "duration_ms": duration_ms})
        if not json_output:
            typer.echo(f"[OK] {url} ({duration_ms:.1f} ms)")

    if json_output:
        typer.echo(json.dumps(_build_summary(results), indent=2))
    if errors:
        raise typer.Exit(code=1)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
