"""Typed configuration objects backed by python-decouple settings."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from decouple import Config as DecoupleConfig, RepositoryEmpty, RepositoryEnv

__all__ = [
    "MetricsSettings",
    "SmtpSettings",
    "GrafanaSettings",
    "ResultsSettings",
    "NotificationSettings",
    "Settings",
    "load_config",
    "get_settings",
]


@dataclass(frozen=True, slots=True)
class MetricsSettings:
    """Port/timer knobs for the embedded Prometheus endpoint."""

    host: str
    port: int
    max_port_attempts: int
    idle_timeout_seconds: float
    drain_timeout_seconds: float
    run_end_grace_seconds: float
    include_process_metrics: bool


@dataclass(frozen=True, slots=True)
class SmtpSettings:
    """Mail transport used for the HTML run report."""

    host: str | None
    port: int | None
    user: str | None
    password: str | None
    from_address: str | None
    from_name: str
    to_address: str | None
    secure: bool
    starttls: bool
    timeout_seconds: float
    max_attempts: int
    base_delay_seconds: float

    def missing(self) -> list[str]:
        """Return the env names of required transport settings that are unset."""

        required = {
            "SMTP_HOST": self.host,
            "SMTP_PORT": self.port,
            "SMTP_USER": self.user,
            "SMTP_PASSWORD": self.password,
            "SMTP_FROM": self.from_address,
            "SMTP_TO": self.to_address,
        }
        return [key for key, value in required.items() if not value]


@dataclass(frozen=True, slots=True)
class GrafanaSettings:
    """Monitoring backend (dashboards, annotations, alerting)."""

    url: str
    api_key: str | None
    user: str | None
    password: str | None
    dashboard_path: Path
    alertmanager_url: str | None
    timeout_seconds: float


@dataclass(frozen=True, slots=True)
class ResultsSettings:
    """Where the test runner leaves its result artifacts."""

    results_dir: Path
    consolidated_name: str
    file_suffix: str
    batch_window_seconds: float
    summary_name: str
    html_report_name: str = "custom-report.html"


@dataclass(frozen=True, slots=True)
class NotificationSettings:
    """Duplicate-suppression for the post-test notification cycle."""

    lock_path: Path
    cooldown_seconds: float


@dataclass(frozen=True, slots=True)
class Settings:
    """Top-level immutable configuration container."""

    env_path: str
    ci: bool
    metrics: MetricsSettings
    smtp: SmtpSettings
    grafana: GrafanaSettings
    results: ResultsSettings
    notifications: NotificationSettings


def load_config(env_path: str = ".env") -> DecoupleConfig:
    """Return a python-decouple config anchored to the repository .env file.

    A missing file is not an error: values then come from the process
    environment only.
    """

    if Path(env_path).is_file():
        return DecoupleConfig(RepositoryEnv(env_path))
    return DecoupleConfig(RepositoryEmpty())


def _int(cfg: DecoupleConfig, key: str, *, default: int) -> int:
    try:
        return cfg(key, cast=int, default=default)
    except ValueError as exc:
        msg = f"{key} must be an integer, got {cfg(key, default=default)!r}"
        raise ValueError(msg) from exc


def _float(cfg: DecoupleConfig, key: str, *, default: float) -> float:
    try:
        return cfg(key, cast=float, default=default)
    except ValueError as exc:
        msg = f"{key} must be a number, got {cfg(key, default=default)!r}"
        raise ValueError(msg) from exc


def _bool(cfg: DecoupleConfig, key: str, *, default: bool) -> bool:
    return cfg(key, cast=bool, default=default)


def _optional(cfg: DecoupleConfig, key: str) -> str | None:
    value = cfg(key, default="")
    value = value.strip() if isinstance(value, str) else value
    return value or None


def _optional_int(cfg: DecoupleConfig, key: str) -> int | None:
    raw = _optional(cfg, key)
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError as exc:
        msg = f"{key} must be an integer, got {raw!r}"
        raise ValueError(msg) from exc


@lru_cache(maxsize=1)
def get_settings(env_path: str = ".env") -> Settings:
    """Load and memoize structured settings for the current process."""

    cfg = load_config(env_path)
    ci = _bool(cfg, "CI", default=False)

    metrics = MetricsSettings(
        host=cfg("METRICS_HOST", default="0.0.0.0"),
        port=_int(cfg, "METRICS_PORT", default=9323),
        max_port_attempts=_int(cfg, "METRICS_MAX_PORT_ATTEMPTS", default=10),
        idle_timeout_seconds=_float(cfg, "METRICS_IDLE_TIMEOUT_SECONDS", default=300.0),
        drain_timeout_seconds=_float(cfg, "METRICS_DRAIN_TIMEOUT_SECONDS", default=5.0),
        run_end_grace_seconds=_float(cfg, "METRICS_RUN_END_GRACE_SECONDS", default=0.0),
        include_process_metrics=_bool(cfg, "METRICS_PROCESS_COLLECTOR", default=True),
    )
    if metrics.max_port_attempts < 1:
        msg = "METRICS_MAX_PORT_ATTEMPTS must be >= 1"
        raise ValueError(msg)

    smtp_port = _optional_int(cfg, "SMTP_PORT")
    smtp = SmtpSettings(
        host=_optional(cfg, "SMTP_HOST"),
        port=smtp_port,
        user=_optional(cfg, "SMTP_USER"),
        password=_optional(cfg, "SMTP_PASSWORD"),
        from_address=_optional(cfg, "SMTP_FROM"),
        from_name=cfg("SMTP_FROM_NAME", default="Test Reporter"),
        to_address=_optional(cfg, "SMTP_TO"),
        secure=_bool(cfg, "SMTP_SECURE", default=smtp_port == 465),
        starttls=_bool(cfg, "SMTP_TLS", default=True),
        timeout_seconds=_float(cfg, "SMTP_TIMEOUT_SECONDS", default=30.0),
        max_attempts=_int(cfg, "SMTP_MAX_ATTEMPTS", default=3),
        base_delay_seconds=_float(cfg, "SMTP_RETRY_BASE_DELAY_SECONDS", default=5.0),
    )

    default_grafana = "http://grafana:3000" if ci else "http://localhost:3002"
    grafana = GrafanaSettings(
        url=cfg("GRAFANA_URL", default=default_grafana).rstrip("/"),
        api_key=_optional(cfg, "GRAFANA_API_KEY"),
        user=_optional(cfg, "GF_SECURITY_ADMIN_USER"),
        password=_optional(cfg, "GF_SECURITY_ADMIN_PASSWORD"),
        dashboard_path=Path(
            cfg("GRAFANA_DASHBOARD_PATH", default="grafana/dashboards/consolidated-dashboard.json")
        ),
        alertmanager_url=_optional(cfg, "ALERTMANAGER_URL"),
        timeout_seconds=_float(cfg, "GRAFANA_TIMEOUT_SECONDS", default=5.0),
    )

    results = ResultsSettings(
        results_dir=Path(cfg("TEST_RESULTS_DIR", default="test-results")),
        consolidated_name=cfg("TEST_RESULTS_FILE", default="test-results.json"),
        file_suffix=cfg("TEST_RESULTS_SUFFIX", default="results.json"),
        batch_window_seconds=_float(cfg, "TEST_RESULTS_WINDOW_SECONDS", default=300.0),
        summary_name=cfg("TEST_METRICS_SUMMARY_FILE", default="test-metrics-summary.json"),
        html_report_name=cfg("TEST_HTML_REPORT_FILE", default="custom-report.html"),
    )

    notifications = NotificationSettings(
        lock_path=Path(cfg("NOTIFICATION_LOCK_PATH", default=".notification-lock")),
        cooldown_seconds=_float(cfg, "NOTIFICATION_COOLDOWN_SECONDS", default=300.0),
    )

    return Settings(
        env_path=env_path,
        ci=ci,
        metrics=metrics,
        smtp=smtp,
        grafana=grafana,
        results=results,
        notifications=notifications,
    )
