from __future__ import annotations

from pathlib import Path

import pytest

from testpulse.settings import (
    GrafanaSettings,
    MetricsSettings,
    NotificationSettings,
    ResultsSettings,
    Settings,
    SmtpSettings,
    get_settings,
)

pytest_plugins = ["pytester"]


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    """Settings rooted in a temp directory with no notifier credentials."""

    return Settings(
        env_path=str(tmp_path / ".env"),
        ci=False,
        metrics=MetricsSettings(
            host="127.0.0.1",
            port=0,
            max_port_attempts=1,
            idle_timeout_seconds=300.0,
            drain_timeout_seconds=1.0,
            run_end_grace_seconds=0.0,
            include_process_metrics=False,
        ),
        smtp=SmtpSettings(
            host=None,
            port=None,
            user=None,
            password=None,
            from_address=None,
            from_name="Test Reporter",
            to_address=None,
            secure=False,
            starttls=True,
            timeout_seconds=5.0,
            max_attempts=3,
            base_delay_seconds=0.0,
        ),
        grafana=GrafanaSettings(
            url="http://grafana.invalid",
            api_key=None,
            user=None,
            password=None,
            dashboard_path=tmp_path / "dashboard.json",
            alertmanager_url=None,
            timeout_seconds=1.0,
        ),
        results=ResultsSettings(
            results_dir=tmp_path / "test-results",
            consolidated_name="test-results.json",
            file_suffix="results.json",
            batch_window_seconds=300.0,
            summary_name="test-metrics-summary.json",
        ),
        notifications=NotificationSettings(
            lock_path=tmp_path / ".notification-lock",
            cooldown_seconds=300.0,
        ),
    )
