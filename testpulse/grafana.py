"""Grafana dashboard upload, run annotations and Alertmanager escalation."""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator

import httpx

from testpulse.outcome import NotificationOutcome
from testpulse.schemas import RunMetricsSummary
from testpulse.settings import GrafanaSettings

__all__ = ["GrafanaClient", "build_alert_payload", "build_annotation_payload"]

LOGGER = logging.getLogger(__name__)

DASHBOARD_CHANNEL = "grafana-dashboard"
ANNOTATION_CHANNEL = "grafana-annotation"
ALERT_CHANNEL = "alertmanager"


def build_annotation_payload(summary: RunMetricsSummary, *, now: datetime | None = None) -> dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    message = (
        f"{summary.failed} test(s) failed out of {summary.total} total tests"
        if summary.has_failures
        else "All tests passed successfully"
    )
    return {
        "time": int(now.timestamp() * 1000),
        "tags": ["test-execution", "test-failure" if summary.has_failures else "test-success"],
        "text": message,
        "alertName": "Test Execution Alert",
        "severity": "critical" if summary.has_failures else "info",
        "timestamp": now.isoformat(),
        "testMetrics": {
            "summary": {
                "total": summary.total,
                "passed": summary.passed,
                "failed": summary.failed,
                "skipped": summary.skipped,
                "passRate": f"{summary.pass_rate:.2f}",
                "duration": summary.duration,
            },
            "browsers": [item.model_dump() for item in summary.browser_breakdown],
            "failures": [item.model_dump() for item in summary.failed_tests],
            "status": "failed" if summary.has_failures else "passed",
        },
    }


def build_alert_payload(summary: RunMetricsSummary, *, now: datetime | None = None) -> list[dict[str, Any]]:
    """Alertmanager v2 body for a failing run."""

    now = now or datetime.now(timezone.utc)
    failing = sorted({f"{test.name} ({test.browser})" for test in summary.failed_tests})
    return [
        {
            "labels": {
                "alertname": "TestExecutionFailed",
                "severity": "critical",
                "service": "e2e-tests",
            },
            "annotations": {
                "summary": f"{summary.failed} of {summary.total} tests failed",
                "description": "\n".join(failing) or "No failing test names recorded",
                "pass_rate": f"{summary.pass_rate:.2f}",
            },
            "startsAt": now.isoformat(),
        }
    ]


class GrafanaClient:
    """Best-effort calls against Grafana; every method returns an outcome."""

    def __init__(self, settings: GrafanaSettings, *, client: httpx.AsyncClient | None = None) -> None:
        self.settings = settings
        self._client = client

    def auth_headers(self) -> dict[str, str]:
        if self.settings.api_key:
            return {"Authorization": f"Bearer {self.settings.api_key}"}
        return {}

    def basic_auth(self) -> httpx.BasicAuth | None:
        if self.settings.api_key:
            return None
        if self.settings.user and self.settings.password:
            return httpx.BasicAuth(self.settings.user, self.settings.password)
        return None

    async def upload_dashboard(self, path: Path | None = None) -> NotificationOutcome:
        target = path or self.settings.dashboard_path
        try:
            dashboard = json.loads(target.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            LOGGER.warning("Failed to read dashboard definition %s: %s", target, exc)
            return NotificationOutcome.failure(DASHBOARD_CHANNEL, str(exc))
        if not isinstance(dashboard, dict):
            message = f"{target} must contain a JSON object, got {type(dashboard).__name__}"
            LOGGER.warning("Invalid dashboard definition: %s", message)
            return NotificationOutcome.failure(DASHBOARD_CHANNEL, message)
        dashboard.pop("id", None)
        payload = {"dashboard": dashboard, "overwrite": True, "message": "Dashboard updated via API"}
        outcome = await self._post(DASHBOARD_CHANNEL, f"{self.settings.url}/api/dashboards/db", payload)
        if outcome.ok:
            LOGGER.info("Dashboard %s uploaded to %s", dashboard.get("title", target.name), self.settings.url)
        return outcome

    async def trigger_alert(self, summary: RunMetricsSummary) -> list[NotificationOutcome]:
        """Post a run annotation; escalate to Alertmanager when tests failed."""

        LOGGER.info("Connecting to Grafana at %s", self.settings.url)
        outcomes = [
            await self._post(
                ANNOTATION_CHANNEL,
                f"{self.settings.url}/api/annotations",
                build_annotation_payload(summary),
            )
        ]
        if outcomes[0].ok:
            LOGGER.info(
                "Sent run annotation: %s/%s tests passed in %.2fs",
                summary.passed,
                summary.total,
                summary.duration,
            )
        if summary.has_failures:
            if self.settings.alertmanager_url:
                outcomes.append(
                    await self._post(
                        ALERT_CHANNEL,
                        f"{self.settings.alertmanager_url.rstrip('/')}/api/v2/alerts",
                        build_alert_payload(summary),
                        authenticated=False,
                    )
                )
            else:
                LOGGER.info("ALERTMANAGER_URL not set; skipping failure escalation")
        return outcomes

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(timeout=httpx.Timeout(self.settings.timeout_seconds)) as client:
            yield client

    async def _post(
        self,
        channel: str,
        url: str,
        payload: Any,
        *,
        authenticated: bool = True,
    ) -> NotificationOutcome:
        headers = {"Content-Type": "application/json"}
        auth = None
        if authenticated:
            headers.update(self.auth_headers())
            auth = self.basic_auth()
        try:
            async with self._session() as client:
                response = await client.post(
                    url,
                    json=payload,
                    headers=headers,
                    auth=auth,
                    timeout=self.settings.timeout_seconds,
                )
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            LOGGER.warning(
                "%s request failed (status=%s, url=%s): %s",
                channel,
                exc.response.status_code,
                url,
                exc.response.text[:500],
            )
            return NotificationOutcome.failure(channel, str(exc), status_code=exc.response.status_code)
        except httpx.ConnectError as exc:
            LOGGER.warning("%s request to %s could not connect: %s", channel, url, exc)
            LOGGER.warning(
                "Is the service reachable from here? Inside Docker use the service name "
                "(http://grafana:3000) rather than localhost."
            )
            return NotificationOutcome.failure(channel, str(exc))
        except httpx.HTTPError as exc:
            LOGGER.warning("%s request to %s failed: %s", channel, url, exc)
            return NotificationOutcome.failure(channel, str(exc))
        except (httpx.InvalidURL, ValueError) as exc:
            LOGGER.error("%s is misconfigured; invalid URL %r: %s", channel, url, exc)
            return NotificationOutcome.failure(channel, f"invalid URL {url!r}: {exc}")
        return NotificationOutcome.success(channel, status_code=response.status_code)
