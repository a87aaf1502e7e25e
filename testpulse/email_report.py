"""HTML run report delivered over SMTP."""

from __future__ import annotations

import asyncio
import html
import logging
import smtplib
import ssl
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr
from typing import Callable

from testpulse.outcome import NotificationOutcome
from testpulse.results import clean_error_message
from testpulse.retry import BackoffPolicy, RetryError, Sleep, retry_async
from testpulse.schemas import RunMetricsSummary
from testpulse.settings import SmtpSettings

__all__ = ["EmailNotifier", "build_message", "build_subject", "render_report_html"]

LOGGER = logging.getLogger(__name__)

CHANNEL = "email"
# Temporary rejections and throttling replies from hosted mail providers.
RATE_LIMIT_CODES = frozenset({421, 450, 451, 454})

SmtpFactory = Callable[[SmtpSettings], smtplib.SMTP]


def build_subject(summary: RunMetricsSummary) -> str:
    verdict = "❌ Failed" if summary.has_failures else "✅ Passed"
    return f"Test Report {verdict} ({summary.pass_rate:.2f}% Pass Rate)"


def render_report_html(summary: RunMetricsSummary, *, generated_at: datetime | None = None) -> str:
    """Render the report body; every interpolated value is HTML-escaped."""

    generated_at = generated_at or datetime.now(timezone.utc)
    accent = "#dc2626" if summary.has_failures else "#16a34a"
    headline = "Tests Failed" if summary.has_failures else "All Tests Passed"

    browser_rows = "".join(
        "<tr>"
        f"<td>{html.escape(item.browser)}</td>"
        f"<td>{item.total}</td>"
        f"<td class='passed'>{item.passed}</td>"
        f"<td class='failed'>{item.failed}</td>"
        f"<td class='skipped'>{item.skipped}</td>"
        "</tr>"
        for item in summary.browser_breakdown
    )

    failed_section = ""
    if summary.failed_tests:
        items = "".join(
            "<div class='test-item'>"
            f"<h4>{html.escape(test.name)} <span class='browser'>({html.escape(test.browser)})</span></h4>"
            f"<pre class='error'>{html.escape(clean_error_message(test.error) or test.error)}</pre>"
            "</div>"
            for test in summary.failed_tests
        )
        failed_section = f"<div class='section error-section'><h3>Failed Tests</h3>{items}</div>"

    skipped_section = ""
    if summary.skipped_tests:
        items = "".join(
            f"<li>{html.escape(test.name)} <span class='browser'>({html.escape(test.browser)})</span></li>"
            for test in summary.skipped_tests
        )
        skipped_section = f"<div class='section'><h3>Skipped Tests</h3><ul>{items}</ul></div>"

    return f"""<!DOCTYPE html>
<html>
<head>
<meta charset="UTF-8">
<title>Test Report</title>
<style>
  body {{ font-family: -apple-system, 'Segoe UI', Roboto, Arial, sans-serif; color: #333; background: #f5f5f5; margin: 0; }}
  .container {{ max-width: 800px; margin: 20px auto; background: #fff; border-radius: 8px; padding: 24px; }}
  h2 {{ color: {accent}; border-bottom: 2px solid {accent}; padding-bottom: 12px; }}
  .section {{ background: #f8fafc; border: 1px solid #e2e8f0; border-radius: 6px; padding: 20px; margin: 20px 0; }}
  .error-section {{ background: #fef2f2; border-color: #fee2e2; }}
  table {{ width: 100%; border-collapse: collapse; }}
  th, td {{ text-align: left; padding: 8px; border-bottom: 1px solid #e2e8f0; }}
  .passed {{ color: #16a34a; }}
  .failed {{ color: #dc2626; }}
  .skipped {{ color: #ca8a04; }}
  .browser {{ color: #64748b; font-weight: normal; }}
  pre.error {{ white-space: pre-wrap; background: #fff; padding: 12px; border-radius: 4px; }}
</style>
</head>
<body>
<div class="container">
  <h2>{headline}</h2>
  <div class="section">
    <h3>Summary</h3>
    <table>
      <tr><th>Total</th><td>{summary.total}</td></tr>
      <tr><th>Passed</th><td class="passed">{summary.passed}</td></tr>
      <tr><th>Failed</th><td class="failed">{summary.failed}</td></tr>
      <tr><th>Skipped</th><td class="skipped">{summary.skipped}</td></tr>
      <tr><th>Pass Rate</th><td>{summary.pass_rate:.2f}%</td></tr>
      <tr><th>Duration</th><td>{summary.duration:.2f}s</td></tr>
      <tr><th>Browsers</th><td>{summary.browsers}</td></tr>
    </table>
  </div>
  <div class="section">
    <h3>Browser Breakdown</h3>
    <table>
      <tr><th>Browser</th><th>Total</th><th>Passed</th><th>Failed</th><th>Skipped</th></tr>
      {browser_rows}
    </table>
  </div>
  {failed_section}
  {skipped_section}
  <p class="browser">Generated {html.escape(generated_at.isoformat())}</p>
</div>
</body>
</html>
"""


def build_message(settings: SmtpSettings, summary: RunMetricsSummary) -> MIMEMultipart:
    message = MIMEMultipart("alternative")
    message["Subject"] = build_subject(summary)
    message["From"] = formataddr((settings.from_name, settings.from_address or ""))
    message["To"] = settings.to_address or ""
    message.attach(MIMEText(render_report_html(summary), "html", "utf-8"))
    return message


def _default_smtp_factory(settings: SmtpSettings) -> smtplib.SMTP:
    if settings.host is None or settings.port is None:
        raise ValueError("SMTP_HOST and SMTP_PORT are required to open an SMTP connection")
    if settings.secure or settings.port == 465:
        return smtplib.SMTP_SSL(
            settings.host,
            settings.port,
            timeout=settings.timeout_seconds,
            context=ssl.create_default_context(),
        )
    client = smtplib.SMTP(settings.host, settings.port, timeout=settings.timeout_seconds)
    if settings.starttls:
        client.starttls(context=ssl.create_default_context())
    return client


def _is_rate_limited(exc: Exception) -> bool:
    if isinstance(exc, smtplib.SMTPAuthenticationError):
        return True
    code = getattr(exc, "smtp_code", None)
    return code in RATE_LIMIT_CODES


class EmailNotifier:
    """Sends one HTML report per call; never raises."""

    def __init__(
        self,
        settings: SmtpSettings,
        *,
        policy: BackoffPolicy | None = None,
        smtp_factory: SmtpFactory | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.settings = settings
        self.policy = policy or BackoffPolicy(
            max_attempts=settings.max_attempts,
            base_delay=settings.base_delay_seconds,
        )
        self._smtp_factory = smtp_factory or _default_smtp_factory
        self._sleep = sleep

    async def send_report(self, summary: RunMetricsSummary) -> NotificationOutcome:
        missing = self.settings.missing()
        if missing:
            LOGGER.error("Missing required SMTP configuration: %s", ", ".join(missing))
            return NotificationOutcome.skipped(CHANNEL, f"missing configuration: {', '.join(missing)}")

        message = build_message(self.settings, summary)

        async def _attempt(_: int) -> None:
            await asyncio.to_thread(self._deliver, message)

        try:
            _, attempts = await retry_async(
                _attempt,
                self.policy,
                label="Email delivery",
                on_error=self._log_failure,
                sleep=self._sleep,
            )
        except RetryError as exc:
            LOGGER.error("Max retries reached. Email could not be sent.")
            return NotificationOutcome.failure(
                CHANNEL,
                str(exc.last_error or exc),
                attempts=exc.attempts,
                status_code=getattr(exc.last_error, "smtp_code", None),
            )
        except Exception as exc:
            LOGGER.exception("Unexpected error while sending the test report email")
            return NotificationOutcome.failure(CHANNEL, str(exc))

        LOGGER.info("Test report email sent to %s", self.settings.to_address)
        return NotificationOutcome.success(CHANNEL, attempts=attempts)

    def _deliver(self, message: MIMEMultipart) -> None:
        client = self._smtp_factory(self.settings)
        try:
            client.login(self.settings.user or "", self.settings.password or "")
            code, _ = client.noop()
            if code != 250:
                raise smtplib.SMTPResponseException(code, b"SMTP connection verification failed")
            client.send_message(message)
        finally:
            try:
                client.quit()
            except (smtplib.SMTPException, OSError):
                client.close()

    def _log_failure(self, attempt: int, exc: Exception) -> None:
        LOGGER.warning(
            "Failed to send email (attempt %s/%s, code=%s): %s",
            attempt,
            self.policy.max_attempts,
            getattr(exc, "smtp_code", None),
            exc,
        )
        if _is_rate_limited(exc):
            LOGGER.warning("SMTP rate limit or authentication throttling detected; backing off")
