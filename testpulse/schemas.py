"""Pydantic DTOs shared by the aggregator, notifiers and CLI."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class BrowserBreakdown(BaseModel):
    """Per-browser (Playwright project) outcome counts."""

    browser: str
    total: int = Field(default=0, ge=0)
    passed: int = Field(default=0, ge=0)
    failed: int = Field(default=0, ge=0)
    skipped: int = Field(default=0, ge=0)


class FailedTest(BaseModel):
    name: str
    browser: str
    error: str = Field(default="No error details available")


class SkippedTest(BaseModel):
    name: str
    browser: str


class RunMetricsSummary(BaseModel):
    """Aggregated outcome of one test run, consumed by every notifier."""

    total: int = Field(ge=0)
    passed: int = Field(ge=0)
    failed: int = Field(ge=0, description="failed + timedout + interrupted")
    skipped: int = Field(ge=0)
    duration: float = Field(ge=0, description="Summed test duration in seconds")
    browsers: int = Field(ge=0, description="Distinct browsers seen in the results")
    browser_breakdown: list[BrowserBreakdown] = Field(default_factory=list)
    failed_tests: list[FailedTest] = Field(default_factory=list)
    skipped_tests: list[SkippedTest] = Field(default_factory=list)

    @property
    def pass_rate(self) -> float:
        if self.total <= 0:
            return 0.0
        return self.passed / self.total * 100

    @property
    def has_failures(self) -> bool:
        return self.failed > 0


class LockRecord(BaseModel):
    """Contents of the notification lock file."""

    timestamp: datetime
    run_id: str = Field(alias="runId")

    model_config = {"populate_by_name": True}
