"""Test-run metric families exported on the /metrics endpoint."""

from __future__ import annotations

from dataclasses import dataclass

from testpulse.registry import MetricDefinition, MetricHandle, MetricKind, MetricRegistry

DURATION_BUCKETS = (0.1, 0.3, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0)

TESTS_TOTAL = MetricDefinition(
    name="playwright_tests_total",
    kind=MetricKind.COUNTER,
    help="Total number of tests run",
    labels=("status", "project", "browser", "suite"),
)
ACTIVE_TESTS = MetricDefinition(
    name="playwright_active_tests",
    kind=MetricKind.GAUGE,
    help="Number of currently running tests",
    labels=("browser", "project", "suite"),
)
TEST_DURATION_SECONDS = MetricDefinition(
    name="playwright_test_duration_seconds",
    kind=MetricKind.HISTOGRAM,
    help="Test execution time",
    labels=("test_name", "browser", "status", "project", "suite"),
    buckets=DURATION_BUCKETS,
)
TEST_STEPS_TOTAL = MetricDefinition(
    name="playwright_test_steps_total",
    kind=MetricKind.COUNTER,
    help="Total number of test steps",
    labels=("status", "test_name", "step_name"),
)
SUITE_INFO = MetricDefinition(
    name="playwright_test_suite_info",
    kind=MetricKind.GAUGE,
    help="Information about the test suite execution",
    labels=("project", "browser", "status"),
)
BROWSER_METRICS = MetricDefinition(
    name="playwright_browser_metrics",
    kind=MetricKind.GAUGE,
    help="Browser-specific metrics during test execution",
    labels=("metric", "browser", "project"),
)
TEST_ERRORS_TOTAL = MetricDefinition(
    name="playwright_test_errors_total",
    kind=MetricKind.COUNTER,
    help="Total number of test errors by type",
    labels=("error_type", "browser", "project", "test_name"),
)
MEMORY_USAGE_BYTES = MetricDefinition(
    name="playwright_memory_usage_bytes",
    kind=MetricKind.GAUGE,
    help="Memory usage during test execution",
    labels=("browser", "project", "test_name"),
)
TEST_RETRIES_TOTAL = MetricDefinition(
    name="playwright_test_retries_total",
    kind=MetricKind.COUNTER,
    help="Total number of test retries",
    labels=("test_name", "browser", "project"),
)

ALL_DEFINITIONS = (
    TESTS_TOTAL,
    ACTIVE_TESTS,
    TEST_DURATION_SECONDS,
    TEST_STEPS_TOTAL,
    SUITE_INFO,
    BROWSER_METRICS,
    TEST_ERRORS_TOTAL,
    MEMORY_USAGE_BYTES,
    TEST_RETRIES_TOTAL,
)


@dataclass(frozen=True, slots=True)
class TestMetrics:
    """Handles for every test-run metric family."""

    __test__ = False  # not a pytest test class

    tests_total: MetricHandle
    active_tests: MetricHandle
    duration_seconds: MetricHandle
    steps_total: MetricHandle
    suite_info: MetricHandle
    browser_metrics: MetricHandle
    errors_total: MetricHandle
    memory_bytes: MetricHandle
    retries_total: MetricHandle


def register_test_metrics(registry: MetricRegistry) -> TestMetrics:
    """Register the test-run families (idempotent) and return their handles."""

    return TestMetrics(
        tests_total=registry.register(TESTS_TOTAL),
        active_tests=registry.register(ACTIVE_TESTS),
        duration_seconds=registry.register(TEST_DURATION_SECONDS),
        steps_total=registry.register(TEST_STEPS_TOTAL),
        suite_info=registry.register(SUITE_INFO),
        browser_metrics=registry.register(BROWSER_METRICS),
        errors_total=registry.register(TEST_ERRORS_TOTAL),
        memory_bytes=registry.register(MEMORY_USAGE_BYTES),
        retries_total=registry.register(TEST_RETRIES_TOTAL),
    )


def build_registry(*, include_process_metrics: bool = False) -> tuple[MetricRegistry, TestMetrics]:
    registry = MetricRegistry(process_prefix="playwright" if include_process_metrics else None)
    return registry, register_test_metrics(registry)
