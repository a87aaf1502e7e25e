"""Named metric registry layered over prometheus_client collectors."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Sequence

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    ProcessCollector,
    disable_created_metrics,
    generate_latest,
)

__all__ = [
    "CONTENT_TYPE",
    "DuplicateDefinitionConflict",
    "MetricDefinition",
    "MetricHandle",
    "MetricKind",
    "MetricRegistry",
]

LOGGER = logging.getLogger(__name__)
CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"

# `_created` series carry wall-clock timestamps and would make snapshots unstable.
disable_created_metrics()


class MetricKind(str, Enum):
    COUNTER = "counter"
    GAUGE = "gauge"
    HISTOGRAM = "histogram"


class DuplicateDefinitionConflict(ValueError):
    """A metric name was registered twice with a different kind or label schema."""


@dataclass(frozen=True, slots=True)
class MetricDefinition:
    """Immutable description of one metric family."""

    name: str
    kind: MetricKind
    help: str
    labels: tuple[str, ...] = ()
    buckets: tuple[float, ...] | None = None

    def compatible_with(self, other: "MetricDefinition") -> bool:
        return (
            self.kind == other.kind
            and self.labels == other.labels
            and (self.kind != MetricKind.HISTOGRAM or self.buckets == other.buckets)
        )


class MetricHandle:
    """Stable reference to a registered metric.

    The underlying collector is looked up on every call, so handles survive
    :meth:`MetricRegistry.reset`.
    """

    __slots__ = ("_registry", "definition")

    def __init__(self, registry: "MetricRegistry", definition: MetricDefinition) -> None:
        self._registry = registry
        self.definition = definition

    @property
    def name(self) -> str:
        return self.definition.name

    def inc(self, labels: Mapping[str, Any] | None = None, amount: float = 1.0) -> None:
        if self.definition.kind == MetricKind.HISTOGRAM:
            raise TypeError(f"{self.name} is a histogram; use observe()")
        self._child(labels).inc(amount)

    def dec(self, labels: Mapping[str, Any] | None = None, amount: float = 1.0) -> None:
        self._require(MetricKind.GAUGE, "dec")
        self._child(labels).dec(amount)

    def set(self, labels: Mapping[str, Any] | None = None, value: float = 0.0) -> None:
        self._require(MetricKind.GAUGE, "set")
        self._child(labels).set(value)

    def observe(self, labels: Mapping[str, Any] | None = None, value: float = 0.0) -> None:
        self._registry.observe(self, labels or {}, value)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, MetricHandle):
            return NotImplemented
        return self._registry is other._registry and self.definition == other.definition

    def __hash__(self) -> int:
        return hash((id(self._registry), self.definition))

    def __repr__(self) -> str:
        return f"MetricHandle({self.name!r}, kind={self.definition.kind.value})"

    def _require(self, kind: MetricKind, operation: str) -> None:
        if self.definition.kind != kind:
            raise TypeError(f"{operation}() is not supported on {self.definition.kind.value} {self.name}")

    def _child(self, labels: Mapping[str, Any] | None) -> Any:
        return self._registry._child(self.definition, labels or {})


class MetricRegistry:
    """Definition table plus a private prometheus_client registry."""

    def __init__(self, *, process_prefix: str | None = None) -> None:
        self._registry = CollectorRegistry(auto_describe=True)
        self._definitions: dict[str, MetricDefinition] = {}
        self._collectors: dict[str, Any] = {}
        self._series: dict[str, dict[tuple[str, ...], None]] = {}
        self._process_prefix = process_prefix
        self._process_collector: ProcessCollector | None = None
        self._attach_process_collector()

    @property
    def collector_registry(self) -> CollectorRegistry:
        return self._registry

    def register(self, definition: MetricDefinition) -> MetricHandle:
        existing = self._definitions.get(definition.name)
        if existing is not None:
            if not existing.compatible_with(definition):
                raise DuplicateDefinitionConflict(
                    f"Metric {definition.name} already registered as {existing.kind.value}"
                    f" with labels {list(existing.labels)}"
                )
            return MetricHandle(self, existing)
        self._definitions[definition.name] = definition
        self._collectors[definition.name] = self._build_collector(definition)
        self._series[definition.name] = {}
        if self._process_collector is not None:
            # keep process metrics after the test metrics in the exposition
            self._registry.unregister(self._process_collector)
            self._attach_process_collector()
        return MetricHandle(self, definition)

    def get(self, name: str) -> MetricHandle:
        return MetricHandle(self, self._definitions[name])

    def observe(self, handle: MetricHandle, label_values: Mapping[str, Any], value: float) -> None:
        """Apply one sample using the metric's natural operation.

        Counters increment (non-negative only), gauges overwrite and
        histograms record into their buckets.
        """

        definition = handle.definition
        child = self._child(definition, label_values)
        if definition.kind == MetricKind.COUNTER:
            if value < 0:
                raise ValueError(f"Counter {definition.name} only accepts non-negative increments")
            child.inc(value)
        elif definition.kind == MetricKind.GAUGE:
            child.set(value)
        else:
            child.observe(value)

    def snapshot(self) -> str:
        return generate_latest(self._registry).decode("utf-8")

    def reset(self) -> None:
        """Drop all accumulated values while keeping every definition."""

        for collector in list(self._collectors.values()):
            self._registry.unregister(collector)
        if self._process_collector is not None:
            self._registry.unregister(self._process_collector)
        for name, definition in self._definitions.items():
            self._collectors[name] = self._build_collector(definition)
            self._series[name] = {}
        self._attach_process_collector()
        LOGGER.info("Reset %d metric families", len(self._definitions))

    def describe(self) -> list[dict[str, Any]]:
        return [
            {
                "name": definition.name,
                "help": definition.help,
                "type": definition.kind.value,
                "labels": list(definition.labels),
                "series": len(self._series[definition.name]),
            }
            for definition in self._definitions.values()
        ]

    def __len__(self) -> int:
        return len(self._definitions)

    def __contains__(self, name: object) -> bool:
        return name in self._definitions

    def _attach_process_collector(self) -> None:
        if self._process_prefix is None:
            return
        self._process_collector = ProcessCollector(namespace=self._process_prefix, registry=self._registry)

    def _build_collector(self, definition: MetricDefinition) -> Any:
        kwargs: dict[str, Any] = {
            "name": definition.name,
            "documentation": definition.help,
            "labelnames": definition.labels,
            "registry": self._registry,
        }
        if definition.kind == MetricKind.COUNTER:
            return Counter(**kwargs)
        if definition.kind == MetricKind.GAUGE:
            return Gauge(**kwargs)
        if definition.buckets:
            kwargs["buckets"] = definition.buckets
        return Histogram(**kwargs)

    def _child(self, definition: MetricDefinition, label_values: Mapping[str, Any]) -> Any:
        collector = self._collectors[definition.name]
        if not definition.labels:
            self._series[definition.name].setdefault((), None)
            return collector
        values = _label_tuple(definition.labels, label_values)
        self._series[definition.name].setdefault(values, None)
        return collector.labels(*values)


def _label_tuple(schema: Sequence[str], label_values: Mapping[str, Any]) -> tuple[str, ...]:
    unknown = set(label_values) - set(schema)
    if unknown:
        raise ValueError(f"Unknown labels {sorted(unknown)}; expected {list(schema)}")
    return tuple(str(label_values.get(name, "")) for name in schema)
