"""Metrics collection for observability.

This module provides application metrics for monitoring:
- Question intake counters
- Escalation attempt, skip and level-advance counters
- Answer signal counters
- Tick and dispatch duration histograms
- Cache statistics

Metrics are designed to be compatible with Prometheus-style monitoring.
"""

from __future__ import annotations

import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from threading import Lock
from typing import Any

import structlog

log = structlog.get_logger()

LabelKey = tuple[tuple[str, str], ...]


def _label_key(labels: dict[str, str] | None) -> LabelKey:
    return tuple(sorted((k, str(v)) for k, v in labels.items())) if labels else ()


def _format_labels(labels: dict[str, str]) -> str:
    if not labels:
        return ""
    return "{" + ",".join(f'{k}="{v}"' for k, v in labels.items()) + "}"


class MetricType(StrEnum):
    """Types of metrics."""

    COUNTER = "counter"
    GAUGE = "gauge"
    HISTOGRAM = "histogram"


@dataclass
class MetricValue:
    """A single metric value with metadata."""

    name: str
    type: MetricType
    value: float
    labels: dict[str, str] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    help_text: str = ""


class Counter:
    """A monotonically increasing counter.

    Example:
        counter = Counter("escalations_total", "Level advances")
        counter.inc(labels={"level": "1"})
    """

    def __init__(self, name: str, help_text: str = "") -> None:
        self.name = name
        self.help_text = help_text
        self._values: dict[LabelKey, float] = defaultdict(float)
        self._lock = Lock()

    def inc(self, value: float = 1, labels: dict[str, str] | None = None) -> None:
        """Increment the counter.

        Raises:
            ValueError: If value is negative
        """
        if value < 0:
            raise ValueError("Counter can only increase")

        key = _label_key(labels)
        with self._lock:
            self._values[key] += value

    def get(self, labels: dict[str, str] | None = None) -> float:
        """Get the value for one label set (no labels means the unlabelled series)."""
        key = _label_key(labels)
        with self._lock:
            return self._values.get(key, 0)

    def total(self) -> float:
        """Sum across every label set."""
        with self._lock:
            return sum(self._values.values())

    def get_all(self) -> list[MetricValue]:
        with self._lock:
            return [
                MetricValue(
                    name=self.name,
                    type=MetricType.COUNTER,
                    value=value,
                    labels=dict(key),
                    help_text=self.help_text,
                )
                for key, value in self._values.items()
            ]

    def reset(self) -> None:
        with self._lock:
            self._values.clear()


class Gauge:
    """A metric that can go up or down."""

    def __init__(self, name: str, help_text: str = "") -> None:
        self.name = name
        self.help_text = help_text
        self._values: dict[LabelKey, float] = defaultdict(float)
        self._lock = Lock()

    def set(self, value: float, labels: dict[str, str] | None = None) -> None:
        key = _label_key(labels)
        with self._lock:
            self._values[key] = value

    def inc(self, value: float = 1, labels: dict[str, str] | None = None) -> None:
        key = _label_key(labels)
        with self._lock:
            self._values[key] += value

    def dec(self, value: float = 1, labels: dict[str, str] | None = None) -> None:
        key = _label_key(labels)
        with self._lock:
            self._values[key] -= value

    def get(self, labels: dict[str, str] | None = None) -> float:
        key = _label_key(labels)
        with self._lock:
            return self._values.get(key, 0)

    def get_all(self) -> list[MetricValue]:
        with self._lock:
            return [
                MetricValue(
                    name=self.name,
                    type=MetricType.GAUGE,
                    value=value,
                    labels=dict(key),
                    help_text=self.help_text,
                )
                for key, value in self._values.items()
            ]

    def reset(self) -> None:
        with self._lock:
            self._values.clear()


class Histogram:
    """Tracks the distribution of observed values.

    Example:
        histogram = Histogram("tick_duration_seconds", "Scheduler tick duration")
        histogram.observe(0.42)
    """

    DEFAULT_BUCKETS = (0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, float("inf"))

    def __init__(
        self,
        name: str,
        help_text: str = "",
        buckets: tuple[float, ...] | None = None,
    ) -> None:
        self.name = name
        self.help_text = help_text
        self._buckets = buckets or self.DEFAULT_BUCKETS
        self._observations: dict[LabelKey, list[float]] = defaultdict(list)
        self._lock = Lock()

    def observe(self, value: float, labels: dict[str, str] | None = None) -> None:
        key = _label_key(labels)
        with self._lock:
            self._observations[key].append(value)

    def get_stats(self, labels: dict[str, str] | None = None) -> dict[str, float]:
        """Return count, sum, min, max and mean for one label set."""
        key = _label_key(labels)
        with self._lock:
            values = list(self._observations.get(key, []))

        if not values:
            return {"count": 0, "sum": 0, "min": 0, "max": 0, "mean": 0}

        return {
            "count": len(values),
            "sum": sum(values),
            "min": min(values),
            "max": max(values),
            "mean": sum(values) / len(values),
        }

    def get_buckets(self, labels: dict[str, str] | None = None) -> dict[float, int]:
        """Return cumulative bucket counts for one label set."""
        key = _label_key(labels)
        with self._lock:
            values = list(self._observations.get(key, []))

        return {bucket: sum(1 for v in values if v <= bucket) for bucket in self._buckets}

    def label_sets(self) -> list[dict[str, str]]:
        with self._lock:
            return [dict(key) for key in self._observations]

    def reset(self) -> None:
        with self._lock:
            self._observations.clear()


class MetricsRegistry:
    """Registry for all router metrics.

    This is a singleton that holds all metrics and provides
    methods for exporting them.

    Example:
        registry = MetricsRegistry.get_instance()
        registry.questions_tracked.inc()
        print(registry.to_prometheus_format())
    """

    _instance: MetricsRegistry | None = None
    _lock = Lock()

    def __init__(self) -> None:
        # Intake
        self.messages_received = Counter(
            "question_router_messages_received_total",
            "Chat messages received",
        )
        self.questions_tracked = Counter(
            "question_router_questions_tracked_total",
            "Questions stored for tracking",
        )
        self.questions_duplicate = Counter(
            "question_router_questions_duplicate_total",
            "Question creations that hit an existing message",
        )

        # Scheduler
        self.ticks = Counter(
            "question_router_ticks_total",
            "Scheduler ticks completed",
        )
        self.tick_errors = Counter(
            "question_router_tick_errors_total",
            "Errors while processing a question during a tick",
        )
        self.escalation_attempts = Counter(
            "question_router_escalation_attempts_total",
            "Dispatch attempts by outcome",
        )
        self.escalations = Counter(
            "question_router_escalations_total",
            "Questions advanced to a new escalation level",
        )
        self.escalations_skipped = Counter(
            "question_router_escalations_skipped_total",
            "Escalations skipped by reason",
        )
        self.state_conflicts = Counter(
            "question_router_state_conflicts_total",
            "Conditional writes that lost a race",
        )
        self.snoozes_reactivated = Counter(
            "question_router_snoozes_reactivated_total",
            "Snoozed questions returned to unanswered",
        )

        # Reconciler
        self.signals_received = Counter(
            "question_router_signals_received_total",
            "Answer signals received by kind",
        )
        self.signals_applied = Counter(
            "question_router_signals_applied_total",
            "Answer signals that changed question state",
        )

        # Durations
        self.tick_duration = Histogram(
            "question_router_tick_duration_seconds",
            "Scheduler tick duration in seconds",
        )
        self.dispatch_duration = Histogram(
            "question_router_dispatch_duration_seconds",
            "Notification dispatch duration in seconds",
        )

        # Cache
        self.cache_hits = Counter(
            "question_router_cache_hits_total",
            "Resolver cache hits",
        )
        self.cache_misses = Counter(
            "question_router_cache_misses_total",
            "Resolver cache misses",
        )

        # Gauges
        self.open_questions = Gauge(
            "question_router_open_questions",
            "Escalation candidates seen by the last tick",
        )
        self.active_tasks = Gauge(
            "question_router_active_tasks",
            "Chat events currently being handled",
        )

        self._start_time = time.time()

    @classmethod
    def get_instance(cls) -> MetricsRegistry:
        """Get the singleton metrics registry instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Discard the singleton so the next access starts from zero."""
        with cls._lock:
            cls._instance = None

    def _counters(self) -> list[Counter]:
        return [
            self.messages_received,
            self.questions_tracked,
            self.questions_duplicate,
            self.ticks,
            self.tick_errors,
            self.escalation_attempts,
            self.escalations,
            self.escalations_skipped,
            self.state_conflicts,
            self.snoozes_reactivated,
            self.signals_received,
            self.signals_applied,
            self.cache_hits,
            self.cache_misses,
        ]

    def get_uptime_seconds(self) -> float:
        return time.time() - self._start_time

    def get_all_metrics(self) -> dict[str, Any]:
        """Get a summary of all metrics as a dictionary."""
        return {
            "uptime_seconds": self.get_uptime_seconds(),
            "intake": {
                "messages_received": self.messages_received.total(),
                "questions_tracked": self.questions_tracked.total(),
                "duplicates": self.questions_duplicate.total(),
            },
            "scheduler": {
                "ticks": self.ticks.total(),
                "errors": self.tick_errors.total(),
                "escalations": self.escalations.total(),
                "skipped": self.escalations_skipped.total(),
                "conflicts": self.state_conflicts.total(),
                "open_questions": self.open_questions.get(),
                "tick_duration_stats": self.tick_duration.get_stats(),
            },
            "dispatch": {
                "success": self.escalation_attempts.get({"status": "success"}),
                "failed": self.escalation_attempts.get({"status": "failed"}),
            },
            "signals": {
                "received": self.signals_received.total(),
                "applied": self.signals_applied.total(),
            },
            "cache": {
                "hits": self.cache_hits.total(),
                "misses": self.cache_misses.total(),
            },
        }

    def to_prometheus_format(self) -> str:
        """Export metrics in Prometheus text format."""
        lines: list[str] = []

        for counter in self._counters():
            if counter.help_text:
                lines.append(f"# HELP {counter.name} {counter.help_text}")
            lines.append(f"# TYPE {counter.name} counter")
            for metric in counter.get_all():
                lines.append(f"{counter.name}{_format_labels(metric.labels)} {metric.value}")

        for gauge in (self.open_questions, self.active_tasks):
            if gauge.help_text:
                lines.append(f"# HELP {gauge.name} {gauge.help_text}")
            lines.append(f"# TYPE {gauge.name} gauge")
            for metric in gauge.get_all():
                lines.append(f"{gauge.name}{_format_labels(metric.labels)} {metric.value}")

        for histogram in (self.tick_duration, self.dispatch_duration):
            if histogram.help_text:
                lines.append(f"# HELP {histogram.name} {histogram.help_text}")
            lines.append(f"# TYPE {histogram.name} histogram")
            for labels in histogram.label_sets():
                for bucket, count in histogram.get_buckets(labels).items():
                    le = "+Inf" if bucket == float("inf") else str(bucket)
                    bucket_labels = {**labels, "le": le}
                    lines.append(f"{histogram.name}_bucket{_format_labels(bucket_labels)} {count}")
                stats = histogram.get_stats(labels)
                lines.append(f"{histogram.name}_sum{_format_labels(labels)} {stats['sum']}")
                lines.append(f"{histogram.name}_count{_format_labels(labels)} {stats['count']}")

        lines.append("# HELP question_router_uptime_seconds Service uptime in seconds")
        lines.append("# TYPE question_router_uptime_seconds gauge")
        lines.append(f"question_router_uptime_seconds {self.get_uptime_seconds()}")

        return "\n".join(lines)


def get_metrics() -> MetricsRegistry:
    """Get the global metrics registry."""
    return MetricsRegistry.get_instance()


class Timer:
    """Context manager for timing operations.

    Example:
        with Timer(metrics.tick_duration):
            await scheduler.run_tick()
    """

    def __init__(
        self,
        histogram: Histogram,
        labels: dict[str, str] | None = None,
    ) -> None:
        self._histogram = histogram
        self._labels = labels
        self._start: float | None = None
        self.elapsed: float = 0.0

    def __enter__(self) -> Timer:
        self._start = time.perf_counter()
        return self

    def __exit__(self, *args: Any) -> None:
        if self._start is not None:
            self.elapsed = time.perf_counter() - self._start
            self._histogram.observe(self.elapsed, labels=self._labels)
